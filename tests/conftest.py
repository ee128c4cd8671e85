from datetime import datetime, timedelta

import pytest

from gymledger.app import create_app
from gymledger.models.member import Member
from gymledger.models.user import User

ADMIN_EMAIL = 'admin@gym.local'
ADMIN_PASSWORD = 'admin123'


class FixedClock:
    """Settable stand-in for the wall clock"""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now):
        self.now = now
        return now


@pytest.fixture()
def clock():
    return FixedClock(datetime(2025, 1, 15, 9, 0, 0))


@pytest.fixture()
def flask_app(tmp_path, clock):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
        'DATABASE_PATH': str(tmp_path / 'gymledger_test.db'),
        'CLOCK': clock,
        'BCRYPT_LOG_ROUNDS': 4,
        'MAIL_SUPPRESS_SEND': True,
        'ADMIN_EMAIL': ADMIN_EMAIL,
        'ADMIN_PASSWORD': ADMIN_PASSWORD,
        'LOG_LEVEL': 'DEBUG',
    })
    yield app


@pytest.fixture()
def app_ctx(flask_app):
    with flask_app.app_context():
        yield flask_app


@pytest.fixture()
def client(flask_app):
    """Flask test client fixture."""
    return flask_app.test_client()


def _login(client, email, password):
    return client.post('/auth/login', json={'email': email, 'password': password})


@pytest.fixture()
def login():
    return _login


@pytest.fixture()
def admin_client(client):
    response = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert response.status_code == 200
    return client


@pytest.fixture()
def make_user(app_ctx):
    """Plain login with zero balance and no membership"""
    counter = {'n': 0}

    def _make(name='Test User', email=None, password='secret'):
        counter['n'] += 1
        email = email or f'user{counter["n"]}@example.com'
        return User.create(name, email, password)
    return _make


@pytest.fixture()
def make_member(app_ctx, clock):
    """Register a member through the normal path; returns (member, user)."""
    counter = {'n': 0}

    def _make(full_name='Juan Dela Cruz', plan='Monthly', start_date='2025-01-15',
              email='auto', **kwargs):
        counter['n'] += 1
        if email == 'auto':
            email = f'member{counter["n"]}@example.com'
        return Member.register(full_name=full_name, plan=plan, start_date=start_date,
                               now=clock(), email=email, **kwargs)
    return _make