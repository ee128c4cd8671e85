from flask import session

from gymledger.utils import decorators


def _view(decorator):
    @decorator
    def view_fn():
        # sentinel return value to prove it ran
        return "OK"
    return view_fn


def test_login_required_returns_401_when_not_logged_in(flask_app):
    with flask_app.test_request_context('/protected'):
        session.pop('user_id', None)
        response, status = _view(decorators.login_required)()
        assert status == 401
        assert response.get_json()['message'] == 'Authentication required'


def test_login_required_allows_when_logged_in(flask_app):
    with flask_app.test_request_context('/protected'):
        session['user_id'] = 42
        assert _view(decorators.login_required)() == "OK"


def test_admin_required_rejects_members(flask_app):
    with flask_app.test_request_context('/admin'):
        session['user_id'] = 42
        session['role'] = 'member'
        _response, status = _view(decorators.admin_required)()
        assert status == 403


def test_admin_required_allows_admin(flask_app):
    with flask_app.test_request_context('/admin'):
        session['user_id'] = 1
        session['role'] = 'admin'
        assert _view(decorators.admin_required)() == "OK"


def test_member_required_rejects_admin_and_anonymous(flask_app):
    with flask_app.test_request_context('/member'):
        _response, status = _view(decorators.member_required)()
        assert status == 401
        session['user_id'] = 1
        session['role'] = 'admin'
        _response, status = _view(decorators.member_required)()
        assert status == 403
