from datetime import date, datetime

import pytest

from gymledger.errors import InvalidPlan, ValidationError
from gymledger.models.member import Member, StatusCode
from gymledger.models.user import User

NOW = datetime(2025, 1, 15, 9, 0)


def _member(end_date, inactive=False, plan='Monthly'):
    return Member(id=1, full_name='Test', plan=plan, start_date='2025-01-01',
                  end_date=end_date, inactive=inactive)


# -----------------------------------------
# Status derivation
# -----------------------------------------
@pytest.mark.parametrize("end_date,code,days_left", [
    (date(2025, 1, 22), StatusCode.EXPIRING, 7),
    (date(2025, 1, 15), StatusCode.EXPIRING, 0),
    (date(2025, 1, 23), StatusCode.ACTIVE, 8),
    (date(2025, 1, 14), StatusCode.EXPIRED, -1),
])
def test_status_boundaries(end_date, code, days_left):
    status = _member(end_date).compute_status(NOW)
    assert status.code is code
    assert status.days_left == days_left


def test_expiring_label_shows_days():
    assert _member(date(2025, 1, 18)).compute_status(NOW).label == 'Expiring (3d)'


def test_inactive_overrides_dates():
    status = _member(date(2030, 1, 1), inactive=True).compute_status(NOW)
    assert status.code is StatusCode.INACTIVE
    assert status.days_left is None
    assert status.to_dict() == {'code': 'INACTIVE', 'label': 'Inactive',
                                'className': 'inactive', 'daysLeft': None}


def test_auto_end_date():
    assert Member.auto_end_date('Daily', date(2025, 1, 15)) == date(2025, 1, 15)
    assert Member.auto_end_date('Monthly', date(2025, 1, 31)) == date(2025, 2, 28)
    assert Member.auto_end_date('Quarterly', date(2025, 1, 15)) == date(2025, 4, 15)
    assert Member.auto_end_date('Annual', date(2024, 2, 29)) == date(2025, 2, 28)


def test_unknown_plan_rejected_on_construction():
    with pytest.raises(InvalidPlan):
        Member(full_name='X', plan='Weekly', start_date='2025-01-01', end_date='2025-02-01')


# -----------------------------------------
# Persistence-backed operations
# -----------------------------------------
def test_register_without_email_has_no_login(make_member):
    member, user = make_member(email=None)
    assert user is None
    assert member.user_id is None
    assert member.end_date == date(2025, 2, 15)
    assert Member.get_by_id(member.id).full_name == 'Juan Dela Cruz'


def test_register_flat_plan_posts_subscription_fee(make_member, flask_app):
    member, user = make_member(plan='Quarterly')
    fresh = User.get_by_id(user.id)
    assert fresh.balance == flask_app.config['INITIAL_SUBSCRIPTION_FEE']
    assert member.end_date == date(2025, 4, 15)


def test_register_daily_plan_starts_at_zero(make_member):
    member, user = make_member(plan='Daily')
    assert member.end_date == member.start_date
    assert User.get_by_id(user.id).balance == 0


def test_register_rejects_duplicate_email(make_member):
    make_member(email='dup@example.com')
    with pytest.raises(ValidationError):
        make_member(email='dup@example.com')
    assert len(Member.get_all()) == 1


def test_register_rejects_end_before_start(make_member):
    with pytest.raises(ValidationError):
        make_member(start_date='2025-01-15', end_date='2025-01-10')


def test_register_rejects_bad_plan(make_member):
    with pytest.raises(InvalidPlan):
        make_member(plan='Lifetime')


def test_renew_monthly_clamps_and_counts(make_member, clock):
    member, _ = make_member(plan='Monthly', start_date='2024-12-31')
    clock.set(datetime(2025, 1, 31, 10, 0))
    member.renew(clock())
    stored = Member.get_by_id(member.id)
    assert stored.start_date == date(2025, 1, 31)
    assert stored.end_date == date(2025, 2, 28)
    assert stored.renewals == 1
    assert stored.inactive is False


def test_renew_daily_resets_to_today(make_member, clock):
    member, _ = make_member(plan='Daily', start_date='2025-01-01')
    member.toggle_status()
    clock.set(datetime(2025, 1, 20, 7, 30))
    member.renew(clock())
    stored = Member.get_by_id(member.id)
    assert stored.start_date == stored.end_date == date(2025, 1, 20)
    assert stored.inactive is False
    assert stored.renewals == 1


def test_renew_does_not_touch_balance(make_member, clock):
    member, user = make_member(plan='Monthly')
    before = User.get_by_id(user.id).balance
    member.renew(clock())
    assert User.get_by_id(user.id).balance == before


def test_toggle_status_keeps_dates(make_member):
    member, _ = make_member()
    member.toggle_status()
    stored = Member.get_by_id(member.id)
    assert stored.inactive is True
    assert stored.end_date == date(2025, 2, 15)
    assert stored.renewals == 0


def test_update_links_and_unlinks_login(make_member):
    member, _ = make_member(email=None)
    member.update('Maria Clara', 'Annual', '2025-01-15', '2026-01-15', email='maria@example.com')
    user = User.get_by_email('maria@example.com')
    assert user is not None
    assert Member.get_by_id(member.id).user_id == user.id

    member.update('Maria Clara', 'Annual', '2025-01-15', '2026-01-15', email='')
    assert Member.get_by_id(member.id).user_id is None
    assert User.get_by_id(user.id) is not None


def test_update_requires_end_date(make_member):
    member, _ = make_member()
    with pytest.raises(ValidationError):
        member.update('Juan', 'Monthly', '2025-01-15', None)


def test_destroy_removes_member_and_login(make_member):
    member, user = make_member()
    assert member.destroy() is True
    assert Member.get_by_id(member.id) is None
    assert User.get_by_id(user.id) is None


def test_destroy_keeps_admin_login(make_member):
    admin = User.get_by_email('admin@gym.local')
    member, _ = make_member(email=None)
    member.user_id = admin.id
    member.save()
    assert member.destroy() is False
    assert User.get_by_id(admin.id) is not None


def test_get_expiring_and_status_counts(make_member, clock):
    make_member(full_name='Soon', plan='Daily', start_date='2025-01-16')
    make_member(full_name='Later', plan='Annual')
    old, _ = make_member(full_name='Gone', plan='Daily', start_date='2025-01-01')
    off, _ = make_member(full_name='Off', plan='Daily', start_date='2025-01-17')
    off.toggle_status()

    expiring = Member.get_expiring(clock(), 7)
    assert [m.full_name for m in expiring] == ['Soon']

    counts = Member.status_counts(Member.get_all(), clock())
    assert counts == {'ACTIVE': 1, 'EXPIRING': 1, 'EXPIRED': 1, 'INACTIVE': 1}


def test_expiring_window_follows_config(app_ctx, make_member, clock):
    app_ctx.config['EXPIRING_WINDOW_DAYS'] = 3
    member, _ = make_member(plan='Daily', start_date='2025-01-20')
    assert member.compute_status(clock()).code is StatusCode.ACTIVE
    assert member.compute_status(clock(), window=7).code is StatusCode.EXPIRING
    assert Member.get_expiring(clock()) == []
    assert [m.id for m in Member.get_expiring(clock(), 7)] == [member.id]


def test_set_password_creates_missing_login(make_member):
    member, _ = make_member(email=None)
    member.email = 'walkin@example.com'
    member.save()

    user = member.set_password('newsecret1', 'newsecret1')
    assert Member.get_by_id(member.id).user_id == user.id
    assert User.authenticate('walkin@example.com', 'newsecret1').id == user.id
    assert user.balance == 0


def test_set_password_validation(make_member):
    member, user = make_member()
    with pytest.raises(ValidationError):
        member.set_password('short', 'short')
    with pytest.raises(ValidationError):
        member.set_password('newsecret1', 'newsecret2')
    member.set_password('newsecret1', 'newsecret1')
    assert User.authenticate(user.email, 'newsecret1') is not None
