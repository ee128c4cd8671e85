from datetime import datetime
from decimal import Decimal

import pytest

from gymledger.errors import InsufficientBalance, ValidationError
from gymledger.models.balance_log import BalanceLog, VIRTUAL_ENTRY_ID
from gymledger.models.database import execute_query, transaction
from gymledger.models.user import User


def _entries(flask_app, user_id):
    return execute_query('SELECT type, amount, balance_after FROM balance_logs WHERE user_id = ? ORDER BY id',
                         (user_id,), flask_app.config['DATABASE_PATH'], fetch=True)


def test_apply_delta_updates_balance_and_appends_entry(make_user, clock, flask_app):
    user = make_user()
    entry = BalanceLog.apply_delta(user, Decimal('12.50'), 'purchase', 'Water', clock())
    assert entry.amount == Decimal('12.50')
    assert entry.balance_after == Decimal('12.50')
    assert user.balance == Decimal('12.50')
    assert User.get_by_id(user.id).balance == Decimal('12.50')
    assert len(_entries(flask_app, user.id)) == 1


def test_zero_delta_writes_nothing(make_user, clock, flask_app):
    user = make_user()
    assert BalanceLog.apply_delta(user, 0, 'admin_add', 'nothing', clock()) is None
    assert BalanceLog.set_balance(user, 0, clock()) is None
    assert _entries(flask_app, user.id) == []
    assert User.get_by_id(user.id).balance == 0


def test_named_operations_and_default_tags(make_user, clock, flask_app):
    user = make_user()
    BalanceLog.set_balance(user, Decimal('100'), clock())
    BalanceLog.add_balance(user, Decimal('25'), clock())
    BalanceLog.subtract_balance(user, Decimal('40'), clock())
    BalanceLog.set_balance(user, Decimal('10'), clock())

    rows = _entries(flask_app, user.id)
    assert [r[0] for r in rows] == ['admin_set', 'admin_add', 'admin_subtract', 'admin_set']
    assert [Decimal(str(r[1])) for r in rows] == [Decimal('100'), Decimal('25'), Decimal('-40'), Decimal('-75')]
    assert User.get_by_id(user.id).balance == Decimal('10.00')


def test_caller_can_override_type_and_description(make_user, clock):
    user = make_user()
    BalanceLog.add_balance(user, Decimal('30'), clock())
    entry = BalanceLog.subtract_balance(user, Decimal('30'), clock(), type='mark_paid', description='gcash')
    assert entry.type == 'mark_paid'
    assert entry.description == 'gcash'


def test_insufficient_balance_leaves_state_untouched(make_user, clock, flask_app):
    user = make_user()
    BalanceLog.set_balance(user, Decimal('20'), clock())
    with pytest.raises(InsufficientBalance) as exc:
        BalanceLog.subtract_balance(user, Decimal('25'), clock())
    assert exc.value.attempted == Decimal('25.00')
    assert exc.value.balance == Decimal('20.00')
    assert exc.value.status_code == 422
    assert User.get_by_id(user.id).balance == Decimal('20.00')
    assert len(_entries(flask_app, user.id)) == 1


def test_negative_amounts_are_rejected_not_clamped(make_user, clock):
    user = make_user()
    with pytest.raises(ValidationError):
        BalanceLog.set_balance(user, Decimal('-5'), clock())
    with pytest.raises(ValidationError):
        BalanceLog.add_balance(user, Decimal('-5'), clock())
    with pytest.raises(ValidationError):
        BalanceLog.subtract_balance(user, Decimal('-5'), clock())
    assert User.get_by_id(user.id).balance == 0


def test_replay_reproduces_every_snapshot(make_user, clock):
    user = make_user()
    BalanceLog.add_balance(user, Decimal('19.99'), clock())
    BalanceLog.record_purchase(user, 'Gatorade', Decimal('0.01'), clock())
    BalanceLog.subtract_balance(user, Decimal('5.50'), clock())
    BalanceLog.set_balance(user, Decimal('300'), clock())
    consistent, total = BalanceLog.replay_check(user)
    assert consistent
    assert total == Decimal('300.00') == User.get_by_id(user.id).balance


def test_replay_detects_balance_written_outside_ledger(make_user, clock, flask_app):
    user = make_user()
    BalanceLog.add_balance(user, Decimal('10'), clock())
    execute_query('UPDATE users SET balance = 99 WHERE id = ?', (user.id,), flask_app.config['DATABASE_PATH'])
    consistent, total = BalanceLog.replay_check(user)
    assert not consistent
    assert total == Decimal('10.00')


def test_record_purchase_description_and_validation(make_user, clock):
    user = make_user()
    entry = BalanceLog.record_purchase(user, 'Protein Bar', Decimal('45'), clock(), note='choco')
    assert entry.type == 'purchase'
    assert entry.description == 'Product: Protein Bar - choco'
    with pytest.raises(ValidationError):
        BalanceLog.record_purchase(user, '', Decimal('1'), clock())
    with pytest.raises(ValidationError):
        BalanceLog.record_purchase(user, 'Towel', Decimal('0'), clock())


# -----------------------------------------
# Outstanding entries and mark paid
# -----------------------------------------
def test_mark_paid_two_purchases(make_user, clock, flask_app):
    user = make_user()
    first = BalanceLog.record_purchase(user, 'Shake', Decimal('50.00'), clock())
    clock.advance(minutes=5)
    second = BalanceLog.record_purchase(user, 'Towel', Decimal('30.00'), clock())

    outstanding = BalanceLog.outstanding_entries(user, clock())
    assert [e.id for e in outstanding] == [second.id, first.id]

    paid = BalanceLog.mark_paid(user, [first.id, second.id], clock(), description='cash')
    assert paid.type == 'mark_paid'
    assert paid.amount == Decimal('-80.00')
    assert paid.description == 'cash'
    assert User.get_by_id(user.id).balance == Decimal('0.00')
    assert BalanceLog.outstanding_entries(user, clock()) == []
    assert [r[0] for r in _entries(flask_app, user.id)] == ['purchase', 'purchase', 'mark_paid']


def test_mark_paid_partial_selection(make_user, clock):
    user = make_user()
    first = BalanceLog.record_purchase(user, 'Shake', Decimal('50.00'), clock())
    BalanceLog.record_purchase(user, 'Towel', Decimal('30.00'), clock())
    BalanceLog.mark_paid(user, [first.id], clock())
    assert User.get_by_id(user.id).balance == Decimal('30.00')


def test_mark_paid_rejects_foreign_or_settled_entries(make_user, clock):
    alice = make_user(name='Alice')
    bob = make_user(name='Bob')
    bobs = BalanceLog.record_purchase(bob, 'Shake', Decimal('10'), clock())
    alices = BalanceLog.record_purchase(alice, 'Shake', Decimal('10'), clock())

    with pytest.raises(ValidationError):
        BalanceLog.mark_paid(alice, [bobs.id], clock())
    with pytest.raises(ValidationError):
        BalanceLog.mark_paid(alice, [], clock())

    BalanceLog.mark_paid(alice, [alices.id], clock())
    with pytest.raises(ValidationError):
        BalanceLog.mark_paid(alice, [alices.id], clock())
    assert User.get_by_id(alice.id).balance == 0
    assert User.get_by_id(bob.id).balance == Decimal('10.00')


def test_outstanding_entries_capped(make_user, clock, flask_app):
    flask_app.config['OUTSTANDING_PAGE_SIZE'] = 3
    user = make_user()
    for _ in range(5):
        BalanceLog.record_purchase(user, 'Water', Decimal('1'), clock())
    assert len(BalanceLog.outstanding_entries(user, clock())) == 3


def test_outstanding_skips_credits(make_user, clock):
    user = make_user()
    charge = BalanceLog.add_balance(user, Decimal('50'), clock())
    BalanceLog.subtract_balance(user, Decimal('10'), clock())
    assert [e.id for e in BalanceLog.outstanding_entries(user, clock())] == [charge.id]


def test_virtual_row_for_untracked_flat_plan_balance(make_member, clock):
    _, user = make_member(plan='Monthly')
    fee = BalanceLog.outstanding_entries(user, clock())[0]
    BalanceLog.subtract_balance(user, Decimal('150'), clock(), type='mark_paid', description='partial')

    outstanding = BalanceLog.outstanding_entries(user, clock())
    assert len(outstanding) == 1
    virtual = outstanding[0]
    assert virtual.id == VIRTUAL_ENTRY_ID
    assert virtual.is_virtual
    assert virtual.amount == fee.amount - Decimal('150')

    BalanceLog.mark_paid(user, [VIRTUAL_ENTRY_ID], clock(), description='rest')
    assert User.get_by_id(user.id).balance == 0
    assert BalanceLog.outstanding_entries(user, clock()) == []


def test_no_virtual_row_for_daily_plan(make_member, clock):
    _, user = make_member(plan='Daily')
    BalanceLog.add_balance(user, Decimal('40'), clock())
    BalanceLog.subtract_balance(user, Decimal('10'), clock(), type='mark_paid')
    assert BalanceLog.outstanding_entries(user, clock()) == []
    with pytest.raises(ValidationError):
        BalanceLog.mark_paid(user, [VIRTUAL_ENTRY_ID], clock())


def test_no_virtual_row_when_nothing_owed(make_user, clock):
    user = make_user()
    assert BalanceLog.outstanding_entries(user, clock()) == []


def test_entry_timestamps_come_from_clock(make_user, clock):
    user = make_user()
    clock.set(datetime(2024, 12, 31, 23, 59, 30))
    BalanceLog.add_balance(user, Decimal('5'), clock())
    entry = BalanceLog.for_user(user.id)[0]
    assert entry.created_at == datetime(2024, 12, 31, 23, 59, 30)
    assert entry.to_dict()['createdAt'] == '2024-12-31 23:59'


def test_joined_delta_reaches_user_only_after_commit(make_user, clock, flask_app):
    user = make_user()
    db_path = flask_app.config['DATABASE_PATH']

    with pytest.raises(RuntimeError):
        with transaction(db_path) as conn:
            BalanceLog.apply_delta(user, Decimal('5.00'), 'purchase', 'Towel', clock(), conn=conn)
            assert user.balance == Decimal('0.00')
            raise RuntimeError('outer step failed')
    assert user.balance == Decimal('0.00')
    assert _entries(flask_app, user.id) == []

    with transaction(db_path) as conn:
        BalanceLog.apply_delta(user, Decimal('5.00'), 'purchase', 'Towel', clock(), conn=conn)
        BalanceLog.apply_delta(user, Decimal('2.00'), 'purchase', 'Water', clock(), conn=conn)
    assert user.balance == Decimal('7.00')
