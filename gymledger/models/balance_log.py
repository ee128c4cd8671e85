from decimal import Decimal

from flask import current_app

from gymledger.errors import InsufficientBalance, NotFound, ValidationError
from gymledger.utils.helpers import parse_datetime, to_money
from .database import execute_query, joined_transaction, on_commit, retry_on_conflict, DEFAULT_DB_PATH
from .member import Member

LOG_COLUMNS = 'id, user_id, amount, balance_after, type, description, created_at'

MARK_PAID = 'mark_paid'
VIRTUAL_ENTRY_ID = -1


def _timestamp(now):
    return now.isoformat(sep=' ')


class BalanceLog:
    """Append-only ledger of balance changes.

    Every change to ``users.balance`` happens in ``apply_delta``, in the same
    transaction as the row that records it, so replaying ``amount`` in id
    order from zero reproduces each ``balance_after`` and the stored balance.
    Rows are never updated; they go away only when their user is deleted.
    """

    def __init__(self, id=None, user_id=None, amount=0, balance_after=0, type=None,
                 description=None, created_at=None, is_virtual=False):
        self.id = id
        self.user_id = user_id
        self.amount = to_money(amount)
        self.balance_after = to_money(balance_after)
        self.type = type
        self.description = description
        self.created_at = parse_datetime(created_at)
        self.is_virtual = is_virtual

    @classmethod
    def _db_path(cls):
        return current_app.config.get('DATABASE_PATH', DEFAULT_DB_PATH)

    @classmethod
    def _from_row(cls, row):
        if not row:
            return None
        return cls(id=row[0], user_id=row[1], amount=row[2], balance_after=row[3],
                   type=row[4], description=row[5], created_at=row[6])

    @classmethod
    def _current_balance(cls, user, conn=None):
        rows = execute_query('SELECT balance FROM users WHERE id = ?', (user.id,),
                             cls._db_path(), fetch=True, conn=conn)
        if not rows:
            raise NotFound(f'User {user.id}')
        return to_money(rows[0][0])

    # -------------------- Ledger primitive --------------------

    @classmethod
    @retry_on_conflict
    def apply_delta(cls, user, amount, type, description, now, conn=None):
        """Add ``amount`` (negative for debits) to the user's balance and
        append the matching entry. A zero amount writes nothing and returns None."""
        amount = to_money(amount)
        if amount == 0:
            return None

        with joined_transaction(conn, cls._db_path()) as conn:
            new_balance = cls._current_balance(user, conn) + amount
            execute_query('UPDATE users SET balance = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                          (new_balance, user.id), cls._db_path(), conn=conn)
            entry_id = execute_query(
                f'''INSERT INTO balance_logs (user_id, amount, balance_after, type, description, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)''',
                (user.id, amount, new_balance, type, description, _timestamp(now)),
                cls._db_path(), conn=conn
            )
            on_commit(conn, lambda: user._sync_balance(new_balance))

        current_app.logger.info("Ledger user=%s %s %+.2f -> %.2f (entry %s)",
                                user.id, type, amount, new_balance, entry_id)
        return cls(id=entry_id, user_id=user.id, amount=amount, balance_after=new_balance,
                   type=type, description=description, created_at=now)

    @staticmethod
    def _non_negative(amount, field='amount'):
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError(f'{field} cannot be negative')
        return amount

    @classmethod
    @retry_on_conflict
    def set_balance(cls, user, new_value, now, type=None, description=None, conn=None):
        new_value = cls._non_negative(new_value, 'balance')
        with joined_transaction(conn, cls._db_path()) as conn:
            delta = new_value - cls._current_balance(user, conn)
            return cls.apply_delta(user, delta, type or 'admin_set',
                                   description if description is not None else 'Admin set balance',
                                   now, conn=conn)

    @classmethod
    @retry_on_conflict
    def add_balance(cls, user, amount, now, type=None, description=None, conn=None):
        amount = cls._non_negative(amount)
        return cls.apply_delta(user, amount, type or 'admin_add',
                               description if description is not None else 'Admin added to balance',
                               now, conn=conn)

    @classmethod
    @retry_on_conflict
    def subtract_balance(cls, user, amount, now, type=None, description=None, conn=None):
        amount = cls._non_negative(amount)
        with joined_transaction(conn, cls._db_path()) as conn:
            current = cls._current_balance(user, conn)
            if current < amount:
                current_app.logger.warning("Rejected debit of %s for user %s (balance %s)",
                                           amount, user.id, current)
                raise InsufficientBalance(amount, current)
            return cls.apply_delta(user, -amount, type or 'admin_subtract',
                                   description if description is not None else 'Admin deducted from balance',
                                   now, conn=conn)

    @classmethod
    def record_purchase(cls, user, product, amount, now, note=None):
        """POS-style sale that increases what the member owes."""
        if not product or not str(product).strip():
            raise ValidationError('product is required')
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError('amount must be greater than zero')
        description = f'Product: {str(product).strip()}'
        if note:
            description += f' - {note}'
        return cls.add_balance(user, amount, now, type='purchase', description=description)

    # -------------------- Reconciliation --------------------

    @classmethod
    def _last_mark_paid_id(cls, user_id, conn=None):
        rows = execute_query('SELECT MAX(id) FROM balance_logs WHERE user_id = ? AND type = ?',
                             (user_id, MARK_PAID), cls._db_path(), fetch=True, conn=conn)
        return rows[0][0] if rows else None

    @classmethod
    def _charges_since_last_payment(cls, user_id, limit, conn=None):
        last_paid = cls._last_mark_paid_id(user_id, conn)
        query = f'SELECT {LOG_COLUMNS} FROM balance_logs WHERE user_id = ? AND amount > 0'
        params = [user_id]
        if last_paid:
            query += ' AND id > ?'
            params.append(last_paid)
        query += ' ORDER BY id DESC'
        if limit:
            query += ' LIMIT ?'
            params.append(limit)
        rows = execute_query(query, tuple(params), cls._db_path(), fetch=True, conn=conn)
        return [cls._from_row(r) for r in rows]

    @classmethod
    def _virtual_entry(cls, user_id, balance, now):
        return cls(id=VIRTUAL_ENTRY_ID, user_id=user_id, amount=balance, balance_after=balance,
                   type='subscription_fee',
                   description='Monthly gym subscription fee (current outstanding membership)',
                   created_at=now, is_virtual=True)

    @classmethod
    def outstanding_entries(cls, user, now, limit=None, conn=None):
        """Charges not yet covered by a ``mark_paid`` entry, newest first.

        When there are none but the user still owes money on a flat plan, a
        single unsaved entry with id -1 stands in for the whole balance so it
        can still be marked as paid.
        """
        if limit is None:
            limit = current_app.config.get('OUTSTANDING_PAGE_SIZE', 50)
        entries = cls._charges_since_last_payment(user.id, limit, conn)
        if entries:
            return entries

        balance = cls._current_balance(user, conn)
        member = Member.get_by_user_id(user.id, conn=conn)
        is_daily = member is not None and member.plan.is_pay_as_you_go
        if balance > 0 and not is_daily:
            return [cls._virtual_entry(user.id, balance, now)]
        return []

    @classmethod
    @retry_on_conflict
    def mark_paid(cls, user, entry_ids, now, description=None):
        """Settle the selected outstanding charges with one ``mark_paid`` debit."""
        ids = list(dict.fromkeys(int(i) for i in entry_ids or []))
        if not ids:
            raise ValidationError('Select at least one entry to mark as paid')

        with joined_transaction(None, cls._db_path()) as conn:
            outstanding = {e.id: e for e in cls.outstanding_entries(user, now, limit=0, conn=conn)}
            total = Decimal('0.00')
            for entry_id in ids:
                entry = outstanding.get(entry_id)
                if entry is None:
                    raise ValidationError(f'Entry {entry_id} is not an outstanding charge of this user')
                total += entry.amount
            paid = cls.subtract_balance(user, total, now, type=MARK_PAID,
                                        description=description or 'Marked as paid', conn=conn)

        current_app.logger.info("User %s paid %s covering entries %s", user.id, total, ids)
        return paid

    # -------------------- Reads --------------------

    @classmethod
    def for_user(cls, user_id, limit=20):
        rows = execute_query(f'SELECT {LOG_COLUMNS} FROM balance_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?',
                             (user_id, limit), cls._db_path(), fetch=True)
        return [cls._from_row(r) for r in rows]

    @classmethod
    def replay_check(cls, user):
        """Replay the user's ledger from zero.

        Returns ``(consistent, total)``: consistent is False when any
        ``balance_after`` or the stored balance disagrees with the running sum.
        """
        rows = execute_query(f'SELECT {LOG_COLUMNS} FROM balance_logs WHERE user_id = ? ORDER BY id',
                             (user.id,), cls._db_path(), fetch=True)
        running = Decimal('0.00')
        consistent = True
        for entry in (cls._from_row(r) for r in rows):
            running += entry.amount
            if running != entry.balance_after:
                consistent = False
        if running != cls._current_balance(user):
            consistent = False
        return consistent, running

    def to_dict(self):
        return {
            'id': self.id,
            'createdAt': self.created_at.strftime('%Y-%m-%d %H:%M') if self.created_at else None,
            'type': self.type,
            'description': self.description,
            'amount': float(self.amount),
            'balanceAfter': float(self.balance_after),
            'virtual': self.is_virtual,
        }

    def __repr__(self):
        return f"<BalanceLog id={self.id} user={self.user_id} {self.type} {self.amount} -> {self.balance_after}>"
