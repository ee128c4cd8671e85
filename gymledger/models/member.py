import enum
from collections import namedtuple
from datetime import date, timedelta

from flask import current_app

from gymledger.errors import ValidationError
from gymledger.utils.helpers import add_months, days_between, parse_date, validate_email
from .database import execute_query, transaction, retry_on_conflict, DEFAULT_DB_PATH
from .membership_plan import MembershipPlan

EXPIRING_WINDOW_DAYS = 7
MIN_PASSWORD_LENGTH = 8

MEMBER_COLUMNS = '''id, user_id, full_name, email, phone, plan, start_date, end_date,
                    notes, inactive, renewals, created_at, updated_at'''


class StatusCode(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRING = "EXPIRING"
    EXPIRED = "EXPIRED"
    INACTIVE = "INACTIVE"


class MemberStatus(namedtuple('MemberStatus', 'code label class_name days_left')):
    """Derived membership status. ``code`` and ``days_left`` are the contract;
    label and class_name are for display."""

    __slots__ = ()

    def to_dict(self):
        return {
            'code': self.code.value,
            'label': self.label,
            'className': self.class_name,
            'daysLeft': self.days_left,
        }


def expiring_window():
    """Configured EXPIRING bound in days, or the default outside an app context"""
    try:
        return int(current_app.config.get('EXPIRING_WINDOW_DAYS', EXPIRING_WINDOW_DAYS))
    except RuntimeError:
        return EXPIRING_WINDOW_DAYS


def _to_str_date(d):
    """Serialize a date to 'YYYY-MM-DD' or None."""
    if d is None:
        return None
    if isinstance(d, date):
        return d.isoformat()
    return str(d)


class Member:
    """Gym membership, optionally tied to one User login.

    Status is never stored; it is derived from ``inactive`` and ``end_date``
    by ``compute_status``. Dates only move through ``renew`` or an admin edit.
    """

    def __init__(self, id=None, user_id=None, full_name=None, email=None, phone=None,
                 plan=MembershipPlan.MONTHLY, start_date=None, end_date=None, notes=None,
                 inactive=False, renewals=0, created_at=None, updated_at=None):
        self.id = id
        self.user_id = user_id
        self.full_name = full_name
        self.email = email
        self.phone = phone
        self.plan = MembershipPlan.from_value(plan)
        self.start_date = parse_date(start_date)
        self.end_date = parse_date(end_date)
        self.notes = notes
        self.inactive = bool(inactive)
        self.renewals = int(renewals or 0)
        self.created_at = created_at
        self.updated_at = updated_at

    @classmethod
    def _db_path(cls):
        return current_app.config.get('DATABASE_PATH', DEFAULT_DB_PATH)

    @classmethod
    def _from_row(cls, row):
        if not row:
            return None
        return cls(id=row[0], user_id=row[1], full_name=row[2], email=row[3], phone=row[4],
                   plan=row[5], start_date=row[6], end_date=row[7], notes=row[8],
                   inactive=row[9], renewals=row[10], created_at=row[11], updated_at=row[12])

    # -------------------- State machine --------------------

    @staticmethod
    def auto_end_date(plan, start_date):
        """End date used when none is given: same day for Daily, else start + plan months."""
        plan = MembershipPlan.from_value(plan)
        if plan is MembershipPlan.DAILY:
            return start_date
        return add_months(start_date, plan.months)

    def compute_status(self, now, window=None):
        if self.inactive:
            return MemberStatus(StatusCode.INACTIVE, 'Inactive', 'inactive', None)

        days_left = days_between(now, self.end_date)
        if days_left < 0:
            return MemberStatus(StatusCode.EXPIRED, 'Expired', 'expired', days_left)
        if window is None:
            window = expiring_window()
        if days_left <= window:
            return MemberStatus(StatusCode.EXPIRING, f'Expiring ({days_left}d)', 'expiring', days_left)
        return MemberStatus(StatusCode.ACTIVE, 'Active', 'active', days_left)

    def renew(self, now, conn=None):
        """Start a new term today. Does not touch the user's balance."""
        today = now.date() if hasattr(now, 'date') else now
        self.start_date = today
        self.end_date = self.auto_end_date(self.plan, today)
        self.inactive = False
        self.renewals += 1
        self.save(conn=conn)
        current_app.logger.info("Renewed member %s (%s) until %s, renewals=%s",
                                self.id, self.plan.value, self.end_date, self.renewals)
        return self

    def toggle_status(self, conn=None):
        self.inactive = not self.inactive
        self.save(conn=conn)
        current_app.logger.info("Member %s inactive=%s", self.id, self.inactive)
        return self

    # -------------------- Fetchers --------------------

    @classmethod
    def get_by_id(cls, member_id, conn=None):
        rows = execute_query(f'SELECT {MEMBER_COLUMNS} FROM members WHERE id = ?',
                             (member_id,), cls._db_path(), fetch=True, conn=conn)
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_by_user_id(cls, user_id, conn=None):
        rows = execute_query(f'SELECT {MEMBER_COLUMNS} FROM members WHERE user_id = ?',
                             (user_id,), cls._db_path(), fetch=True, conn=conn)
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_all(cls):
        rows = execute_query(f'SELECT {MEMBER_COLUMNS} FROM members ORDER BY created_at DESC, id DESC',
                             (), cls._db_path(), fetch=True)
        return [cls._from_row(r) for r in rows]

    @classmethod
    def get_expiring(cls, now, days=None):
        """Members not deactivated whose end date falls within the next ``days`` days"""
        if days is None:
            days = expiring_window()
        today = now.date() if hasattr(now, 'date') else now
        rows = execute_query(
            f'''SELECT {MEMBER_COLUMNS} FROM members
                WHERE inactive = 0 AND end_date BETWEEN ? AND ?
                ORDER BY end_date''',
            (today.isoformat(), (today + timedelta(days=days)).isoformat()), cls._db_path(), fetch=True
        )
        return [cls._from_row(r) for r in rows]

    @classmethod
    def status_counts(cls, members, now):
        counts = {code.value: 0 for code in StatusCode}
        window = expiring_window()
        for member in members:
            counts[member.compute_status(now, window).code.value] += 1
        return counts

    # -------------------- Writes --------------------

    def save(self, conn=None):
        db_path = self._db_path()
        params = (self.user_id, self.full_name, self.email, self.phone, self.plan.value,
                  _to_str_date(self.start_date), _to_str_date(self.end_date), self.notes,
                  int(self.inactive), self.renewals)
        if self.id:
            execute_query('''UPDATE members SET user_id = ?, full_name = ?, email = ?, phone = ?,
                                 plan = ?, start_date = ?, end_date = ?, notes = ?, inactive = ?,
                                 renewals = ?, updated_at = CURRENT_TIMESTAMP
                             WHERE id = ?''', params + (self.id,), db_path, conn=conn)
        else:
            self.id = execute_query('''INSERT INTO members (user_id, full_name, email, phone, plan,
                                           start_date, end_date, notes, inactive, renewals)
                                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                                    params, db_path, conn=conn)
        return self.id

    @staticmethod
    def _validate(full_name, email, plan, start_date, end_date, require_end_date=False):
        if not full_name or not str(full_name).strip():
            raise ValidationError('Full name is required')
        plan = MembershipPlan.from_value(plan)
        start = parse_date(start_date)
        if start is None:
            raise ValidationError('Start date is required')
        end = parse_date(end_date)
        if end is None:
            if require_end_date:
                raise ValidationError('End date is required')
            end = Member.auto_end_date(plan, start)
        if end < start:
            raise ValidationError('End date must be on or after the start date')
        email = (email or '').strip() or None
        if email and not validate_email(email):
            raise ValidationError(f'Invalid email address: {email}')
        return str(full_name).strip(), email, plan, start, end

    @classmethod
    @retry_on_conflict
    def register(cls, full_name, plan, start_date, now, email=None, phone=None,
                 end_date=None, notes=None):
        """Admin registration.

        With an email a login is created as well; flat-plan logins start
        owing the subscription fee, posted through the ledger so it shows in
        outstanding entries. Returns ``(member, user_or_None)``.
        """
        from .balance_log import BalanceLog
        from .user import User

        full_name, email, plan, start, end = cls._validate(full_name, email, plan, start_date, end_date)
        member = cls(full_name=full_name, email=email, phone=phone, plan=plan,
                     start_date=start, end_date=end, notes=notes)
        user = None
        with transaction(cls._db_path()) as conn:
            if email:
                if User.get_by_email(email, conn=conn):
                    raise ValidationError(f'Email already in use: {email}')
                user = User.create(full_name, email,
                                   current_app.config.get('DEFAULT_MEMBER_PASSWORD', 'password'),
                                   conn=conn)
                member.user_id = user.id
            member.save(conn=conn)
            if user is not None:
                user.member = member
                fee = current_app.config.get('INITIAL_SUBSCRIPTION_FEE')
                if not plan.is_pay_as_you_go and fee:
                    BalanceLog.apply_delta(user, fee, 'subscription_fee',
                                           f'{plan.value} gym subscription fee', now, conn=conn)
        current_app.logger.info("Registered member %s (%s) %s..%s", member.id, plan.value, start, end)
        return member, user

    @retry_on_conflict
    def update(self, full_name, plan, start_date, end_date, email=None, phone=None, notes=None):
        """Admin edit. A new email creates (or renames) the linked login; a
        blank email unlinks it but keeps the account."""
        from .user import User

        full_name, email, plan, start, end = self._validate(
            full_name, email, plan, start_date, end_date, require_end_date=True)
        with transaction(self._db_path()) as conn:
            if email:
                owner = User.get_by_email(email, conn=conn)
                if owner and owner.id != self.user_id:
                    raise ValidationError(f'Email already in use: {email}')
                user = User.get_by_id(self.user_id, conn=conn) if self.user_id else None
                if user:
                    user.update_profile(full_name, email, conn=conn)
                else:
                    user = User.create(full_name, email,
                                       current_app.config.get('DEFAULT_MEMBER_PASSWORD', 'password'),
                                       conn=conn)
                    self.user_id = user.id
            else:
                self.user_id = None
            self.full_name = full_name
            self.email = email
            self.phone = phone
            self.plan = plan
            self.start_date = start
            self.end_date = end
            self.notes = notes
            self.save(conn=conn)
        current_app.logger.info("Updated member %s", self.id)
        return self

    @retry_on_conflict
    def set_password(self, password, confirmation):
        """Admin reset of the member's login password.

        A member registered without a login gets one under their email.
        Returns the user.
        """
        from .user import User

        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
        if password != confirmation:
            raise ValidationError('Password confirmation does not match')

        with transaction(self._db_path()) as conn:
            user = User.get_by_id(self.user_id, conn=conn) if self.user_id else None
            if user:
                user.update_password(password, conn=conn)
            else:
                if not self.email:
                    raise ValidationError('Member has no email to create a login with')
                if User.get_by_email(self.email, conn=conn):
                    raise ValidationError(f'Email already in use: {self.email}')
                user = User.create(self.full_name, self.email, password, conn=conn)
                self.user_id = user.id
                self.save(conn=conn)
        current_app.logger.info("Password reset for member %s (user %s)", self.id, user.id)
        return user

    @retry_on_conflict
    def destroy(self):
        """Delete the membership, then its login unless that login is an admin.

        Returns True when the linked login was removed too.
        """
        from .user import User

        user_deleted = False
        with transaction(self._db_path()) as conn:
            user = User.get_by_id(self.user_id, conn=conn) if self.user_id else None
            execute_query('DELETE FROM members WHERE id = ?', (self.id,), self._db_path(), conn=conn)
            if user and not user.is_admin:
                user.delete(conn=conn)
                user_deleted = True
        current_app.logger.info("Deleted member %s (login removed: %s)", self.id, user_deleted)
        return user_deleted

    def to_dict(self, now=None):
        data = {
            'id': self.id,
            'userId': self.user_id,
            'hasUserAccount': self.user_id is not None,
            'fullName': self.full_name,
            'email': self.email,
            'phone': self.phone,
            'plan': self.plan.value,
            'startDate': _to_str_date(self.start_date),
            'endDate': _to_str_date(self.end_date),
            'notes': self.notes,
            'inactive': self.inactive,
            'renewals': self.renewals,
        }
        if now is not None:
            data['status'] = self.compute_status(now).to_dict()
        return data

    def __repr__(self):
        return f"<Member id={self.id} name={self.full_name} plan={self.plan.value} end={self.end_date}>"


