from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app

from gymledger.errors import ValidationError
from gymledger.utils.helpers import (
    CENT, duration_minutes, format_duration, parse_date, parse_datetime, to_money
)
from .database import execute_query, transaction, retry_on_conflict, DEFAULT_DB_PATH
from .member import Member

SESSION_COLUMNS = 'id, user_id, time_in, time_out, credits_used, hourly_rate, is_active, notes'

SESSION_FEE_DESCRIPTION = 'Daily plan gym session fee'


def _ts(value):
    return value.isoformat(sep=' ') if value else None


class TimeSession:
    """One gym visit: open (``is_active``) until ``time_out`` closes it for good.

    ``hourly_rate`` is captured at time-in; only pay-as-you-go members get a
    non-zero rate, so only their sessions ever reach the ledger.
    """

    def __init__(self, id=None, user_id=None, time_in=None, time_out=None, credits_used=0,
                 hourly_rate=0, is_active=True, notes=None):
        self.id = id
        self.user_id = user_id
        self.time_in = parse_datetime(time_in)
        self.time_out = parse_datetime(time_out)
        self.credits_used = to_money(credits_used)
        self.hourly_rate = to_money(hourly_rate)
        self.is_active = bool(is_active)
        self.notes = notes

        # extras added by JOINs
        self.user_name = None
        self.user_email = None
        self.plan = None

    @classmethod
    def _db_path(cls):
        return current_app.config.get('DATABASE_PATH', DEFAULT_DB_PATH)

    @classmethod
    def _from_row(cls, row):
        if not row:
            return None
        return cls(id=row[0], user_id=row[1], time_in=row[2], time_out=row[3],
                   credits_used=row[4], hourly_rate=row[5], is_active=row[6], notes=row[7])

    # -------------------- Cost and duration --------------------

    def live_credits_used(self, now):
        """Frozen cost once closed; otherwise fractional hours times the rate, to the cent."""
        if not self.is_active:
            return self.credits_used
        seconds = max((now - self.time_in).total_seconds(), 0)
        hours = Decimal(str(seconds)) / Decimal(3600)
        return (hours * self.hourly_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    def duration_minutes(self, now):
        return duration_minutes(self.time_in, self.time_out, now)

    def formatted_duration(self, now):
        return format_duration(self.duration_minutes(now))

    # -------------------- Fetchers --------------------

    @classmethod
    def get_by_id(cls, session_id):
        rows = execute_query(f'SELECT {SESSION_COLUMNS} FROM time_sessions WHERE id = ?',
                             (session_id,), cls._db_path(), fetch=True)
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_active_for_user(cls, user_id, conn=None):
        rows = execute_query(
            f'SELECT {SESSION_COLUMNS} FROM time_sessions WHERE user_id = ? AND is_active = 1',
            (user_id,), cls._db_path(), fetch=True, conn=conn
        )
        return cls._from_row(rows[0]) if rows else None

    @classmethod
    def get_todays_for_user(cls, user_id, now):
        start = datetime.combine(now.date(), datetime.min.time())
        rows = execute_query(
            f'''SELECT {SESSION_COLUMNS} FROM time_sessions
                WHERE user_id = ? AND time_in >= ? AND time_in < ?
                ORDER BY time_in DESC''',
            (user_id, _ts(start), _ts(start + timedelta(days=1))), cls._db_path(), fetch=True
        )
        return [cls._from_row(r) for r in rows]

    @classmethod
    def admin_logs(cls, date_from=None, date_to=None, user_id=None, active=None,
                   page=1, per_page=20):
        """Filtered, paginated session listing for the admin time-logs view.

        Returns ``(sessions, total)``.
        """
        per_page = int(per_page)
        if per_page < 10 or per_page > 100:
            raise ValidationError('per_page must be between 10 and 100')
        page = max(int(page), 1)

        where = []
        params = []
        if user_id:
            where.append('s.user_id = ?')
            params.append(int(user_id))
        if active is not None and str(active) != '':
            if str(active) not in ('0', '1'):
                raise ValidationError('active must be 0 or 1')
            where.append('s.is_active = ?')
            params.append(int(active))
        date_from = parse_date(date_from)
        if date_from:
            where.append('date(s.time_in) >= ?')
            params.append(date_from.isoformat())
        date_to = parse_date(date_to)
        if date_to:
            where.append('date(s.time_in) <= ?')
            params.append(date_to.isoformat())
        clause = f"WHERE {' AND '.join(where)}" if where else ''

        db_path = cls._db_path()
        total = execute_query(f'SELECT COUNT(*) FROM time_sessions s {clause}',
                              tuple(params), db_path, fetch=True)[0][0]
        columns = ', '.join(f's.{c.strip()}' for c in SESSION_COLUMNS.split(','))
        rows = execute_query(
            f'''SELECT {columns}, u.name, u.email, m.plan
                FROM time_sessions s
                JOIN users u ON u.id = s.user_id
                LEFT JOIN members m ON m.user_id = s.user_id
                {clause}
                ORDER BY s.time_in DESC, s.id DESC
                LIMIT ? OFFSET ?''',
            tuple(params) + (per_page, (page - 1) * per_page), db_path, fetch=True
        )
        sessions = []
        for row in rows:
            session = cls._from_row(row)
            session.user_name, session.user_email, session.plan = row[8], row[9], row[10]
            sessions.append(session)
        return sessions, total

    # -------------------- Engine --------------------

    @classmethod
    def _rate_for(cls, user, conn=None):
        member = Member.get_by_user_id(user.id, conn=conn)
        if member is not None and member.plan.is_pay_as_you_go:
            return to_money(current_app.config.get('DAILY_HOURLY_RATE', Decimal('10.00')))
        return Decimal('0.00')

    @classmethod
    def _close(cls, user, session, now, conn):
        """Freeze cost, close the row and post the fee for pay-as-you-go members."""
        from .balance_log import BalanceLog

        session.credits_used = session.live_credits_used(now)
        session.time_out = now
        session.is_active = False
        execute_query('''UPDATE time_sessions SET time_out = ?, credits_used = ?, is_active = 0
                         WHERE id = ?''',
                      (_ts(now), session.credits_used, session.id), cls._db_path(), conn=conn)

        member = Member.get_by_user_id(user.id, conn=conn)
        if member is not None and member.plan.is_pay_as_you_go and session.credits_used > 0:
            BalanceLog.apply_delta(user, session.credits_used, 'session_fee',
                                   SESSION_FEE_DESCRIPTION, now, conn=conn)
        current_app.logger.info("Closed session %s for user %s: %s min, %s charged",
                                session.id, user.id, session.duration_minutes(now), session.credits_used)
        return session

    @classmethod
    @retry_on_conflict
    def time_in(cls, user, now):
        """Open a session, closing any session the user left open first."""
        with transaction(cls._db_path()) as conn:
            stale = cls.get_active_for_user(user.id, conn=conn)
            if stale is not None:
                current_app.logger.warning("User %s already had open session %s; closing it",
                                           user.id, stale.id)
                cls._close(user, stale, now, conn)
            rate = cls._rate_for(user, conn)
            session_id = execute_query(
                '''INSERT INTO time_sessions (user_id, time_in, credits_used, hourly_rate, is_active)
                   VALUES (?, ?, 0, ?, 1)''',
                (user.id, _ts(now), rate), cls._db_path(), conn=conn
            )
        current_app.logger.info("Opened session %s for user %s at rate %s", session_id, user.id, rate)
        return cls(id=session_id, user_id=user.id, time_in=now, hourly_rate=rate, is_active=True)

    @classmethod
    @retry_on_conflict
    def time_out(cls, user, now):
        """Close the open session. Returns None when there is nothing to close."""
        with transaction(cls._db_path()) as conn:
            session = cls.get_active_for_user(user.id, conn=conn)
            if session is None:
                current_app.logger.info("Time out for user %s with no open session", user.id)
                return None
            return cls._close(user, session, now, conn)

    @classmethod
    def toggle(cls, user, now):
        """QR / button entry point. Returns ``(action, session)``."""
        if cls.get_active_for_user(user.id) is not None:
            session = cls.time_out(user, now)
            if session is not None:
                return 'time_out', session
        return 'time_in', cls.time_in(user, now)

    def to_dict(self, now):
        data = {
            'id': self.id,
            'userId': self.user_id,
            'timeIn': _ts(self.time_in),
            'timeOut': _ts(self.time_out),
            'durationMinutes': self.duration_minutes(now),
            'duration': self.formatted_duration(now),
            'creditsUsed': float(self.live_credits_used(now)),
            'hourlyRate': float(self.hourly_rate),
            'isActive': self.is_active,
            'notes': self.notes,
        }
        if self.user_name is not None:
            data['user'] = {'id': self.user_id, 'name': self.user_name, 'email': self.user_email}
            data['plan'] = self.plan
        return data

    def __repr__(self):
        return f"<TimeSession id={self.id} user={self.user_id} active={self.is_active}>"
