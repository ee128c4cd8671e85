from collections import OrderedDict
from datetime import date, datetime, timedelta
from decimal import Decimal

from flask import current_app

from gymledger.errors import ValidationError
from gymledger.utils.helpers import add_months, duration_minutes, parse_datetime, to_money
from .database import execute_query, DEFAULT_DB_PATH

GRANULARITY_FORMATS = {
    'day': '%Y-%m-%d',
    'month': '%Y-%m',
    'year': '%Y',
}


def _format_for(granularity):
    try:
        return GRANULARITY_FORMATS[granularity]
    except KeyError:
        raise ValidationError(f"Unknown granularity: {granularity!r}") from None


def _as_timestamp(value):
    if not isinstance(value, datetime):
        value = datetime.combine(value, datetime.min.time())
    return value.isoformat(sep=' ')


def _bounds(start, end):
    """Turn dates into a half-open [start, end) timestamp window"""
    return _as_timestamp(start), _as_timestamp(end)


class Reports:
    """Read-only rollups over the ledger and time sessions.

    Revenue counts only ``mark_paid`` rows (money actually received);
    earnings count only closed sessions that were charged. All windows are
    half-open: ``start <= t < end``.
    """

    @classmethod
    def _db_path(cls):
        return current_app.config.get('DATABASE_PATH', DEFAULT_DB_PATH)

    @classmethod
    def _paid_rows(cls, start, end):
        lo, hi = _bounds(start, end)
        return execute_query(
            '''SELECT b.created_at, b.amount, b.description, u.name, b.balance_after
               FROM balance_logs b JOIN users u ON u.id = b.user_id
               WHERE b.type = 'mark_paid' AND b.created_at >= ? AND b.created_at < ?
               ORDER BY b.created_at, b.id''',
            (lo, hi), cls._db_path(), fetch=True
        )

    @classmethod
    def _session_rows(cls, start, end):
        lo, hi = _bounds(start, end)
        return execute_query(
            '''SELECT s.user_id, s.time_in, s.time_out, s.credits_used, s.is_active
               FROM time_sessions s
               WHERE s.time_in >= ? AND s.time_in < ?
               ORDER BY s.time_in, s.id''',
            (lo, hi), cls._db_path(), fetch=True
        )

    @classmethod
    def sales_totals(cls, granularity, start, end):
        """Realized revenue per period: ``[{'period', 'total', 'count'}]``"""
        fmt = _format_for(granularity)
        buckets = OrderedDict()
        for row in cls._paid_rows(start, end):
            key = parse_datetime(row[0]).strftime(fmt)
            bucket = buckets.setdefault(key, {'period': key, 'total': Decimal('0.00'), 'count': 0})
            bucket['total'] += abs(to_money(row[1]))
            bucket['count'] += 1
        return list(buckets.values())

    @classmethod
    def sales_transactions(cls, start, end):
        return [{
            'time': parse_datetime(row[0]).strftime('%Y-%m-%d %H:%M'),
            'description': row[2],
            'member': row[3],
            'amount': float(abs(to_money(row[1]))),
            'balanceAfter': float(to_money(row[4])),
        } for row in cls._paid_rows(start, end)]

    @classmethod
    def earnings_totals(cls, granularity, start, end):
        """Session fees per period, closed chargeable sessions only"""
        fmt = _format_for(granularity)
        buckets = OrderedDict()
        for user_id, time_in, time_out, credits, _active in cls._session_rows(start, end):
            credits = to_money(credits)
            if time_out is None or credits <= 0:
                continue
            key = parse_datetime(time_in).strftime(fmt)
            buckets[key] = buckets.get(key, Decimal('0.00')) + credits
        return [{'period': k, 'total': v} for k, v in buckets.items()]

    @classmethod
    def earnings_total(cls, start, end):
        return sum((b['total'] for b in cls.earnings_totals('year', start, end)), Decimal('0.00'))

    @classmethod
    def attendance_totals(cls, granularity, start, end, now):
        """Sessions, hours and distinct members per period (all plans count)"""
        fmt = _format_for(granularity)
        buckets = OrderedDict()
        for user_id, time_in, time_out, _credits, active in cls._session_rows(start, end):
            time_in = parse_datetime(time_in)
            key = time_in.strftime(fmt)
            bucket = buckets.setdefault(key, {'period': key, 'sessions': 0, 'active': 0,
                                              'minutes': 0, 'members': set()})
            bucket['sessions'] += 1
            bucket['active'] += 1 if active else 0
            bucket['minutes'] += duration_minutes(time_in, parse_datetime(time_out), now)
            bucket['members'].add(user_id)

        result = []
        for bucket in buckets.values():
            result.append({
                'period': bucket['period'],
                'sessions': bucket['sessions'],
                'active': bucket['active'],
                'hours': round(bucket['minutes'] / 60, 2),
                'members': len(bucket['members']),
            })
        return result

    @classmethod
    def _summary(cls, granularity, start, end, now):
        sales = cls.sales_totals(granularity, start, end)
        attendance = cls.attendance_totals(granularity, start, end, now)
        return {
            'start': start.isoformat(),
            'end': end.isoformat(),
            'sales': [dict(s, total=float(s['total'])) for s in sales],
            'revenue': float(sum((s['total'] for s in sales), Decimal('0.00'))),
            'transactions': sum(s['count'] for s in sales),
            'earnings': float(cls.earnings_total(start, end)),
            'attendance': attendance,
            'sessions': sum(a['sessions'] for a in attendance),
            'hours': round(sum(a['hours'] for a in attendance), 2),
        }

    @classmethod
    def daily_totals(cls, now):
        start = now.date()
        data = cls._summary('day', start, start + timedelta(days=1), now)
        data['recent'] = cls.sales_transactions(start, start + timedelta(days=1))
        return data

    @classmethod
    def monthly_totals(cls, now):
        """Current year broken down by month"""
        start = date(now.year, 1, 1)
        return cls._summary('month', start, date(now.year + 1, 1, 1), now)

    @classmethod
    def annual_totals(cls, now, years=5):
        start = date(now.year - years + 1, 1, 1)
        return cls._summary('year', start, date(now.year + 1, 1, 1), now)

    @classmethod
    def top_members(cls, start, end, limit=5):
        lo, hi = _bounds(start, end)
        rows = execute_query(
            '''SELECT u.id, u.name, COUNT(s.id) AS visits
               FROM time_sessions s JOIN users u ON u.id = s.user_id
               WHERE s.time_in >= ? AND s.time_in < ?
               GROUP BY u.id, u.name
               ORDER BY visits DESC, u.name
               LIMIT ?''',
            (lo, hi, limit), cls._db_path(), fetch=True
        )
        return [{'userId': r[0], 'name': r[1], 'sessions': r[2]} for r in rows]

    @classmethod
    def member_progress(cls, user_id, now):
        """Check-ins for the last three months, estimated hours and the best
        run of consecutive ISO weeks with at least one visit."""
        rows = execute_query('SELECT time_in, time_out FROM time_sessions WHERE user_id = ? ORDER BY time_in',
                             (user_id,), cls._db_path(), fetch=True)
        sessions = [(parse_datetime(r[0]), parse_datetime(r[1])) for r in rows]

        this_month = date(now.year, now.month, 1)
        months = OrderedDict()
        for back in range(2, -1, -1):
            month = add_months(this_month, -back)
            months[month.strftime('%Y-%m')] = {'label': month.strftime('%b'), 'count': 0}
        for time_in, _ in sessions:
            key = time_in.strftime('%Y-%m')
            if key in months:
                months[key]['count'] += 1

        total_minutes = sum(duration_minutes(t_in, t_out, now) for t_in, t_out in sessions)

        # Monday of each ISO week with a visit
        weeks = sorted({(t_in.date() - timedelta(days=t_in.weekday())) for t_in, _ in sessions})
        best = current = 0
        previous = None
        for week in weeks:
            current = current + 1 if previous and week - previous == timedelta(weeks=1) else 1
            best = max(best, current)
            previous = week

        return {
            'monthlyCheckIns': list(months.values()),
            'estimatedHours': round(total_minutes / 60, 1),
            'bestStreakWeeks': best,
            'totalSessions': len(sessions),
        }
