from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import re

from dateutil.relativedelta import relativedelta

from gymledger.errors import ValidationError

CENT = Decimal('0.01')


def add_months(start, months):
    """Calendar month addition; the day is clamped to the end of a shorter month
    (Jan 31 + 1 month -> Feb 28/29)."""
    return start + relativedelta(months=months)


def days_between(now, end_date):
    """Whole days from ``now`` to ``end_date`` (negative once it has passed)"""
    if isinstance(now, datetime):
        now = now.date()
    if isinstance(end_date, datetime):
        end_date = end_date.date()
    return (end_date - now).days


def duration_minutes(time_in, time_out, now):
    """Minutes between time_in and time_out (or now while still open), floored.

    This is the one duration used by sessions, reports and progress.
    """
    end = time_out or now
    seconds = (end - time_in).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


def format_duration(minutes):
    hours, mins = divmod(int(minutes), 60)
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def to_money(value):
    """Quantize a DB or request value to cents"""
    if value is None:
        return Decimal('0.00')
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_currency(amount):
    """Format amount as currency"""
    return f"₱{to_money(amount):,.2f}"


def parse_money(raw, field='amount', minimum=None, maximum=Decimal('999999.99')):
    """Parse a request amount, rejecting garbage instead of defaulting it."""
    if raw is None or str(raw).strip() == '':
        raise ValidationError(f"{field} is required")
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be numeric") from None
    if not value.is_finite():
        raise ValidationError(f"{field} must be numeric")
    value = to_money(value)
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{field} must be at most {maximum}")
    return value


def parse_date(value):
    """Return a date for ISO strings or date/datetime objects, None when empty"""
    if value is None or str(value).strip() == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).strip()).date()
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}") from None


def parse_datetime(value):
    """Return a datetime for ISO strings or datetime objects, None when empty"""
    if value is None or str(value).strip() == '':
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).strip())


def validate_email(email):
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None
