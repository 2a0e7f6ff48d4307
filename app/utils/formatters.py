"""
Formatting and time helpers shared by services and log messages.
"""
from decimal import Decimal, InvalidOperation
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple, Union, Optional


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_bounds(day: Optional[date] = None) -> Tuple[datetime, datetime]:
    """Return [start, end) naive UTC datetimes for a calendar day."""
    day = day or utcnow().date()
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def fmt_qty(value: Union[int, float, Decimal, str, None]) -> str:
    """
    Format a stock quantity for logs and error messages.

    Examples:
        fmt_qty(Decimal('200.000')) -> "200"
        fmt_qty(Decimal('0.250')) -> "0.25"
        fmt_qty(None) -> "-"
    """
    if value is None or value == "":
        return "-"
    try:
        num = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return str(value)
    if not num.is_finite():
        return str(num)
    if num == num.to_integral_value():
        return str(num.quantize(Decimal('1')))
    return format(num.normalize(), 'f')


def fmt_money(value: Union[int, float, Decimal, None]) -> str:
    """Format an amount as $1,234.50 for log lines."""
    if value is None:
        return "$0.00"
    return f"${Decimal(str(value)):,.2f}"
