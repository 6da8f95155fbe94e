import calendar
from datetime import date, timedelta

from tsk.core.models import RecurrenceRule
from tsk.util.time import format_date, parse_date, today


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def add_months(base: date, months: int, *, day_of_month: int | None = None) -> date:
    """Shift ``base`` by ``months`` calendar months.

    The day is clamped to the last day of the target month, so Jan 31 + 1
    month is Feb 28 (or Feb 29 in a leap year).
    """
    total = base.year * 12 + (base.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = day_of_month or base.day
    return date(year, month, min(day, _last_day(year, month)))


def advance(base: date, rule: RecurrenceRule) -> date:
    interval = rule.interval if rule.interval and rule.interval > 0 else 1
    match rule.frequency:
        case "daily":
            return base + timedelta(days=interval)
        case "weekly":
            return base + timedelta(days=7 * interval)
        case "monthly":
            return add_months(base, interval, day_of_month=rule.day_of_month)
        case "yearly":
            return add_months(base, 12 * interval)
    _msg = f"Unknown frequency: {rule.frequency}"
    raise ValueError(_msg)


def compute_next_due(current_due: str | None, rule: RecurrenceRule, *, now: date | None = None) -> str:
    """Next due date (``YYYY-MM-DD``) after ``current_due``, or after today when unset."""
    base = parse_date(current_due) if current_due else (now or today())
    return format_date(advance(base, rule))


def is_past_end(next_due: str, rule: RecurrenceRule) -> bool:
    if not rule.end_date:
        return False
    return parse_date(next_due) > parse_date(rule.end_date)
