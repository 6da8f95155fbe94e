from datetime import UTC, date, datetime, timedelta

DATE_FMT = "%Y-%m-%d"


def now_iso() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a ``Z`` suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today() -> date:
    return datetime.now().astimezone().date()


def parse_date(s: str) -> date:
    """Parse ``YYYY-MM-DD`` (a trailing time part is ignored)."""
    return datetime.strptime(s[:10], DATE_FMT).date()


def format_date(d: date) -> str:
    return d.strftime(DATE_FMT)


def is_valid_date(s: str) -> bool:
    try:
        parse_date(s)
    except ValueError:
        return False
    return len(s) >= 10


def stamp_for_filename() -> str:
    return datetime.now(UTC).strftime("%Y%m%dT%H%M%S")


def is_overdue(due: str, *, now: date | None = None) -> bool:
    return parse_date(due) < (now or today())


def is_due_today(due: str, *, now: date | None = None) -> bool:
    return parse_date(due) == (now or today())


def is_due_this_week(due: str, *, now: date | None = None) -> bool:
    """Due between today and the coming Sunday (a week ahead when today is Sunday)."""
    base = now or today()
    end = base + timedelta(days=7 - (base.weekday() + 1) % 7)
    return base <= parse_date(due) <= end
