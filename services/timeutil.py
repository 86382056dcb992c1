"""UTC day arithmetic shared by rollups, readers and validation."""
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes coming back from SQLite are stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_utc_day(value: datetime) -> datetime:
    value = as_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def day_start(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def window_bounds(window_days: int, now: datetime | None = None) -> tuple[datetime, datetime]:
    """[tomorrow's UTC midnight - window_days, tomorrow's UTC midnight)."""
    now = as_utc(now) if now else utcnow()
    window_end = start_of_utc_day(now) + timedelta(days=1)
    return window_end - timedelta(days=window_days), window_end


def enumerate_days(window_start: datetime, window_end: datetime) -> list[date]:
    days = []
    cursor = start_of_utc_day(window_start)
    end = start_of_utc_day(window_end)
    while cursor < end:
        days.append(cursor.date())
        cursor += timedelta(days=1)
    return days


def iso_day(value: date | datetime) -> str:
    if isinstance(value, datetime):
        value = as_utc(value).date()
    return value.isoformat()


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def parse_iso_datetime(raw: str) -> datetime | None:
    """Parses an ISO-8601 timestamp; naive values are taken as UTC."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, OverflowError):
        # OverflowError: an offset that shifts the value past datetime.min/max
        return None
