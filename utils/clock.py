from datetime import datetime, timedelta, timezone, date, time


def utcnow() -> datetime:
    # naive UTC, same convention as every DateTime column
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso(value: str) -> datetime:
    """
    Parse "2026-01-20T18:00:00", "2026-01-20T18:00" or a full ISO string with
    offset/"Z". Aware values are converted to naive UTC.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Empty datetime")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_day(value: str) -> date:
    return date.fromisoformat((value or "").strip())


def parse_hhmm(value: str) -> time:
    hh, mm = (value or "").strip().split(":")
    return time(int(hh), int(mm))


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)
