"""Time and datetime utilities."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Get current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(dt: datetime | None, fmt: str = "%Y-%m-%dT%H:%M:%SZ") -> str:
    """Format datetime to ISO string.

    Args:
        dt: Datetime to format
        fmt: Format string (default ISO 8601)

    Returns:
        Formatted datetime string, or "N/A" when missing
    """
    if dt is None:
        return "N/A"
    return ensure_utc(dt).strftime(fmt)


class SystemClock:
    """Wall clock. Services take a clock so tests can pin "now"."""

    def now(self) -> datetime:
        return utc_now()
