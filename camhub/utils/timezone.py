"""UTC helpers.

Device timestamps, recording file names and API responses are all UTC.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Aware UTC copy of ``dt``. Naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_utc_isoformat(dt: datetime, timespec: str = "auto") -> str:
    """``2024-01-02T03:04:05Z`` style string; ``timespec`` as for ``isoformat``."""
    return ensure_utc(dt).isoformat(timespec=timespec).replace("+00:00", "Z")


def epoch_millis(dt: datetime) -> int:
    """Milliseconds since the Unix epoch."""
    return int(ensure_utc(dt).timestamp() * 1000)
