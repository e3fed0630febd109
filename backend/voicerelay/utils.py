"""Small shared helpers."""
import re
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite round-trips) are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_uuid(value) -> uuid.UUID | None:
    """Parse a UUID string, returning None for anything malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


def safe_filename(name: str) -> str:
    """Reduce a client-supplied filename to a single safe path segment."""
    base = PurePosixPath(name.replace("\\", "/")).name
    base = _UNSAFE_FILENAME_CHARS.sub("_", base).strip("._")
    return base[:200]


def millis() -> int:
    return int(utcnow().timestamp() * 1000)
