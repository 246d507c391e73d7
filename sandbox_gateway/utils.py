"""Small helpers shared across layers: timestamps and opaque identifiers."""
import uuid
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id(prefix: str) -> str:
    """Generate an opaque identifier such as ``sess_3f9c0a1b2d4e5f60``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def isoformat(value: datetime | None) -> str | None:
    """Render a stored naive-UTC timestamp as ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    return value.isoformat() + "Z"
