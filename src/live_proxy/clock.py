"""Time helpers shared across the token and session layers."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(value.timestamp() * 1000)
