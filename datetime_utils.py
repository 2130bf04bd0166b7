from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def now_ms() -> int:
    """Current time as epoch milliseconds, the queue's timestamp unit."""

    return to_epoch_ms(utc_now())


def to_epoch_ms(dt: datetime) -> int:
    value = ensure_utc(dt)
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


__all__ = [
    "UTC",
    "ensure_utc",
    "from_epoch_ms",
    "now_ms",
    "to_epoch_ms",
    "utc_now",
]
