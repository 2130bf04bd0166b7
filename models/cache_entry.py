"""Read-through cache of remote query results."""

from __future__ import annotations

from sqlmodel import Field, SQLModel

from datetime_utils import now_ms


class CacheEntry(SQLModel, table=True):
    __tablename__ = "cache_entry"

    key: str = Field(primary_key=True)
    data: str
    version: int = Field(default=1)
    timestamp: int = Field(default_factory=now_ms, index=True)
    expires_at: int = Field(index=True)


__all__ = ["CacheEntry"]
