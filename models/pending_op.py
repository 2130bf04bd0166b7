"""SQLModel table for queued offline mutations."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from datetime_utils import now_ms


class PendingOp(SQLModel, table=True):
    __tablename__ = "pending_operation"
    __table_args__ = (
        Index("ix_pending_operation_drain", "priority", "timestamp", "seq"),
    )

    # ``seq`` breaks timestamp ties so draining stays FIFO within a priority.
    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True, unique=True)
    table_name: str = Field(index=True)
    record_key: Optional[str] = Field(default=None, index=True)
    operation: str
    data: str
    timestamp: int = Field(default_factory=now_ms, index=True)
    retry_count: int = Field(default=0)
    priority: int = Field(default=2)
    last_error: Optional[str] = None
    next_try_at: Optional[int] = None


__all__ = ["PendingOp"]
