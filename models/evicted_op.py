"""Operations removed from the queue after exhausting their retries."""

from __future__ import annotations

from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import now_ms


class EvictedOp(SQLModel, table=True):
    __tablename__ = "evicted_operation"

    seq: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(index=True)
    table_name: str
    operation: str
    data: str
    timestamp: int
    retry_count: int = Field(default=0)
    priority: int = Field(default=2)
    reason: str = ""
    evicted_at: int = Field(default_factory=now_ms, index=True)


__all__ = ["EvictedOp"]
