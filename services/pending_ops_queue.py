from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import func
from sqlmodel import select

from core.logs import get_logger
from core.priorities import PriorityPolicy, normalize_priority
from core.settings import OFFLINE_SYNC
from datetime_utils import now_ms
from models.evicted_op import EvictedOp
from models.pending_op import PendingOp
from services.errors import DuplicateOperationError
from storage.db import SessionFactory, get_session


VALID_OPERATIONS = {"insert", "update", "delete"}

logger = get_logger("queue")

QueueListener = Callable[[str, Any], None]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True, default=_json_default)


@dataclass(frozen=True)
class PendingOperation:
    id: str
    table: str
    operation: str
    data: Dict[str, Any]
    timestamp: int
    retry_count: int = 0
    priority: int = 2
    last_error: Optional[str] = None
    next_try_at: Optional[int] = None

    def record_key(self, primary_key: str = OFFLINE_SYNC.primary_key) -> Optional[str]:
        value = self.data.get(primary_key)
        return None if value is None else str(value)

    def to_dict(self) -> Dict[str, Any]:
        """Durable entry shape, stable across restarts and exports."""
        return {
            "id": self.id,
            "table": self.table,
            "operation": self.operation,
            "data": json.loads(_dump(self.data)),
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PendingOperation":
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("Operation data must be a mapping")
        return cls(
            id=str(payload["id"]),
            table=str(payload["table"]),
            operation=str(payload["operation"]),
            data=data,
            timestamp=int(payload["timestamp"]),
            retry_count=max(0, int(payload.get("retryCount", 0))),
            priority=normalize_priority(payload.get("priority")),
        )


@dataclass(frozen=True)
class EvictedOperation:
    operation: PendingOperation
    reason: str
    evicted_at: int = field(default_factory=now_ms)


def _row_to_operation(row: PendingOp) -> Optional[PendingOperation]:
    try:
        data = json.loads(row.data)
    except (TypeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict) or row.operation not in VALID_OPERATIONS:
        return None
    return PendingOperation(
        id=row.id,
        table=row.table_name,
        operation=row.operation,
        data=data,
        timestamp=row.timestamp,
        retry_count=row.retry_count,
        priority=row.priority,
        last_error=row.last_error,
        next_try_at=row.next_try_at,
    )


def _row_to_evicted(row: EvictedOp) -> EvictedOperation:
    try:
        data = json.loads(row.data)
    except (TypeError, json.JSONDecodeError):
        data = {}
    if not isinstance(data, dict):
        data = {}
    op = PendingOperation(
        id=row.id,
        table=row.table_name,
        operation=row.operation,
        data=data,
        timestamp=row.timestamp,
        retry_count=row.retry_count,
        priority=row.priority,
    )
    return EvictedOperation(operation=op, reason=row.reason, evicted_at=row.evicted_at)


def _coalesce(existing_op: str, existing_data: Dict[str, Any], new_op: str, new_data: Dict[str, Any]):
    """Fold a new write into the queued one for the same record.

    Returns ``(operation, data)`` for the merged entry, ``("drop", None)`` when
    both writes cancel out, or ``None`` when they must stay separate.
    """
    if existing_op == "insert" and new_op == "update":
        return "insert", {**existing_data, **new_data}
    if existing_op == "insert" and new_op == "delete":
        return "drop", None
    if existing_op == "update" and new_op == "update":
        return "update", {**existing_data, **new_data}
    if existing_op == "update" and new_op == "delete":
        return "delete", dict(new_data)
    return None


def _drain_order(stmt):
    return stmt.order_by(PendingOp.priority.asc(), PendingOp.timestamp.asc(), PendingOp.seq.asc())


class PendingOpsQueue:
    """Durable, ordered queue of mutations waiting for the remote store.

    Every read and write of the queue tables goes through this class.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        *,
        priorities: Optional[PriorityPolicy] = None,
        coalesce: bool = OFFLINE_SYNC.coalesce_record_writes,
        primary_key: str = OFFLINE_SYNC.primary_key,
    ) -> None:
        self._session_factory = session_factory
        self.priorities = priorities or PriorityPolicy()
        self.coalesce = coalesce
        self.primary_key = primary_key
        self._in_flight: Set[str] = set()
        self._listeners: List[QueueListener] = []

    # ------------------------------------------------------------------
    # Change notification
    def subscribe(self, callback: QueueListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Queue listener failed on %s", event)

    # ------------------------------------------------------------------
    # Writes
    def _validate(self, table: str, operation: str, data: Dict[str, Any]) -> None:
        if not table or not isinstance(table, str):
            raise ValueError("Table name is required")
        if operation not in VALID_OPERATIONS:
            raise ValueError(f"Unsupported operation: {operation}")
        if not isinstance(data, dict):
            raise ValueError("Operation data must be a mapping")
        if operation in {"update", "delete"} and data.get(self.primary_key) is None:
            raise ValueError(f"{operation.capitalize()} operation requires '{self.primary_key}' field")

    def enqueue(
        self,
        table: str,
        operation: str,
        data: Dict[str, Any],
        *,
        priority: Optional[int] = None,
        op_id: Optional[str] = None,
        coalesce: Optional[bool] = None,
    ) -> Optional[PendingOperation]:
        """Persist a new operation and return it.

        Returns ``None`` when the write cancelled a queued insert of the same
        record (insert followed by delete while offline). ``coalesce`` overrides
        the queue setting for this call.
        """
        self._validate(table, operation, data)
        level = self.priorities.for_table(table, priority)
        key = data.get(self.primary_key)
        record_key = None if key is None else str(key)

        with self._session_factory() as session:
            if op_id is not None:
                clash = session.exec(select(PendingOp).where(PendingOp.id == op_id)).first()
                if clash is not None:
                    raise DuplicateOperationError(op_id)

            earlier: List[PendingOp] = []
            if record_key is not None:
                stmt = _drain_order(
                    select(PendingOp).where(
                        PendingOp.table_name == table,
                        PendingOp.record_key == record_key,
                    )
                )
                earlier = list(session.exec(stmt))

            latest = earlier[-1] if earlier else None
            if coalesce is None:
                coalesce = self.coalesce
            if coalesce and latest is not None and latest.id not in self._in_flight:
                current = _row_to_operation(latest)
                merged = _coalesce(current.operation, current.data, operation, data) if current else None
                if merged is not None:
                    merged_op, merged_data = merged
                    if merged_op == "drop":
                        dropped_id = latest.id
                        session.delete(latest)
                        session.commit()
                        logger.info("Dropped queued insert on %s (%s) cancelled by delete", table, record_key)
                        self._emit("removed", dropped_id)
                        return None
                    # The survivor keeps its place in the drain order.
                    latest.operation = merged_op
                    latest.data = _dump(merged_data)
                    session.add(latest)
                    session.commit()
                    session.refresh(latest)
                    result = _row_to_operation(latest)
                    logger.info("Coalesced %s on %s into queued %s", operation, table, result.id)
                    self._emit("enqueued", result)
                    return result

            if earlier:
                # Writes on one record drain in the order they were made.
                level = max(level, max(row.priority for row in earlier))

            row = PendingOp(
                id=op_id or str(uuid.uuid4()),
                table_name=table,
                record_key=record_key,
                operation=operation,
                data=_dump(data),
                timestamp=now_ms(),
                retry_count=0,
                priority=level,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            result = _row_to_operation(row)

        logger.info("Queued %s on %s (priority: %s)", operation, table, level)
        self._emit("enqueued", result)
        return result

    def remove(self, op_id: str) -> bool:
        self._in_flight.discard(op_id)
        with self._session_factory() as session:
            row = session.exec(select(PendingOp).where(PendingOp.id == op_id)).first()
            if row is None:
                return False
            session.delete(row)
            session.commit()
        self._emit("removed", op_id)
        return True

    def increment_retry(
        self,
        op_id: str,
        error: Optional[str] = None,
        *,
        next_try_at: Optional[int] = None,
    ) -> Optional[PendingOperation]:
        with self._session_factory() as session:
            row = session.exec(select(PendingOp).where(PendingOp.id == op_id)).first()
            if row is None:
                return None
            row.retry_count += 1
            if error is not None:
                row.last_error = error[:1000]
            row.next_try_at = next_try_at
            session.add(row)
            session.commit()
            session.refresh(row)
            result = _row_to_operation(row)
        self._emit("retry", result)
        return result

    def evict(self, op_id: str, reason: str) -> Optional[EvictedOperation]:
        """Move an operation to the eviction ledger."""
        self._in_flight.discard(op_id)
        with self._session_factory() as session:
            row = session.exec(select(PendingOp).where(PendingOp.id == op_id)).first()
            if row is None:
                return None
            ledger = EvictedOp(
                id=row.id,
                table_name=row.table_name,
                operation=row.operation,
                data=row.data,
                timestamp=row.timestamp,
                retry_count=row.retry_count,
                priority=row.priority,
                reason=(reason or "")[:1000],
                evicted_at=now_ms(),
            )
            session.add(ledger)
            session.delete(row)
            session.commit()
            session.refresh(ledger)
            evicted = _row_to_evicted(ledger)
        logger.warning(
            "Evicted %s on %s after %s attempts: %s",
            evicted.operation.operation,
            evicted.operation.table,
            evicted.operation.retry_count,
            reason,
        )
        self._emit("evicted", evicted)
        return evicted

    def clear(self) -> int:
        removed = 0
        with self._session_factory() as session:
            for row in session.exec(select(PendingOp)):
                session.delete(row)
                removed += 1
            session.commit()
        self._in_flight.clear()
        logger.info("Cleared %s pending operations", removed)
        self._emit("cleared", removed)
        return removed

    def import_operations(self, entries: Iterable[Dict[str, Any]]) -> int:
        """Load exported entries, keeping their ids, timestamps and retry counts."""
        imported = 0
        with self._session_factory() as session:
            for entry in entries:
                op = PendingOperation.from_dict(entry)
                self._validate(op.table, op.operation, op.data)
                exists = session.exec(select(PendingOp).where(PendingOp.id == op.id)).first()
                if exists is not None:
                    continue
                key = op.record_key(self.primary_key)
                session.add(
                    PendingOp(
                        id=op.id,
                        table_name=op.table,
                        record_key=key,
                        operation=op.operation,
                        data=_dump(op.data),
                        timestamp=op.timestamp,
                        retry_count=op.retry_count,
                        priority=op.priority,
                    )
                )
                imported += 1
            session.commit()
        if imported:
            logger.info("Imported %s pending operations", imported)
            self._emit("imported", imported)
        return imported

    def recover_corrupt_rows(self) -> List[EvictedOperation]:
        """Move rows whose payload cannot be decoded to the eviction ledger."""
        with self._session_factory() as session:
            broken = [row.id for row in session.exec(select(PendingOp)) if _row_to_operation(row) is None]
        recovered = []
        for op_id in broken:
            logger.error("Pending operation %s is unreadable, moving it out of the queue", op_id)
            evicted = self.evict(op_id, "corrupt")
            if evicted is not None:
                recovered.append(evicted)
        return recovered

    # ------------------------------------------------------------------
    # In-flight bookkeeping
    def mark_in_flight(self, op_id: str) -> None:
        self._in_flight.add(op_id)

    def release(self, op_id: str) -> None:
        self._in_flight.discard(op_id)

    def is_in_flight(self, op_id: str) -> bool:
        return op_id in self._in_flight

    # ------------------------------------------------------------------
    # Reads
    def list(self) -> List[PendingOperation]:
        with self._session_factory() as session:
            rows = list(session.exec(_drain_order(select(PendingOp))))
        result: List[PendingOperation] = []
        for row in rows:
            op = _row_to_operation(row)
            if op is None:
                logger.warning("Skipping unreadable pending operation %s", row.id)
                continue
            result.append(op)
        return result

    def due(self, now: Optional[int] = None) -> List[PendingOperation]:
        moment = now_ms() if now is None else now
        return [
            op
            for op in self.list()
            if (op.next_try_at is None or op.next_try_at <= moment) and op.id not in self._in_flight
        ]

    def get(self, op_id: str) -> Optional[PendingOperation]:
        with self._session_factory() as session:
            row = session.exec(select(PendingOp).where(PendingOp.id == op_id)).first()
            return _row_to_operation(row) if row else None

    def count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(PendingOp)).one())

    def oldest(self) -> Optional[int]:
        with self._session_factory() as session:
            value = session.exec(select(func.min(PendingOp.timestamp))).one()
            return None if value is None else int(value)

    def export(self) -> List[Dict[str, Any]]:
        return [op.to_dict() for op in self.list()]

    # ----- eviction ledger -----
    def list_evicted(self) -> List[EvictedOperation]:
        with self._session_factory() as session:
            rows = list(session.exec(select(EvictedOp).order_by(EvictedOp.evicted_at.asc(), EvictedOp.seq.asc())))
            return [_row_to_evicted(row) for row in rows]

    def evicted_count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(EvictedOp)).one())

    def dismiss_evicted(self, op_id: Optional[str] = None) -> int:
        removed = 0
        with self._session_factory() as session:
            stmt = select(EvictedOp)
            if op_id is not None:
                stmt = stmt.where(EvictedOp.id == op_id)
            for row in session.exec(stmt):
                session.delete(row)
                removed += 1
            session.commit()
        if removed:
            self._emit("dismissed", op_id)
        return removed


__all__ = [
    "EvictedOperation",
    "PendingOperation",
    "PendingOpsQueue",
    "VALID_OPERATIONS",
]
