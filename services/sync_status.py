"""Observable read model of the sync engine."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, List, Optional

from core.logs import get_logger


logger = get_logger("status")


@dataclass(frozen=True)
class SyncStatus:
    is_online: bool = True
    is_syncing: bool = False
    pending_count: int = 0
    last_sync_time: Optional[datetime] = None
    sync_progress: int = 0
    evicted_count: int = 0


StatusListener = Callable[[SyncStatus], None]


class SyncStatusState:
    """Owns the current ``SyncStatus`` and notifies subscribers when it changes."""

    def __init__(self, initial: Optional[SyncStatus] = None) -> None:
        self._status = initial or SyncStatus()
        self._listeners: List[StatusListener] = []

    @property
    def current(self) -> SyncStatus:
        return self._status

    def subscribe(self, callback: StatusListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def update(self, **changes) -> SyncStatus:
        if "sync_progress" in changes:
            changes["sync_progress"] = max(0, min(100, int(changes["sync_progress"])))
        updated = replace(self._status, **changes)
        if updated == self._status:
            return self._status
        self._status = updated
        for listener in list(self._listeners):
            try:
                listener(updated)
            except Exception:
                logger.exception("Status listener failed")
        return updated


__all__ = ["StatusListener", "SyncStatus", "SyncStatusState"]
