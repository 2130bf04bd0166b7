"""Status and control surface of the offline sync engine.

The UI talks only to :class:`OfflineSync`; it wires the pending-operation
queue, the connectivity monitor, the sync coordinator, the read cache and the
statistics reporter together and republishes their state as one
:class:`~services.sync_status.SyncStatus`.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from core.logs import get_logger
from core.settings import OFFLINE_SYNC
from services.cache_stats import CacheStatistics, CacheStatisticsReporter
from services.connectivity import ConnectivityMonitor
from services.errors import RemoteConnectivityError
from services.pending_ops_queue import EvictedOperation, PendingOperation, PendingOpsQueue
from services.ports import RemoteStore
from services.read_cache import FetchResult, ReadCache
from services.sync_coordinator import SyncCoordinator, SyncCycleResult
from services.sync_status import StatusListener, SyncStatus, SyncStatusState


logger = get_logger("facade")

EventListener = Callable[[str, Any], None]


class OfflineSync:
    def __init__(
        self,
        queue: PendingOpsQueue,
        remote: RemoteStore,
        monitor: Optional[ConnectivityMonitor] = None,
        *,
        read_cache: Optional[ReadCache] = None,
        reporter: Optional[CacheStatisticsReporter] = None,
        auto_sync: bool = True,
        write_timeout: float = OFFLINE_SYNC.replay_timeout_sec,
        quarantined: Optional[Path] = None,
        **coordinator_options: Any,
    ) -> None:
        self.queue = queue
        self.remote = remote
        self.monitor = monitor or ConnectivityMonitor()
        self.read_cache = read_cache
        self.reporter = reporter or CacheStatisticsReporter(queue, read_cache)
        self.auto_sync = auto_sync
        self.write_timeout = write_timeout
        self.quarantined = quarantined

        self._state = SyncStatusState(
            SyncStatus(
                is_online=self.monitor.is_online,
                pending_count=queue.count(),
                evicted_count=queue.evicted_count(),
            )
        )
        self.coordinator = SyncCoordinator(queue, remote, self.monitor, self._state, **coordinator_options)

        self._event_listeners: List[EventListener] = []
        self._size_task: Optional[asyncio.Task] = None
        self._started = False
        self._unsubscribers = [
            queue.subscribe(self._on_queue_event),
            self.monitor.subscribe(self._on_connectivity),
            self.reporter.on_size_exceeded(lambda size: self._emit("size_exceeded", size)),
        ]

    # ------------------------------------------------------------------
    # Read model
    @property
    def status(self) -> SyncStatus:
        return self._state.current

    @property
    def is_online(self) -> bool:
        return self._state.current.is_online

    @property
    def is_syncing(self) -> bool:
        return self._state.current.is_syncing

    @property
    def pending_count(self) -> int:
        return self._state.current.pending_count

    @property
    def last_sync_time(self) -> Optional[datetime]:
        return self._state.current.last_sync_time

    @property
    def sync_progress(self) -> int:
        return self._state.current.sync_progress

    def subscribe(self, callback: StatusListener) -> Callable[[], None]:
        return self._state.subscribe(callback)

    def subscribe_events(self, callback: EventListener) -> Callable[[], None]:
        """Listen for queue changes, evictions, corruption and size warnings."""
        self._event_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._event_listeners:
                self._event_listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: str, payload: Any = None) -> None:
        for listener in list(self._event_listeners):
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Event listener failed on %s", event)

    def _refresh_counts(self) -> None:
        self._state.update(pending_count=self.queue.count(), evicted_count=self.queue.evicted_count())

    def _on_queue_event(self, event: str, payload: Any) -> None:
        self._refresh_counts()
        self._emit(event, payload)

    def _on_connectivity(self, online: bool) -> None:
        self._state.update(is_online=online)
        self._emit("online" if online else "offline", None)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.quarantined is not None:
            self._emit("corrupt_file", self.quarantined)
        recovered = self.queue.recover_corrupt_rows()
        if recovered:
            self._emit("corrupt_rows", recovered)
        if self.read_cache is not None:
            self.read_cache.clear_expired()

        self.monitor.start()
        if self.auto_sync:
            self.coordinator.start()
        self._size_task = asyncio.get_running_loop().create_task(self.reporter.monitor())
        self._refresh_counts()
        if self.auto_sync and self.is_online and self.queue.count():
            self.coordinator.request_sync()

    async def stop(self) -> None:
        if self._size_task is not None:
            self._size_task.cancel()
            try:
                await self._size_task
            except asyncio.CancelledError:
                pass
            self._size_task = None
        await self.coordinator.stop()
        self.monitor.stop()
        self._started = False

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # ------------------------------------------------------------------
    # Writes
    def queue_operation(
        self,
        table: str,
        operation: str,
        data: Dict[str, Any],
        priority: Optional[int] = None,
    ) -> Optional[PendingOperation]:
        return self.queue.enqueue(table, operation, data, priority=priority)

    def _has_queued_writes(self, table: str, data: Dict[str, Any]) -> bool:
        key = data.get(self.queue.primary_key)
        if key is None:
            return False
        return any(op.table == table and op.record_key(self.queue.primary_key) == str(key) for op in self.queue.list())

    async def write(
        self,
        table: str,
        operation: str,
        data: Dict[str, Any],
        priority: Optional[int] = None,
    ) -> bool:
        """Apply a mutation now, or queue it when the remote store is out of reach.

        Returns True when the write reached the remote store. Rejections are
        raised to the caller, they are not connectivity problems.
        """
        if not self.is_online:
            self.queue_operation(table, operation, data, priority)
            return False
        if self._has_queued_writes(table, data):
            # Must not overtake writes already queued for this record.
            self.queue_operation(table, operation, data, priority)
            if self._started and self.auto_sync:
                self.coordinator.request_sync()
            return False
        task = asyncio.get_running_loop().create_task(self.remote.apply(table, operation, dict(data)))
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.write_timeout)
        except asyncio.TimeoutError:
            logger.warning("Direct %s on %s timed out, queueing until it settles", operation, table)
            self.monitor.report_connectivity_failure()
            self._hold_unsettled_write(task, table, operation, data, priority)
            return False
        except asyncio.CancelledError:
            self._hold_unsettled_write(task, table, operation, data, priority)
            raise
        except RemoteConnectivityError as exc:
            logger.warning("Direct %s on %s failed, queueing: %s", operation, table, exc)
            self.monitor.report_connectivity_failure()
            self.queue_operation(table, operation, data, priority)
            return False
        self.monitor.report_write_success()
        return True

    def _hold_unsettled_write(
        self,
        task: asyncio.Task,
        table: str,
        operation: str,
        data: Dict[str, Any],
        priority: Optional[int],
    ) -> None:
        # The request may still land, so queue it but only replay if it fails.
        op = self.queue.enqueue(table, operation, data, priority=priority, coalesce=False)
        self.coordinator.adopt_write(op, task)

    # ------------------------------------------------------------------
    # Controls
    async def sync_pending_operations(self) -> SyncCycleResult:
        return await self.coordinator.sync()

    async def trigger_sync(self) -> Optional[SyncCycleResult]:
        if not self.is_online or self.queue.count() == 0:
            return None
        return await self.coordinator.sync()

    def clear_pending_operations(self) -> int:
        return self.queue.clear()

    def get_pending_operations(self) -> List[PendingOperation]:
        return self.queue.list()

    async def get_cache_statistics(self) -> CacheStatistics:
        return await self.reporter.get_statistics()

    def get_evicted_operations(self) -> List[EvictedOperation]:
        return self.queue.list_evicted()

    def dismiss_evicted(self, op_id: Optional[str] = None) -> int:
        return self.queue.dismiss_evicted(op_id)

    def export_pending(self) -> List[Dict[str, Any]]:
        return self.queue.export()

    def import_pending(self, entries: Iterable[Dict[str, Any]]) -> int:
        return self.queue.import_operations(entries)

    # ------------------------------------------------------------------
    # Read cache
    def _require_cache(self) -> ReadCache:
        if self.read_cache is None:
            raise RuntimeError("Read cache is not configured")
        return self.read_cache

    def cache_data(self, key: str, data: Any, ttl_sec: Optional[float] = None) -> None:
        self._require_cache().set(key, data, ttl_sec)

    def get_cached_data(self, key: str) -> Optional[Any]:
        return self._require_cache().get(key)

    async def fetch_with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[Any]],
        **options: Any,
    ) -> FetchResult:
        return await self._require_cache().fetch_with_cache(key, fetcher, is_online=self.is_online, **options)


__all__ = ["OfflineSync"]
