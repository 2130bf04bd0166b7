"""Drains the pending-operation queue against the remote store."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple

from core.logs import get_logger
from core.settings import OFFLINE_SYNC
from datetime_utils import now_ms, utc_now
from services.connectivity import ConnectivityMonitor
from services.errors import RemoteConnectivityError, RemoteRejectedError
from services.pending_ops_queue import PendingOperation, PendingOpsQueue
from services.ports import RemoteStore
from services.sync_status import SyncStatusState


logger = get_logger("coordinator")

OK = "ok"
CONNECTIVITY = "connectivity"
REJECTED = "rejected"
EVICTED = "evicted"
SKIPPED = "skipped"

BlockKey = Tuple[str, Optional[str]]


@dataclass
class SyncCycleResult:
    total: int = 0
    succeeded: int = 0
    rejected: int = 0
    evicted: int = 0
    deferred: int = 0
    aborted: bool = False


class SyncCoordinator:
    """Runs at most one sync cycle at a time.

    A cycle snapshots the queue, replays operations one by one in drain order
    and stops at the first connectivity failure. Rejected operations are
    retried on later cycles until ``max_retries``, then evicted.
    """

    def __init__(
        self,
        queue: PendingOpsQueue,
        remote: RemoteStore,
        monitor: ConnectivityMonitor,
        status: Optional[SyncStatusState] = None,
        *,
        max_retries: int = OFFLINE_SYNC.max_retries,
        replay_timeout: float = OFFLINE_SYNC.replay_timeout_sec,
        backoff_base: float = OFFLINE_SYNC.backoff_base_sec,
        backoff_cap: float = OFFLINE_SYNC.backoff_cap_sec,
        periodic_interval: float = OFFLINE_SYNC.periodic_interval_sec,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.queue = queue
        self.remote = remote
        self.monitor = monitor
        self.status = status or SyncStatusState()
        self.max_retries = max(1, int(max_retries))
        self.replay_timeout = replay_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.periodic_interval = periodic_interval
        self._clock = clock

        self._cycle: Optional[asyncio.Task] = None
        self._scheduled: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._orphans: Dict[str, asyncio.Task] = {}
        self._connectivity_failures = 0
        self._unsubscribe_monitor: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def is_syncing(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def start(self) -> None:
        if self._unsubscribe_monitor is None:
            self._unsubscribe_monitor = self.monitor.subscribe(self._on_connectivity)
        if self.periodic_interval > 0 and (self._timer is None or self._timer.done()):
            self._timer = asyncio.get_running_loop().create_task(self._periodic())

    async def stop(self) -> None:
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        for task in (self._timer, self._scheduled, self._cycle):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer = self._scheduled = self._cycle = None

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.request_sync()

    async def _periodic(self) -> None:
        while True:
            await asyncio.sleep(self.periodic_interval)
            try:
                if self.monitor.is_online and not self.is_syncing and self.queue.due(self._clock()):
                    await self.sync()
            except Exception:  # pragma: no cover - defensive
                logger.exception("Periodic sync check failed")

    # ------------------------------------------------------------------
    # Triggers
    def backoff_delay(self) -> float:
        """Delay before the next automatic cycle after connectivity aborts."""
        if self._connectivity_failures <= 0 or self.backoff_base <= 0:
            return 0.0
        return min(self.backoff_cap, self.backoff_base * 2 ** (self._connectivity_failures - 1))

    def request_sync(self) -> None:
        """Schedule a cycle without waiting for it (event callbacks)."""
        if self._scheduled is not None and not self._scheduled.done():
            return
        delay = self.backoff_delay()
        self._scheduled = asyncio.get_running_loop().create_task(self._delayed_sync(delay))

    async def _delayed_sync(self, delay: float) -> None:
        if delay > 0:
            logger.info("Next sync in %.1fs", delay)
            await asyncio.sleep(delay)
        await self.sync()

    async def sync(self) -> SyncCycleResult:
        """Run a cycle, or wait for the one already running."""
        if self._cycle is None or self._cycle.done():
            self._cycle = asyncio.get_running_loop().create_task(self._run_cycle())
        return await asyncio.shield(self._cycle)

    # ------------------------------------------------------------------
    # Cycle
    def _block_key(self, op: PendingOperation) -> BlockKey:
        return (op.table, op.record_key(self.queue.primary_key))

    @staticmethod
    def _is_blocked(key: BlockKey, blocked: Set[BlockKey]) -> bool:
        return key in blocked or (key[0], None) in blocked

    async def _run_cycle(self) -> SyncCycleResult:
        result = SyncCycleResult()
        if not self.monitor.is_online:
            return result
        snapshot = self.queue.list()
        if not snapshot:
            return result

        total = len(snapshot)
        result.total = total
        self.status.update(is_syncing=True, sync_progress=0)
        logger.info("Starting sync of %s pending operations", total)

        blocked: Set[BlockKey] = set()
        completed = 0
        try:
            for op in snapshot:
                if not self.monitor.is_online:
                    result.aborted = True
                    break
                key = self._block_key(op)
                if self._is_blocked(key, blocked) or self.queue.is_in_flight(op.id):
                    # An earlier write on this record has not landed yet.
                    blocked.add(key)
                    result.deferred += 1
                elif op.next_try_at is not None and op.next_try_at > self._clock():
                    blocked.add(key)
                    result.deferred += 1
                else:
                    outcome = await self._replay(op)
                    if outcome == CONNECTIVITY:
                        result.aborted = True
                        break
                    if outcome == OK:
                        result.succeeded += 1
                    elif outcome == REJECTED:
                        result.rejected += 1
                        blocked.add(key)
                    elif outcome == EVICTED:
                        result.evicted += 1
                completed += 1
                self.status.update(sync_progress=round(completed * 100 / total))
        except Exception:  # pragma: no cover - defensive
            logger.exception("Sync cycle crashed")
            result.aborted = True
        finally:
            changes = {"is_syncing": False}
            if result.succeeded:
                changes["last_sync_time"] = utc_now()
            self.status.update(**changes)

        if result.aborted:
            self._connectivity_failures += 1
        else:
            self._connectivity_failures = 0

        logger.info(
            "Sync complete. Success: %s, Rejected: %s, Evicted: %s, Deferred: %s, Aborted: %s",
            result.succeeded,
            result.rejected,
            result.evicted,
            result.deferred,
            result.aborted,
        )
        return result

    async def _replay(self, op: PendingOperation) -> str:
        # Re-read after marking: a coalesced write may have changed the payload.
        self.queue.mark_in_flight(op.id)
        current = self.queue.get(op.id)
        if current is None:
            self.queue.release(op.id)
            return SKIPPED

        task = asyncio.get_running_loop().create_task(
            self.remote.apply(current.table, current.operation, dict(current.data))
        )
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.replay_timeout)
        except asyncio.TimeoutError:
            logger.warning("Replay of %s on %s timed out", current.operation, current.table)
            self.adopt_write(current, task)
            self.monitor.report_connectivity_failure()
            return CONNECTIVITY
        except asyncio.CancelledError:
            self.adopt_write(current, task)
            raise
        except RemoteConnectivityError as exc:
            self.queue.release(op.id)
            logger.warning("Connectivity lost while replaying %s on %s: %s", current.operation, current.table, exc)
            self.monitor.report_connectivity_failure()
            return CONNECTIVITY
        except RemoteRejectedError as exc:
            self.queue.release(op.id)
            logger.error("Error executing %s on %s: %s", current.operation, current.table, exc)
            return self._handle_rejection(current, str(exc))
        except Exception as exc:
            self.queue.release(op.id)
            logger.exception("Failed to execute %s on %s", current.operation, current.table)
            return self._handle_rejection(current, repr(exc))

        self.queue.remove(op.id)
        logger.debug("Replayed %s on %s", current.operation, current.table)
        return OK

    def _handle_rejection(self, op: PendingOperation, error: str) -> str:
        attempts = op.retry_count + 1
        next_try: Optional[int] = None
        if self.backoff_base > 0:
            delay = min(self.backoff_cap, self.backoff_base * 2 ** attempts)
            next_try = self._clock() + int(delay * 1000)
        updated = self.queue.increment_retry(op.id, error, next_try_at=next_try)
        if updated is None:
            return REJECTED
        if updated.retry_count >= self.max_retries:
            self.queue.evict(op.id, error)
            return EVICTED
        return REJECTED

    # ------------------------------------------------------------------
    # Writes that outlived their timeout
    def adopt_write(self, op: PendingOperation, task: asyncio.Task) -> None:
        """Hold ``op`` out of replays until ``task`` settles, then apply its outcome."""
        self.queue.mark_in_flight(op.id)
        self._orphans[op.id] = task
        task.add_done_callback(lambda done, op=op: self._settle_orphan(op, done))

    def _settle_orphan(self, op: PendingOperation, task: asyncio.Task) -> None:
        self._orphans.pop(op.id, None)
        self.queue.release(op.id)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            logger.info("Late confirmation for %s on %s", op.operation, op.table)
            self.queue.remove(op.id)
        elif isinstance(exc, RemoteRejectedError):
            self._handle_rejection(op, str(exc))
        else:
            logger.warning("Late failure for %s on %s: %s", op.operation, op.table, exc)

    @property
    def in_flight(self) -> int:
        return len(self._orphans)


__all__ = ["SyncCoordinator", "SyncCycleResult"]
