"""Storage-usage diagnostics for the offline database."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from core.logs import get_logger
from core.settings import CACHE, DB_PATH
from datetime_utils import now_ms
from services.pending_ops_queue import PendingOpsQueue
from services.read_cache import ReadCache


logger = get_logger("cache")

SIZE_SUFFIXES = ("", "-wal", "-journal")

SizeListener = Callable[[int], None]


@dataclass(frozen=True)
class CacheStatistics:
    count: int
    oldest_timestamp: Optional[int]
    pending_count: int = 0
    cached_count: int = 0
    evicted_count: int = 0
    size_bytes: int = 0


def database_size(path: Path | str) -> int:
    base = Path(path)
    total = 0
    for suffix in SIZE_SUFFIXES:
        candidate = base.with_name(base.name + suffix)
        try:
            total += candidate.stat().st_size
        except OSError:
            continue
    return total


class CacheStatisticsReporter:
    def __init__(
        self,
        queue: PendingOpsQueue,
        read_cache: Optional[ReadCache] = None,
        *,
        db_path: Path | str = DB_PATH,
        size_limit_bytes: int = CACHE.size_limit_bytes,
        notify_cooldown_sec: int = CACHE.notify_cooldown_sec,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.queue = queue
        self.read_cache = read_cache
        self.db_path = Path(db_path)
        self.size_limit_bytes = size_limit_bytes
        self.notify_cooldown_sec = notify_cooldown_sec
        self._clock = clock
        self._last_notified: Optional[int] = None
        self._listeners: List[SizeListener] = []

    def snapshot(self) -> CacheStatistics:
        """Counts read straight from the database, never memoised."""
        pending = self.queue.count()
        oldest = self.queue.oldest()
        cached = 0
        if self.read_cache is not None:
            cached = self.read_cache.count()
            cache_oldest = self.read_cache.oldest()
            if cache_oldest is not None and (oldest is None or cache_oldest < oldest):
                oldest = cache_oldest
        return CacheStatistics(
            count=pending + cached,
            oldest_timestamp=oldest,
            pending_count=pending,
            cached_count=cached,
            evicted_count=self.queue.evicted_count(),
            size_bytes=database_size(self.db_path),
        )

    async def get_statistics(self) -> CacheStatistics:
        return self.snapshot()

    # ------------------------------------------------------------------
    def on_size_exceeded(self, callback: SizeListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def check_size(self) -> bool:
        """Warn when the database outgrows the limit, at most once per cooldown.

        Returns True when a warning was issued.
        """
        size = database_size(self.db_path)
        if size <= self.size_limit_bytes:
            return False
        now = self._clock()
        if self._last_notified is not None and now - self._last_notified <= self.notify_cooldown_sec * 1000:
            return False
        self._last_notified = now
        logger.warning("Offline database is %s bytes (limit %s)", size, self.size_limit_bytes)
        for listener in list(self._listeners):
            try:
                listener(size)
            except Exception:
                logger.exception("Size listener failed")
        return True

    async def monitor(self, interval_sec: float = CACHE.check_interval_sec, initial_delay_sec: float = 10.0) -> None:
        await asyncio.sleep(initial_delay_sec)
        while True:
            try:
                self.check_size()
            except OSError as exc:
                logger.warning("Error checking cache size: %s", exc)
            await asyncio.sleep(interval_sec)


__all__ = ["CacheStatistics", "CacheStatisticsReporter", "database_size"]
