"""Local cache of remote reads, usable while offline."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Set, TypeVar

from sqlalchemy import func
from sqlmodel import select

from core.logs import get_logger
from core.settings import CACHE
from datetime_utils import now_ms
from models.cache_entry import CacheEntry
from storage.db import SessionFactory, get_session


logger = get_logger("cache")

T = TypeVar("T")


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    data: Optional[T]
    is_from_cache: bool
    is_fresh: bool


class ReadCache:
    """Versioned key/value cache with per-entry expiry.

    Entries written by another cache ``version`` or past ``expires_at`` read as
    missing and are deleted on access.
    """

    def __init__(
        self,
        session_factory: SessionFactory = get_session,
        *,
        version: int = CACHE.version,
        default_ttl_sec: int = CACHE.default_ttl_sec,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._session_factory = session_factory
        self.version = version
        self.default_ttl_sec = default_ttl_sec
        self._clock = clock
        self._refreshes: Set[asyncio.Task] = set()

    def set(self, key: str, data: Any, ttl_sec: Optional[float] = None) -> None:
        ttl = self.default_ttl_sec if ttl_sec is None else ttl_sec
        now = self._clock()
        payload = json.dumps(data, ensure_ascii=False, default=str)
        with self._session_factory() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                entry = CacheEntry(key=key, data=payload, version=self.version, timestamp=now, expires_at=0)
            entry.data = payload
            entry.version = self.version
            entry.timestamp = now
            entry.expires_at = now + int(ttl * 1000)
            session.add(entry)
            session.commit()

    def get(self, key: str) -> Optional[Any]:
        with self._session_factory() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return None
            if entry.version != self.version or entry.expires_at <= self._clock():
                session.delete(entry)
                session.commit()
                return None
            try:
                return json.loads(entry.data)
            except (TypeError, json.JSONDecodeError):
                logger.warning("Dropping unreadable cache entry %s", key)
                session.delete(entry)
                session.commit()
                return None

    def delete(self, key: str) -> bool:
        with self._session_factory() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return False
            session.delete(entry)
            session.commit()
            return True

    def clear_expired(self) -> int:
        removed = 0
        with self._session_factory() as session:
            stmt = select(CacheEntry).where(CacheEntry.expires_at <= self._clock())
            for entry in session.exec(stmt):
                session.delete(entry)
                removed += 1
            session.commit()
        if removed:
            logger.info("Removed %s expired cache entries", removed)
        return removed

    def count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(CacheEntry)).one())

    def oldest(self) -> Optional[int]:
        with self._session_factory() as session:
            value = session.exec(select(func.min(CacheEntry.timestamp))).one()
            return None if value is None else int(value)

    # ------------------------------------------------------------------
    async def fetch_with_cache(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        *,
        ttl_sec: float = CACHE.fetch_ttl_sec,
        stale_while_revalidate: bool = True,
        is_online: bool = True,
    ) -> FetchResult[T]:
        """Serve ``key`` from the cache or ``fetcher``.

        Offline, only the cache is consulted. Online with a cached value and
        ``stale_while_revalidate``, the cached value is returned at once and
        refreshed in the background. A failed fetch falls back to the cache.
        """
        cached = self.get(key)
        if not is_online:
            return FetchResult(cached, True, False)

        if stale_while_revalidate and cached is not None:
            task = asyncio.get_running_loop().create_task(self._refresh(key, fetcher, ttl_sec))
            self._refreshes.add(task)
            task.add_done_callback(self._refreshes.discard)
            return FetchResult(cached, True, False)

        try:
            fresh = await fetcher()
        except Exception as exc:
            logger.error("Fetch for %s failed, returning cached value: %s", key, exc)
            return FetchResult(cached, True, False)
        self.set(key, fresh, ttl_sec)
        return FetchResult(fresh, False, True)

    async def _refresh(self, key: str, fetcher: Callable[[], Awaitable[Any]], ttl_sec: float) -> None:
        try:
            fresh = await fetcher()
        except Exception as exc:
            logger.warning("Background refresh of %s failed: %s", key, exc)
            return
        self.set(key, fresh, ttl_sec)

    async def wait_for_refreshes(self) -> None:
        if self._refreshes:
            await asyncio.gather(*list(self._refreshes), return_exceptions=True)


__all__ = ["FetchResult", "ReadCache"]
