"""Online/offline tracking with debounce."""
from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from core.logs import get_logger
from core.settings import OFFLINE_SYNC, REMOTE
from services.ports import ConnectivitySource


logger = get_logger("connectivity")

Listener = Callable[[bool], None]


class SignalConnectivity:
    """Connectivity source fed by the host application (platform events)."""

    def __init__(self, initial: Optional[bool] = None) -> None:
        self._state = initial
        self._listeners: List[Listener] = []

    def current(self) -> Optional[bool]:
        return self._state

    def set(self, online: bool) -> None:
        self._state = bool(online)
        for listener in list(self._listeners):
            listener(self._state)

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None


class HttpProbeConnectivity:
    """Polls a reachability check off the event loop and reports every result."""

    def __init__(self, check: Callable[[], bool], *, interval: float = REMOTE.probe_interval_sec) -> None:
        self._check = check
        self.interval = interval
        self._state: Optional[bool] = None
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None

    def current(self) -> Optional[bool]:
        return self._state

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    async def probe_once(self) -> bool:
        try:
            result = bool(await asyncio.to_thread(self._check))
        except Exception as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            result = False
        self._state = result
        for listener in list(self._listeners):
            listener(result)
        return result

    async def _run(self) -> None:
        while True:
            await self.probe_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None


class ConnectivityMonitor:
    """Single debounced ``is_online`` flag.

    Raw signals must hold for ``quiet_period`` seconds before a transition is
    declared; listeners hear each real transition exactly once. Without a
    platform signal the monitor starts online and relies on write failures.
    """

    def __init__(
        self,
        source: Optional[ConnectivitySource] = None,
        *,
        quiet_period: float = OFFLINE_SYNC.connectivity_quiet_period_sec,
        recheck_after: float = OFFLINE_SYNC.fail_open_recheck_sec,
    ) -> None:
        self.source = source
        self.quiet_period = quiet_period
        self.recheck_after = recheck_after
        initial = source.current() if source is not None else None
        self._online = True if initial is None else bool(initial)
        self._pending: Optional[bool] = None
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._recheck: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Listener] = []
        self._unsubscribe_source: Optional[Callable[[], None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self.source is not None and self._unsubscribe_source is None:
            self._unsubscribe_source = self.source.subscribe(self.signal)

    def stop(self) -> None:
        self._cancel_debounce()
        self._cancel_recheck()
        if self._unsubscribe_source is not None:
            self._unsubscribe_source()
            self._unsubscribe_source = None

    # ------------------------------------------------------------------
    def signal(self, online: bool) -> None:
        """Feed a raw platform signal; must run on the event loop thread."""
        online = bool(online)
        if online == self._online:
            # Blip reverted inside the quiet period.
            self._cancel_debounce()
            return
        if self._pending == online and self._debounce is not None:
            return
        self._cancel_debounce()
        if self.quiet_period <= 0:
            self._set(online)
            return
        self._pending = online
        self._debounce = self._get_loop().call_later(self.quiet_period, self._settle)

    def report_connectivity_failure(self) -> None:
        """A write could not reach the remote store: go offline now, recheck later."""
        self._cancel_debounce()
        self._set(False)
        self._cancel_recheck()
        if self.recheck_after > 0:
            self._recheck = self._get_loop().call_later(self.recheck_after, self._do_recheck)

    def report_write_success(self) -> None:
        self._cancel_debounce()
        self._cancel_recheck()
        self._set(True)

    # ------------------------------------------------------------------
    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _settle(self) -> None:
        state = self._pending
        self._pending = None
        self._debounce = None
        if state is not None:
            self._set(state)

    def _do_recheck(self) -> None:
        self._recheck = None
        state = self.source.current() if self.source is not None else None
        self.signal(True if state is None else state)

    def _cancel_debounce(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = None
        self._pending = None

    def _cancel_recheck(self) -> None:
        if self._recheck is not None:
            self._recheck.cancel()
        self._recheck = None

    def _set(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Connection restored")
        else:
            logger.info("Connection lost")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")


__all__ = ["ConnectivityMonitor", "HttpProbeConnectivity", "SignalConnectivity"]
