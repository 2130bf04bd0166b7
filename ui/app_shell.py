# ui/app_shell.py
from __future__ import annotations

import asyncio
import flet as ft

from core.priorities import PriorityPolicy
from core.settings import BACKUP, DB_PATH, REMOTE, UI
from services.cache_stats import CacheStatisticsReporter
from services.connectivity import ConnectivityMonitor, HttpProbeConnectivity
from services.offline_sync import OfflineSync
from services.pending_ops_queue import PendingOpsQueue
from services.read_cache import ReadCache
from services.remote_store import PostgrestRemoteStore
from storage.config import load_config
from storage.db import open_database, session_factory_for

from .sync_status_panel import SyncStatusPanel


class AppShell:
    def __init__(self, page: ft.Page):
        self.page = page

        self.page.title = UI.app_title
        self.page.horizontal_alignment = ft.CrossAxisAlignment.STRETCH
        self.page.vertical_alignment = ft.MainAxisAlignment.START

        config = load_config()
        engine, quarantined = open_database(
            DB_PATH,
            backup_dir=BACKUP.directory,
            backup_enabled=BACKUP.enabled,
            keep_days=BACKUP.keep_days,
        )
        sessions = session_factory_for(engine)

        self.queue = PendingOpsQueue(sessions, priorities=PriorityPolicy(config.table_priorities))
        self.read_cache = ReadCache(sessions)
        self.remote = PostgrestRemoteStore(config.remote_url, config.api_key)
        self.probe = HttpProbeConnectivity(self.remote.ping, interval=REMOTE.probe_interval_sec)
        self.monitor = ConnectivityMonitor(self.probe)
        self.sync = OfflineSync(
            self.queue,
            self.remote,
            self.monitor,
            read_cache=self.read_cache,
            reporter=CacheStatisticsReporter(self.queue, self.read_cache, db_path=DB_PATH),
            auto_sync=config.auto_sync,
            quarantined=quarantined,
            max_retries=config.max_retries,
        )

        self.panel = SyncStatusPanel(page, self.sync)
        self.root = ft.Container(self.panel.view, expand=True)
        self._auto_task: asyncio.Task | None = None

    def _has_open_overlay(self) -> bool:
        """Skip the refresh while a dialog is open."""
        overlays = getattr(self.page, "overlay", None) or []
        return any(getattr(c, "open", False) for c in overlays if isinstance(c, ft.AlertDialog))

    def _start_auto_refresh(self, period_sec: int | None = None):
        interval = period_sec or UI.refresh_interval_sec

        async def _loop():
            await self.panel.load_stats()
            while True:
                await asyncio.sleep(interval)
                if self._has_open_overlay():
                    continue
                await self.panel.load_stats()

        self._auto_task = self.page.run_task(_loop)

    def _stop_auto_refresh(self):
        if self._auto_task:
            self._auto_task.cancel()
        self._auto_task = None

    async def mount(self):
        self.page.controls.clear()
        self.page.add(self.root)
        self.page.update()

        if self.remote.base_url:
            self.probe.start()
        await self.sync.start()
        self._start_auto_refresh()

    async def unmount(self):
        self._stop_auto_refresh()
        self.probe.stop()
        await self.sync.stop()
        self.sync.close()
        self.panel.dispose()
        self.remote.close()
