# ui/sync_status_panel.py
from __future__ import annotations

import flet as ft

from core.priorities import priority_bgcolor, priority_color, priority_label
from core.settings import UI
from helpers.formatting import (
    format_age,
    format_bytes,
    format_sync_time,
    operation_label,
    retry_label,
    table_label,
)
from services.offline_sync import OfflineSync
from services.sync_status import SyncStatus
from ui.dialogs import confirm, show_snack


MAX_VISIBLE_OPS = 10


class SyncStatusPanel:
    """Connectivity, queue and cache overview with manual sync controls."""

    def __init__(self, page: ft.Page, sync: OfflineSync):
        self.page = page
        self.sync = sync

        self.status_icon = ft.Icon(ft.Icons.WIFI)
        self.status_badge = ft.Text(weight=ft.FontWeight.W_600)
        self.last_sync = ft.Text()
        self.progress_label = ft.Text(font_family="monospace")
        self.progress_bar = ft.ProgressBar(value=0, bar_height=6)
        self.progress_row = ft.Column(
            [
                ft.Row(
                    [ft.Text("Sincronizando..."), self.progress_label],
                    alignment=ft.MainAxisAlignment.SPACE_BETWEEN,
                ),
                self.progress_bar,
            ],
            spacing=6,
            visible=False,
        )

        self.pending_badge = ft.Text(weight=ft.FontWeight.BOLD)
        self.pending_list = ft.Column(spacing=6)
        self.all_synced = ft.Row(
            [ft.Icon(ft.Icons.CHECK_CIRCLE, color=UI.online_color), ft.Text("Tudo sincronizado!")],
            alignment=ft.MainAxisAlignment.CENTER,
        )
        self.sync_btn = ft.ElevatedButton(
            "Sincronizar Agora",
            icon=ft.Icons.REFRESH,
            on_click=self.force_sync,
            expand=True,
        )
        self.clear_btn = ft.IconButton(
            icon=ft.Icons.DELETE_OUTLINE,
            icon_color=ft.Colors.RED_400,
            tooltip="Limpar fila",
            on_click=self.ask_clear,
        )

        self.evicted_title = ft.Text("Operações descartadas", size=16, weight=ft.FontWeight.W_600)
        self.evicted_list = ft.Column(spacing=6)
        self.evicted_section = ft.Column([self.evicted_title, self.evicted_list], spacing=8, visible=False)

        self.cache_count = ft.Text()
        self.cache_breakdown = ft.Text(size=12, color=ft.Colors.ON_SURFACE_VARIANT)
        self.cache_size = ft.Text()
        self.cache_oldest = ft.Text()

        content = ft.Column(
            controls=[
                ft.Text("Sincronização", size=24, weight=ft.FontWeight.BOLD),
                self._card(
                    "Status da Conexão",
                    [
                        ft.Row([self.status_icon, self.status_badge], spacing=8),
                        self.last_sync,
                        self.progress_row,
                    ],
                ),
                self._card(
                    "Operações Pendentes",
                    [
                        ft.Row(
                            [ft.Text("Alterações que serão sincronizadas", size=12), self.pending_badge],
                            alignment=ft.MainAxisAlignment.SPACE_BETWEEN,
                        ),
                        self.pending_list,
                        self.all_synced,
                        ft.Row([self.sync_btn, self.clear_btn], spacing=8),
                    ],
                ),
                self.evicted_section,
                self._card(
                    "Cache Local",
                    [self.cache_count, self.cache_breakdown, self.cache_size, self.cache_oldest],
                ),
                ft.Text(
                    "As alterações feitas offline são salvas localmente e sincronizadas automaticamente "
                    "quando você se reconectar à internet. Operações de alta prioridade (pagamentos, perfil) "
                    "são sincronizadas primeiro.",
                    size=12,
                    color=ft.Colors.ON_SURFACE_VARIANT,
                ),
            ],
            spacing=16,
            scroll=ft.ScrollMode.AUTO,
            expand=True,
        )
        self.view = ft.Container(content=content, expand=True, padding=20)

        self._unsubscribers = [
            sync.subscribe(self._on_status),
            sync.subscribe_events(self._on_event),
        ]
        self.apply_status(sync.status)
        self.load_lists()

    @staticmethod
    def _card(title: str, controls: list[ft.Control]) -> ft.Card:
        return ft.Card(
            content=ft.Container(
                ft.Column([ft.Text(title, size=16, weight=ft.FontWeight.W_600), *controls], spacing=10),
                padding=16,
            )
        )

    # ---------- status ----------
    def apply_status(self, status: SyncStatus):
        if status.is_online:
            self.status_icon.name = ft.Icons.WIFI
            self.status_icon.color = UI.online_color
            self.status_badge.value = "Online"
            self.status_badge.color = UI.online_color
        else:
            self.status_icon.name = ft.Icons.WIFI_OFF
            self.status_icon.color = UI.offline_color
            self.status_badge.value = "Offline"
            self.status_badge.color = UI.offline_color

        synced_at = format_sync_time(status.last_sync_time)
        self.last_sync.value = f"Última sincronização: {synced_at}" if synced_at else ""
        self.last_sync.visible = bool(synced_at)

        self.progress_row.visible = status.is_syncing
        self.progress_bar.value = status.sync_progress / 100
        self.progress_bar.color = UI.syncing_color
        self.progress_label.value = f"{status.sync_progress}%"

        self.pending_badge.value = str(status.pending_count)
        self.sync_btn.disabled = not status.is_online or status.is_syncing
        self.clear_btn.disabled = status.pending_count == 0
        self.all_synced.visible = status.pending_count == 0

    def _on_status(self, status: SyncStatus):
        self.apply_status(status)
        if not status.is_syncing:
            self.load_lists()
        self._update()

    def _on_event(self, event: str, payload):
        if event == "online":
            show_snack(self.page, "Conexão restaurada. Sincronizando...")
        elif event == "offline":
            show_snack(self.page, "Modo offline ativado", color=UI.offline_color)
        elif event == "evicted":
            show_snack(
                self.page,
                f"{table_label(payload.operation.table)}: alteração descartada após várias tentativas",
                color=ft.Colors.RED_400,
            )
        elif event == "size_exceeded":
            show_snack(
                self.page,
                f"Cache offline está grande: {format_bytes(payload)}. Considere limpar para liberar espaço.",
            )
        elif event in ("corrupt_file", "corrupt_rows"):
            show_snack(self.page, "Dados offline danificados foram isolados", color=ft.Colors.RED_400)
        elif event in ("cleared", "dismissed", "imported"):
            self.load_lists()
            self._update()

    # ---------- lists ----------
    def _op_row(self, index: int, op) -> ft.Control:
        badge = ft.Container(
            ft.Text(priority_label(op.priority), size=10, color=priority_color(op.priority)),
            bgcolor=priority_bgcolor(op.priority),
            padding=ft.padding.symmetric(horizontal=6, vertical=2),
            border_radius=8,
        )
        tail: list[ft.Control] = [badge]
        retries = retry_label(op.retry_count)
        if retries:
            tail.append(ft.Text(retries, size=10, color=UI.offline_color))
        return ft.Row(
            [
                ft.Row(
                    [
                        ft.Text(f"{index}.", size=12),
                        ft.Text(table_label(op.table), size=12),
                        ft.Text(operation_label(op.operation), size=10, italic=True),
                    ],
                    spacing=6,
                ),
                ft.Row(tail, spacing=6),
            ],
            alignment=ft.MainAxisAlignment.SPACE_BETWEEN,
        )

    def _evicted_row(self, item) -> ft.Control:
        op = item.operation
        return ft.Row(
            [
                ft.Column(
                    [
                        ft.Text(f"{table_label(op.table)} · {operation_label(op.operation)}", size=12),
                        ft.Text(item.reason, size=10, color=ft.Colors.RED_400, max_lines=2),
                    ],
                    spacing=2,
                    expand=True,
                ),
                ft.IconButton(
                    icon=ft.Icons.CLOSE,
                    tooltip="Dispensar",
                    on_click=lambda _, op_id=op.id: self.dismiss(op_id),
                ),
            ]
        )

    def load_lists(self):
        ops = self.sync.get_pending_operations()
        rows = [self._op_row(i + 1, op) for i, op in enumerate(ops[:MAX_VISIBLE_OPS])]
        if len(ops) > MAX_VISIBLE_OPS:
            rows.append(ft.Text(f"+{len(ops) - MAX_VISIBLE_OPS} mais operações", size=12))
        self.pending_list.controls = rows

        evicted = self.sync.get_evicted_operations()
        self.evicted_list.controls = [self._evicted_row(item) for item in evicted]
        self.evicted_section.visible = bool(evicted)

    async def load_stats(self):
        stats = await self.sync.get_cache_statistics()
        self.cache_count.value = f"Itens em cache: {stats.count}"
        self.cache_breakdown.value = (
            f"{stats.pending_count} pendentes · {stats.cached_count} leituras · {stats.evicted_count} descartadas"
        )
        self.cache_size.value = f"Tamanho: {format_bytes(stats.size_bytes)}"
        self.cache_oldest.value = f"Item mais antigo: {format_age(stats.oldest_timestamp)}"
        self._update()

    # ---------- actions ----------
    async def force_sync(self, _):
        if not self.sync.is_online:
            show_snack(self.page, "Sem conexão com a internet", color=ft.Colors.RED_400)
            return
        show_snack(self.page, "Iniciando sincronização...")
        await self.sync.sync_pending_operations()
        self.load_lists()
        await self.load_stats()

    def ask_clear(self, _):
        confirm(
            self.page,
            title="Limpar fila de sincronização?",
            message="As alterações pendentes serão perdidas e não poderão ser recuperadas.",
            confirm_label="Limpar",
            on_confirm=self.clear,
        )

    def clear(self):
        self.sync.clear_pending_operations()
        show_snack(self.page, "Operações pendentes removidas")
        self.load_lists()
        self.page.run_task(self.load_stats)

    def dismiss(self, op_id: str):
        self.sync.dismiss_evicted(op_id)
        self.load_lists()
        self._update()

    def _update(self):
        if self.view.page is not None:
            self.page.update()

    def dispose(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
