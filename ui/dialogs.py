from typing import Callable

import flet as ft


def open_alert_dialog(page: ft.Page, *, title: str, content: ft.Control, actions: list[ft.Control]):
    dlg = ft.AlertDialog(
        modal=True,
        title=ft.Text(title),
        content=content,
        actions=actions,
        actions_alignment=ft.MainAxisAlignment.END,
    )
    page.open(dlg)
    return dlg


def close_alert_dialog(page: ft.Page, dlg: ft.AlertDialog | None):
    if dlg is not None:
        page.close(dlg)


def confirm(page: ft.Page, *, title: str, message: str, confirm_label: str, on_confirm: Callable[[], None]):
    """Modal yes/no dialog; ``on_confirm`` runs only on the destructive choice."""

    dlg: ft.AlertDialog | None = None

    def _cancel(_):
        close_alert_dialog(page, dlg)

    def _accept(_):
        close_alert_dialog(page, dlg)
        on_confirm()

    dlg = open_alert_dialog(
        page,
        title=title,
        content=ft.Text(message),
        actions=[
            ft.TextButton("Cancelar", on_click=_cancel),
            ft.FilledButton(
                confirm_label,
                icon=ft.Icons.DELETE_OUTLINE,
                style=ft.ButtonStyle(bgcolor=ft.Colors.RED_400),
                on_click=_accept,
            ),
        ],
    )
    return dlg


def show_snack(page: ft.Page, message: str, *, color: str | None = None):
    page.open(ft.SnackBar(ft.Text(message), bgcolor=color))
