# francgym/main.py
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import flet as ft

from core.logs import ensure_logger
from core.settings import APP_NAME, UI
from ui.app_shell import AppShell


async def main(page: ft.Page):
    page.title = UI.app_title
    page.theme_mode = UI.theme_mode
    page.theme = ft.Theme(color_scheme_seed=UI.color_scheme_seed)
    page.appbar = ft.AppBar(title=ft.Text(APP_NAME), center_title=False)
    page.padding = 0
    page.window.min_width = UI.window_min_width
    page.window.min_height = UI.window_min_height

    ensure_logger()
    shell = AppShell(page)

    async def on_disconnect(_):
        await shell.unmount()

    page.on_disconnect = on_disconnect
    await shell.mount()


if __name__ == "__main__":
    ft.app(target=main)
