"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


DATA_DIR_ENV = "FRANCGYM_DATA_DIR"


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(os.environ if env is None else env)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    override = environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "FrancGymPro"


DATA_DIR = get_default_data_dir(APP_NAME)
LOG_DIR = DATA_DIR / "logs"
BACKUP_DIR = DATA_DIR / "backups"

for _dir in (DATA_DIR, LOG_DIR, BACKUP_DIR):
    _dir.mkdir(parents=True, exist_ok=True)


DB_PATH = DATA_DIR / "offline.db"
CONFIG_PATH = DATA_DIR / "config.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class OfflineSyncSettings:
    max_retries: int = 5
    connectivity_quiet_period_sec: float = 1.5
    fail_open_recheck_sec: float = 30.0
    replay_timeout_sec: float = 15.0
    backoff_base_sec: float = 1.0
    backoff_cap_sec: float = 30.0
    periodic_interval_sec: float = 60.0
    coalesce_record_writes: bool = True
    primary_key: str = "id"


OFFLINE_SYNC = OfflineSyncSettings()


@dataclass(frozen=True)
class RemoteSettings:
    base_url: str = os.environ.get("FRANCGYM_REMOTE_URL", "")
    api_key: str = os.environ.get("FRANCGYM_REMOTE_KEY", "")
    rest_prefix: str = "/rest/v1"
    health_path: str = "/rest/v1/"
    request_timeout_sec: float = 10.0
    probe_interval_sec: float = 20.0


REMOTE = RemoteSettings()


@dataclass(frozen=True)
class CacheSettings:
    version: int = 1
    default_ttl_sec: int = 7 * 24 * 60 * 60
    fetch_ttl_sec: int = 5 * 60
    size_limit_bytes: int = 50 * 1024 * 1024
    check_interval_sec: int = 5 * 60
    notify_cooldown_sec: int = 24 * 60 * 60


CACHE = CacheSettings()


@dataclass(frozen=True)
class BackupSettings:
    enabled: bool = True
    directory: Path = BACKUP_DIR
    keep_days: int = 7


BACKUP = BackupSettings()


@dataclass(frozen=True)
class UISettings:
    app_title: str = f"{APP_NAME} · Sincronização"
    theme_mode: str = "system"
    color_scheme_seed: str = "#F97316"
    window_min_width: int = 420
    window_min_height: int = 640
    refresh_interval_sec: int = 2
    online_color: str = "#10B981"
    offline_color: str = "#F59E0B"
    syncing_color: str = "#3B82F6"


UI = UISettings()


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "DATA_DIR_ENV",
    "LOG_DIR",
    "BACKUP_DIR",
    "DB_PATH",
    "CONFIG_PATH",
    "SYNC_LOG_PATH",
    "OFFLINE_SYNC",
    "OfflineSyncSettings",
    "REMOTE",
    "CACHE",
    "BACKUP",
    "UI",
    "get_default_data_dir",
]
