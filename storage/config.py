"""Simple JSON-backed configuration store."""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from core.priorities import normalize_priority
from core.settings import CONFIG_PATH, OFFLINE_SYNC, REMOTE


@dataclass
class SyncConfig:
    """User-tunable sync options persisted to ``config.json``."""

    remote_url: str = REMOTE.base_url
    api_key: str = REMOTE.api_key
    auto_sync: bool = True
    max_retries: int = OFFLINE_SYNC.max_retries
    table_priorities: Dict[str, int] = field(default_factory=dict)


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _coerce_priorities(value: Any) -> Dict[str, int]:
    if not isinstance(value, dict):
        return {}
    return {str(table): normalize_priority(level) for table, level in value.items()}


def load_config(path: Optional[Path] = None) -> SyncConfig:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    defaults = SyncConfig()
    try:
        max_retries = max(1, int(data.get("max_retries", defaults.max_retries)))
    except (TypeError, ValueError):
        max_retries = defaults.max_retries
    return SyncConfig(
        remote_url=str(data.get("remote_url") or defaults.remote_url),
        api_key=str(data.get("api_key") or defaults.api_key),
        auto_sync=bool(data.get("auto_sync", defaults.auto_sync)),
        max_retries=max_retries,
        table_priorities=_coerce_priorities(data.get("table_priorities")),
    )


def save_config(config: SyncConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = json.dumps(asdict(config), ensure_ascii=False, indent=2, sort_keys=True)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_config(path: Optional[Path] = None, **changes: Any) -> SyncConfig:
    target = path or CONFIG_PATH
    cfg = load_config(target)
    for key, value in changes.items():
        if hasattr(cfg, key):
            setattr(cfg, key, value)
    save_config(cfg, target)
    return cfg


__all__ = ["SyncConfig", "load_config", "save_config", "update_config"]
