"""Display helpers for the sync status panel (pt-BR labels)."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from datetime_utils import ensure_utc, from_epoch_ms, utc_now


TABLE_LABELS = {
    "weight_records": "Registro de peso",
    "hydration_records": "Hidratação",
    "workout_logs": "Treino",
    "workout_exercise_logs": "Exercício",
    "profiles": "Perfil",
    "notifications": "Notificação",
    "payments": "Pagamento",
    "user_theme_preferences": "Preferências de tema",
}

OPERATION_LABELS = {
    "insert": "Criar",
    "update": "Atualizar",
    "delete": "Excluir",
}

_SIZE_UNITS = ("B", "KB", "MB", "GB")


def table_label(table: str) -> str:
    return TABLE_LABELS.get(table, table)


def operation_label(operation: str) -> str:
    return OPERATION_LABELS.get(operation, operation)


def format_bytes(size: int) -> str:
    """``1536`` -> ``"1.5 KB"``; one decimal, trailing ``.0`` dropped."""

    if size <= 0:
        return "0 B"
    index = 0
    while size >= 1024 ** (index + 1) and index < len(_SIZE_UNITS) - 1:
        index += 1
    value = round(size / 1024 ** index, 1)
    text = f"{value:.1f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[index]}"


def format_sync_time(value: Optional[datetime]) -> str:
    """``dd/MM 'às' HH:mm`` in local time, empty when never synced."""

    if value is None:
        return ""
    local = ensure_utc(value).astimezone()
    return local.strftime("%d/%m às %H:%M")


def format_age(timestamp_ms: Optional[int], now: Optional[datetime] = None) -> str:
    if timestamp_ms is None:
        return "-"
    moment = from_epoch_ms(timestamp_ms)
    seconds = max(0, int(((now or utc_now()) - moment).total_seconds()))
    if seconds < 60:
        return "agora"
    minutes = seconds // 60
    if minutes < 60:
        return f"há {minutes} min"
    hours = minutes // 60
    if hours < 24:
        return f"há {hours} h"
    days = hours // 24
    return f"há {days} {'dia' if days == 1 else 'dias'}"


def retry_label(retry_count: int) -> str:
    return f"{retry_count}x tentativas" if retry_count > 0 else ""


__all__ = [
    "OPERATION_LABELS",
    "TABLE_LABELS",
    "format_age",
    "format_bytes",
    "format_sync_time",
    "operation_label",
    "retry_label",
    "table_label",
]
