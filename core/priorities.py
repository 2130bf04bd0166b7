"""Utility helpers for sync operation priorities."""
from __future__ import annotations

from typing import Dict, Mapping, Optional

# Lower number drains first: 1 alta, 2 média, 3 baixa.
PRIORITY_HIGH = 1
PRIORITY_MEDIUM = 2
PRIORITY_LOW = 3

PRIORITY_META: Dict[int, Dict[str, str]] = {
    PRIORITY_HIGH: {
        "label": "Alta",
        "color": "#EF4444",    # red-500
        "bgcolor": "#FEE2E2",  # red-100
    },
    PRIORITY_MEDIUM: {
        "label": "Média",
        "color": "#F59E0B",    # amber-500
        "bgcolor": "#FEF3C7",  # amber-100
    },
    PRIORITY_LOW: {
        "label": "Baixa",
        "color": "#64748B",    # slate-500
        "bgcolor": "#E2E8F0",  # slate-200
    },
}

DEFAULT_PRIORITY = PRIORITY_MEDIUM

DEFAULT_TABLE_PRIORITY: Dict[str, int] = {
    "payments": PRIORITY_HIGH,
    "profiles": PRIORITY_HIGH,
    "weight_records": PRIORITY_MEDIUM,
    "hydration_records": PRIORITY_MEDIUM,
    "workout_logs": PRIORITY_MEDIUM,
    "workout_exercise_logs": PRIORITY_MEDIUM,
    "notifications": PRIORITY_LOW,
    "user_theme_preferences": PRIORITY_LOW,
}


def normalize_priority(value: int | str | None) -> int:
    """Clamp external values to the supported priority range."""
    if value is None:
        return DEFAULT_PRIORITY
    try:
        ivalue = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    floor = min(PRIORITY_META.keys())
    ceil = max(PRIORITY_META.keys())
    return max(floor, min(ceil, ivalue))


def priority_label(value: int) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["label"]


def priority_color(value: int) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["color"]


def priority_bgcolor(value: int) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return meta["bgcolor"]


class PriorityPolicy:
    """Maps target tables to a drain priority.

    The calling application owns the table; the engine only falls back to
    ``DEFAULT_TABLE_PRIORITY`` and then to ``DEFAULT_PRIORITY``.
    """

    def __init__(self, overrides: Optional[Mapping[str, int]] = None) -> None:
        self._table = dict(DEFAULT_TABLE_PRIORITY)
        for table, value in (overrides or {}).items():
            self._table[table] = normalize_priority(value)

    def for_table(self, table: str, explicit: int | None = None) -> int:
        if explicit is not None:
            return normalize_priority(explicit)
        return self._table.get(table, DEFAULT_PRIORITY)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._table)


__all__ = [
    "DEFAULT_PRIORITY",
    "DEFAULT_TABLE_PRIORITY",
    "PRIORITY_HIGH",
    "PRIORITY_LOW",
    "PRIORITY_MEDIUM",
    "PRIORITY_META",
    "PriorityPolicy",
    "normalize_priority",
    "priority_bgcolor",
    "priority_color",
    "priority_label",
]
