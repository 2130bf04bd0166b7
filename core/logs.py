"""Logger setup for the sync engine."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.settings import SYNC_LOG_PATH


LOGGER_NAME = "francgym.sync"


def ensure_logger(path: Path | str = SYNC_LOG_PATH) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def get_logger(component: str) -> logging.Logger:
    ensure_logger()
    return logging.getLogger(f"{LOGGER_NAME}.{component}")


__all__ = ["LOGGER_NAME", "ensure_logger", "get_logger"]
