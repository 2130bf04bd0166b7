# francgym/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError
from sqlmodel import SQLModel, Session, create_engine

from core.logs import get_logger
from core.settings import BACKUP, DB_PATH
from services.errors import QueueCorruptedError
from storage.backup import ensure_daily_backup, quarantine_file

# Ensure SQLModel metadata is populated
import models.pending_op  # noqa: F401
import models.evicted_op  # noqa: F401
import models.cache_entry  # noqa: F401
from storage import migrations


logger = get_logger("db")

SessionFactory = Callable[[], Session]

_engine: Optional[Engine] = None


def create_db_engine(path: Path | str | None = None) -> Engine:
    target = Path(path or DB_PATH)
    return create_engine(f"sqlite:///{target.as_posix()}", echo=False)


def prepare_database(engine: Engine) -> None:
    """Create tables, run migrations and refuse files SQLite reports as damaged."""

    with engine.connect() as conn:
        problems = migrations.check_integrity(conn)
    if problems:
        raise QueueCorruptedError("; ".join(problems[:5]))
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)


def open_database(
    path: Path | str | None = None,
    *,
    backup_dir: Path | str | None = None,
    backup_enabled: bool = BACKUP.enabled,
    keep_days: int = BACKUP.keep_days,
) -> Tuple[Engine, Optional[Path]]:
    """Open (or create) the offline database.

    Returns the engine and, when the existing file was unreadable and had to be
    replaced by an empty one, the path it was moved to.
    """

    target = Path(path or DB_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    backups = Path(backup_dir or BACKUP.directory)

    engine = create_db_engine(target)
    quarantined: Optional[Path] = None
    try:
        prepare_database(engine)
    except (DatabaseError, QueueCorruptedError) as exc:
        engine.dispose()
        quarantined = quarantine_file(target, backups)
        logger.error("Offline database %s is unreadable (%s); moved to %s", target, exc, quarantined)
        engine = create_db_engine(target)
        prepare_database(engine)

    if backup_enabled and quarantined is None:
        ensure_daily_backup(target, backups, keep_days=keep_days)
    return engine, quarantined


def init_db() -> Optional[Path]:
    global _engine
    _engine, quarantined = open_database(DB_PATH)
    return quarantined


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        init_db()
    return _engine


def get_session() -> Session:
    return Session(get_engine())


def session_factory_for(engine: Engine) -> SessionFactory:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = [
    "SessionFactory",
    "create_db_engine",
    "get_engine",
    "get_session",
    "init_db",
    "open_database",
    "prepare_database",
    "session_factory_for",
]
