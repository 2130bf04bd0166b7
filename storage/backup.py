"""Daily copies of the offline database and quarantine of broken files."""
from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from shutil import copy2


def _parse_backup_date(path: Path, prefix: str) -> datetime | None:
    stem = path.stem
    if not stem.startswith(prefix):
        return None
    date_part = stem[len(prefix) :]
    try:
        return datetime.strptime(date_part, "%Y-%m-%d")
    except ValueError:
        return None


def ensure_daily_backup(
    db_path: str | Path,
    backup_dir: str | Path,
    *,
    keep_days: int = 7,
) -> Path | None:
    """Copy the queue database once per day and drop copies older than ``keep_days``."""

    db_file = Path(db_path)
    if not db_file.exists():
        return None

    backups = Path(backup_dir)
    backups.mkdir(parents=True, exist_ok=True)

    today = datetime.now().date()
    prefix = f"{db_file.stem}_"
    destination = backups / f"{prefix}{today.isoformat()}{db_file.suffix}"

    created: Path | None = None
    if not destination.exists():
        copy2(db_file, destination)
        created = destination

    if keep_days > 0:
        cutoff = today - timedelta(days=keep_days - 1)
        for file in backups.glob(f"{prefix}*{db_file.suffix}"):
            stamp = _parse_backup_date(file, prefix)
            if stamp and stamp.date() < cutoff:
                try:
                    file.unlink()
                except OSError:
                    pass

    return created


def quarantine_file(db_path: str | Path, backup_dir: str | Path) -> Path | None:
    """Move an unreadable database out of the way, keeping it for inspection."""

    db_file = Path(db_path)
    if not db_file.exists():
        return None
    target_dir = Path(backup_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    destination = target_dir / f"{db_file.name}.corrupt-{stamp}"
    db_file.replace(destination)
    for suffix in ("-wal", "-shm", "-journal"):
        sidecar = db_file.with_name(db_file.name + suffix)
        if sidecar.exists():
            try:
                sidecar.unlink()
            except OSError:
                pass
    return destination


__all__ = ["ensure_daily_backup", "quarantine_file"]
