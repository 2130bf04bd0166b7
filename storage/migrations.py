"""Ad-hoc schema migrations for the offline database."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_pending_op_columns(conn) -> None:
    # Queues written before priorities existed drain as "média".
    columns = {
        "priority": "INTEGER NOT NULL DEFAULT 2",
        "record_key": "TEXT",
        "last_error": "TEXT",
        "next_try_at": "INTEGER",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "pending_operation", name):
            conn.execute(text(f"ALTER TABLE pending_operation ADD COLUMN {name} {ddl_type}"))


def ensure_pending_op_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_pending_operation_drain
            ON pending_operation (priority, timestamp, seq)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_pending_operation_timestamp
            ON pending_operation (timestamp)
            """
        )
    )


def check_integrity(conn) -> list[str]:
    """Return the problems reported by SQLite, empty when the file is sound."""

    rows = [row[0] for row in conn.execute(text("PRAGMA quick_check"))]
    return [row for row in rows if row != "ok"]


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_pending_op_columns(conn)
        ensure_pending_op_indexes(conn)


__all__ = ["check_integrity", "run_all"]
