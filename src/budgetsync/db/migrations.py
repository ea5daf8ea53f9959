"""
Database migrations for the sync queue.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Non-SQLite databases are left alone;
    create_all() already builds them with the current schema.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        if not _table_exists(conn, "syncqueueitem"):
            return

        # Per-item retry budget (queues created before it was configurable)
        _add_column_if_missing(
            conn, "syncqueueitem", "max_retries", "INTEGER NOT NULL DEFAULT 3"
        )
        # Structured conflict flag; replaces matching on error_message text.
        # Rows already FAILED with the conflict reasons are back-filled.
        if _add_column_if_missing(
            conn, "syncqueueitem", "is_conflict", "BOOLEAN NOT NULL DEFAULT 0"
        ):
            conn.execute(text(
                "UPDATE syncqueueitem SET is_conflict = 1 "
                "WHERE status = 'FAILED' AND ("
                "error_message LIKE '%already exists%' "
                "OR error_message LIKE '%modified more recently%')"
            ))

        conn.commit()


def _table_exists(conn, table: str) -> bool:
    result = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type = 'table' AND name = :name"),
        {"name": table},
    )
    return result.first() is not None


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> bool:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite column definition, e.g. "INTEGER NOT NULL DEFAULT 0".

    Returns:
        True if the column was added, False if it was already there.
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column in existing_columns:
        return False
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
    return True
