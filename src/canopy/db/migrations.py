"""
Database migrations for the room registry.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Legacy schema handled here: the pull-only room table. It already carried
external_location_id, external_location_name and a nullable sync_status,
but predates the push phase, so it lacks push provenance
(created_by_internal), per-room diagnostics (sync_error_detail,
last_synced_at) and the cached location type name.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
Non-SQLite databases are expected to be managed out of band.
"""
from sqlalchemy import text

# Columns added to the pull-only room table, in the order they were introduced
PUSH_PHASE_ROOM_COLUMNS = (
    ("external_location_type_name", "VARCHAR"),
    ("sync_error_detail", "VARCHAR"),
    ("last_synced_at", "DATETIME"),
    ("created_by_internal", "BOOLEAN NOT NULL DEFAULT 0"),
)


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        for column, col_type in PUSH_PHASE_ROOM_COLUMNS:
            _add_column_if_missing(conn, "room", column, col_type)

        # Pull-only rows that were never reconciled have no status
        conn.execute(
            text("UPDATE room SET sync_status = 'not_synced' WHERE sync_status IS NULL")
        )
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
