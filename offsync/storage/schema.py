"""Database schema for the SQLite operation log.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Additive column migrations (migrate_schema)
- Database initialization (init_db)
"""

import logging
import sqlite3
from typing import Dict, Set

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2  # v2: base_version, metadata and conflict hold columns on operations

ALLOWED_TABLES = frozenset({"schema_version", "operations", "settings", "sync_history"})

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- One row per pending, in-flight, retrying or failed operation
CREATE TABLE IF NOT EXISTS operations (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT,              -- JSON object
    created_at TEXT NOT NULL,
    priority TEXT NOT NULL,
    retry_count INTEGER DEFAULT 0,
    max_retries INTEGER DEFAULT 3,
    status TEXT NOT NULL,
    dependencies TEXT,         -- JSON array of operation ids
    error TEXT,
    base_version TEXT,         -- JSON scalar
    metadata TEXT,             -- JSON object
    next_retry_at TEXT,
    last_attempt_at TEXT,
    cancel_requested INTEGER DEFAULT 0,
    awaiting_resolution TEXT,  -- conflict id
    superseded_by TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status);
CREATE INDEX IF NOT EXISTS idx_operations_entity ON operations(entity_type, entity_id);

-- Key-value settings (persisted config overrides)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,       -- JSON
    updated_at TEXT NOT NULL
);

-- Summary of recent sync cycles
CREATE TABLE IF NOT EXISTS sync_history (
    id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    duration_ms REAL DEFAULT 0,
    operations_synced INTEGER DEFAULT 0,
    operations_failed INTEGER DEFAULT 0,
    bytes_synced INTEGER DEFAULT 0,
    success INTEGER DEFAULT 1,
    errors TEXT                -- JSON array
);
CREATE INDEX IF NOT EXISTS idx_sync_history_timestamp ON sync_history(timestamp);
"""

# Columns added after v1, applied with ALTER TABLE on older databases
OPERATION_COLUMN_MIGRATIONS: Dict[str, str] = {
    "base_version": "ALTER TABLE operations ADD COLUMN base_version TEXT",
    "metadata": "ALTER TABLE operations ADD COLUMN metadata TEXT",
    "awaiting_resolution": "ALTER TABLE operations ADD COLUMN awaiting_resolution TEXT",
    "superseded_by": "ALTER TABLE operations ADD COLUMN superseded_by TEXT",
}


def validate_table_name(table: str) -> str:
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def get_columns(conn: sqlite3.Connection, table: str) -> Set[str]:
    validate_table_name(table)
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Add columns missing from an existing operations table."""
    tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    if "operations" not in tables:
        # Fresh database, no migration needed
        return

    existing = get_columns(conn, "operations")
    for column, statement in OPERATION_COLUMN_MIGRATIONS.items():
        if column not in existing:
            logger.info(f"Migrating operations table: adding {column}")
            conn.execute(statement)


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
    """
    migrate_schema(conn)
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
