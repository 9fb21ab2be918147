"""Database schema and migration logic for refinery SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Schema migration (migrate_schema)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2  # v2: audit records carry a free-form details column

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "owners",
        "memory_entries",
        "refinement_audit",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Owners (one per agent) and their refinement settings
CREATE TABLE IF NOT EXISTS owners (
    id TEXT PRIMARY KEY,
    retention_threshold REAL,
    last_refined_at TEXT,
    created_at TEXT NOT NULL
);

-- Memory entries. Never physically deleted: discarded_at is a soft delete.
CREATE TABLE IF NOT EXISTS memory_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    content TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'core',
    protected INTEGER NOT NULL DEFAULT 0,
    discarded_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_entries_owner ON memory_entries(owner_id);
CREATE INDEX IF NOT EXISTS idx_entries_active ON memory_entries(owner_id, kind, discarded_at);

-- Append-only audit trail. seq is the strict chronological order used for replay.
CREATE TABLE IF NOT EXISTS refinement_audit (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    owner_id TEXT NOT NULL,
    session_id TEXT,
    operation TEXT NOT NULL,
    target_entry_id INTEGER,
    before_state TEXT,
    after_state TEXT,
    merge_set TEXT,
    details TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_audit_session ON refinement_audit(session_id);
CREATE INDEX IF NOT EXISTS idx_audit_owner ON refinement_audit(owner_id);
CREATE INDEX IF NOT EXISTS idx_audit_operation ON refinement_audit(operation);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    # First, run migrations if needed (before executing full schema)
    migrate_schema(conn)

    # Now execute full schema (CREATE TABLE IF NOT EXISTS is safe)
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases.

    Handles adding new columns to existing tables.
    """
    tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    table_names = {t[0] for t in tables}

    if "refinement_audit" not in table_names:
        # Fresh database, no migration needed
        return

    def get_columns(table: str) -> set:
        validate_table_name(table)
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return {c[1] for c in cols}

    migrations = []
    if "details" not in get_columns("refinement_audit"):
        migrations.append("ALTER TABLE refinement_audit ADD COLUMN details TEXT")

    for migration in migrations:
        try:
            conn.execute(migration)
            logger.info(f"Migration: {migration}")
        except sqlite3.OperationalError as e:
            if "duplicate column" not in str(e).lower():
                logger.warning(f"Migration failed: {e}")
