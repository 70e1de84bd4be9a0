"""Database schema and migration logic for jmapc SQLite storage.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
- Schema migration (migrate_schema)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 3  # v3: harmonization_conflicts table

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "service_accounts",
        "collections",
        "entities",
        "chronicle",
        "harmonization_conflicts",
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

-- One row per (user, remote connection); carries the harmonization lease
CREATE TABLE IF NOT EXISTS service_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    label TEXT,
    connection TEXT,            -- JSON object, opaque to the core
    enabled INTEGER DEFAULT 1,
    connected INTEGER DEFAULT 1,
    contacts_mode TEXT DEFAULT 'off',
    events_mode TEXT DEFAULT 'off',
    tasks_mode TEXT DEFAULT 'off',
    contacts_policy TEXT DEFAULT 'local-wins',
    events_policy TEXT DEFAULT 'local-wins',
    tasks_policy TEXT DEFAULT 'local-wins',
    -- Lease
    locked INTEGER DEFAULT 0,
    lease_holder TEXT,
    lease_heartbeat REAL,       -- epoch seconds
    -- Run bookkeeping
    harmonization_state TEXT DEFAULT 'idle',
    harmonization_start TEXT,
    harmonization_end TEXT,
    last_outcome TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_accounts_user ON service_accounts(user_id);

-- Local containers; exactly one entity type each
CREATE TABLE IF NOT EXISTS collections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES service_accounts(id) ON DELETE CASCADE,
    entity_type TEXT NOT NULL,
    uuid TEXT NOT NULL,
    label TEXT,
    remote_id TEXT,
    local_state TEXT,           -- chronicle token at last commit
    remote_state TEXT,          -- server state token at last commit
    enabled INTEGER DEFAULT 1,
    harmonized_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (account_id, remote_id)
);
CREATE INDEX IF NOT EXISTS idx_collections_account ON collections(account_id);

-- Synchronized items and their correlation to the remote copy
CREATE TABLE IF NOT EXISTS entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    collection_id INTEGER NOT NULL REFERENCES collections(id) ON DELETE CASCADE,
    uuid TEXT NOT NULL,
    content TEXT,               -- JSON object, canonical local content
    signature TEXT,
    remote_id TEXT,
    last_remote_signature TEXT,
    modified_at TEXT,
    deleted INTEGER DEFAULT 0,  -- tombstone for a local delete not yet pushed
    pinned INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (collection_id, uuid)
);
CREATE INDEX IF NOT EXISTS idx_entities_remote ON entities(collection_id, remote_id);

-- Append-only log of committed local mutations
CREATE TABLE IF NOT EXISTS chronicle (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES service_accounts(id) ON DELETE CASCADE,
    collection_id INTEGER NOT NULL,
    entity_id INTEGER,
    entity_uuid TEXT NOT NULL,
    operation TEXT NOT NULL,    -- create | update | delete
    stamp INTEGER NOT NULL      -- microseconds since epoch, strictly monotonic
);
CREATE INDEX IF NOT EXISTS idx_chronicle_collection ON chronicle(collection_id, stamp);

-- Conflicts resolved by policy
CREATE TABLE IF NOT EXISTS harmonization_conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES service_accounts(id) ON DELETE CASCADE,
    collection_id INTEGER NOT NULL,
    entity_id INTEGER,
    remote_id TEXT,
    classification TEXT NOT NULL,
    policy TEXT NOT NULL,
    winner TEXT NOT NULL,
    local_signature TEXT,
    remote_signature TEXT,
    resolved_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conflicts_resolved ON harmonization_conflicts(resolved_at);
"""


def init_db(conn: sqlite3.Connection, db_path=None) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    # First, run migrations if needed (before executing full schema)
    migrate_schema(conn)

    # CREATE TABLE IF NOT EXISTS is safe to re-run
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    else:
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    conn.commit()

    if db_path is not None:
        import os

        try:
            os.chmod(db_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set secure permissions: {e}")


def _get_columns(conn: sqlite3.Connection, table: str) -> set:
    validate_table_name(table)
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Run schema migrations for existing databases.

    Handles adding new columns to existing tables.
    """
    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    }
    if "service_accounts" not in tables:
        return  # Fresh database, SCHEMA creates everything

    account_cols = _get_columns(conn, "service_accounts")
    # v2: run outcome bookkeeping
    for column, ddl in (
        ("last_outcome", "ALTER TABLE service_accounts ADD COLUMN last_outcome TEXT"),
        ("last_error", "ALTER TABLE service_accounts ADD COLUMN last_error TEXT"),
    ):
        if column not in account_cols:
            logger.info(f"Migrating service_accounts: adding {column}")
            conn.execute(ddl)

    if "entities" in tables:
        entity_cols = _get_columns(conn, "entities")
        if "pinned" not in entity_cols:
            logger.info("Migrating entities: adding pinned")
            conn.execute("ALTER TABLE entities ADD COLUMN pinned INTEGER DEFAULT 0")
