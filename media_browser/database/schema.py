"""
Database schema definitions.
"""
import sqlite3
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

CURRENT_SCHEMA_VERSION = 3

# Columns added after the first release, applied in order to older files.
# (column, definition, schema version that introduced it)
MIGRATIONS: List[Tuple[str, str, int]] = [
    ("edited_url", "TEXT", 2),
    ("live_video_url", "TEXT", 2),
    ("directory_id", "INTEGER", 2),
    ("sync_status", "TEXT NOT NULL DEFAULT 'not_synced'", 3),
]


@dataclass
class SchemaState:
    """What the item table physically looks like after init_schema."""
    item_columns: Set[str] = field(default_factory=set)
    version: int = 0
    degraded: bool = False
    error: Optional[str] = None


def item_columns(conn: sqlite3.Connection) -> Set[str]:
    return {row[1] for row in conn.execute("PRAGMA table_info(media_items)")}


def init_schema(conn: sqlite3.Connection) -> SchemaState:
    """
    Applies the schema and upgrades older item tables in place.
    Idempotent: safe to run on every startup. Existing rows are never
    dropped or reordered; a failed upgrade leaves the store usable with
    the columns it already has.
    """
    with conn:
        # 1. Version Tracking
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        # 2. Media Items (one row per logical item, keyed by primary file)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS media_items (
            id                INTEGER PRIMARY KEY AUTOINCREMENT,
            url               TEXT UNIQUE,
            type              TEXT,
            filename          TEXT,
            creation_date     TEXT,
            modification_date TEXT,
            width             REAL,
            height            REAL,
            exif_date         TEXT,
            latitude          REAL,
            longitude         REAL,
            exif              TEXT,             -- JSON extension bag
            edited_url        TEXT,
            live_video_url    TEXT,
            directory_id      INTEGER,          -- lookup only, no FK
            sync_status       TEXT NOT NULL DEFAULT 'not_synced'
        );
        """)

        # 3. Watched Directories (replaced wholesale on save)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS directories (
            id       INTEGER PRIMARY KEY AUTOINCREMENT,
            path     TEXT,
            bookmark TEXT                       -- base64 access grant
        );
        """)

    state = SchemaState()
    existing = item_columns(conn)

    # 4. Additive migrations for files written by older versions
    for column, definition, version in MIGRATIONS:
        if column in existing:
            continue
        try:
            with conn:
                conn.execute(f"ALTER TABLE media_items ADD COLUMN {column} {definition}")
            logging.info(f"Migrated media_items: added column '{column}' (schema v{version}).")
        except sqlite3.Error as e:
            logging.error(f"Could not add column '{column}' to media_items: {e}")
            state.degraded = True
            state.error = str(e)

    state.item_columns = item_columns(conn)

    with conn:
        # 5. Indices (only for columns that actually exist)
        if "directory_id" in state.item_columns:
            conn.execute("CREATE INDEX IF NOT EXISTS idx_items_directory ON media_items(directory_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_items_exif_date ON media_items(exif_date);")

        if not state.degraded:
            conn.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    state.version = row[0] or 0

    logging.debug("Database schema initialized.")
    return state
