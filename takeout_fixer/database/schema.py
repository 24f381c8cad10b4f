"""
Manifest schema definitions.
"""
import sqlite3
import logging
from typing import Optional

CURRENT_SCHEMA_VERSION = 1

def read_schema_version(conn: sqlite3.Connection) -> Optional[int]:
    """Version recorded in an existing manifest, None for a fresh database."""
    cur = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'")
    if cur.fetchone() is None:
        return None
    return conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]

def init_schema(conn: sqlite3.Connection):
    """
    Applies the manifest schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. One row per output path below the destination root.
        # size + fingerprint identify the bytes we left there last time.
        conn.execute("""
        CREATE TABLE IF NOT EXISTS outputs (
            rel_path        TEXT PRIMARY KEY,
            size_bytes      INTEGER NOT NULL,
            fingerprint     TEXT NOT NULL,
            status          TEXT NOT NULL,
            fault           TEXT,
            reason          TEXT,
            volume          INTEGER,
            written_at      TEXT NOT NULL
        );
        """)

        # 3. Run history
        conn.execute("""
        CREATE TABLE IF NOT EXISTS runs (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            started_at      TEXT NOT NULL,
            finished_at     TEXT,
            volumes         TEXT NOT NULL,     -- JSON list of archive paths
            summary_json    TEXT
        );
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_outputs_status ON outputs(status);")

    logging.debug("Manifest schema initialized.")
