"""SQLite storage layer for droid-reaper policy lists.

The policy store only needs two operations from persistence: load every
set in a named store, and replace one set. Values are stored one row per
member so a save is a delete-then-insert inside a single transaction.
"""

import sqlite3
import time
from pathlib import Path

import structlog

log = structlog.get_logger()

SCHEMA_VERSION = 1


SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS policy_entries (
    store TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    added_at REAL NOT NULL,
    PRIMARY KEY (store, key, value)
);

CREATE INDEX IF NOT EXISTS idx_policy_entries_store
    ON policy_entries(store);
"""


class StorageError(Exception):
    """Raised when the policy database cannot be read."""


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                return
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except sqlite3.DatabaseError:
            # Corrupted or incompatible DB - delete and recreate
            log.info("schema_unreadable", path=str(db_path), action="recreate")
        finally:
            conn.close()
        _remove_database(db_path)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(SCHEMA)
        conn.execute(
            "INSERT OR REPLACE INTO meta (key, value, updated_at) VALUES (?, ?, ?)",
            ("schema_version", str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database(db_path: Path) -> None:
    """Delete the database and its WAL/SHM side files."""
    for path in (db_path, db_path.with_suffix(".db-wal"), db_path.with_suffix(".db-shm")):
        if path.exists():
            path.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    return int(row[0]) if row else 0


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
    except sqlite3.OperationalError:
        return 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection."""
    return sqlite3.connect(db_path)


def load_store(conn: sqlite3.Connection, store: str) -> dict[str, set[str]]:
    """Return every set in a store, keyed by set name."""
    rows = conn.execute(
        "SELECT key, value FROM policy_entries WHERE store = ?",
        (store,),
    ).fetchall()
    result: dict[str, set[str]] = {}
    for key, value in rows:
        result.setdefault(key, set()).add(value)
    return result


def replace_set(conn: sqlite3.Connection, store: str, key: str, values: set[str]) -> None:
    """Replace one set atomically."""
    now = time.time()
    with conn:
        conn.execute(
            "DELETE FROM policy_entries WHERE store = ? AND key = ?",
            (store, key),
        )
        conn.executemany(
            "INSERT INTO policy_entries (store, key, value, added_at) VALUES (?, ?, ?, ?)",
            [(store, key, value, now) for value in sorted(values)],
        )


class PolicyStorage:
    """SQLite-backed persistence for the policy store.

    Opens a short-lived connection per call; the policy store serializes
    its own writes.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def load(self, store: str) -> dict[str, set[str]]:
        """Load all sets of a store.

        A missing database, or one written with another schema version, is an
        empty store; the next save recreates it.

        Raises:
            StorageError: If the database exists but cannot be read
        """
        if not self.db_path.exists():
            return {}
        try:
            conn = get_connection(self.db_path)
            try:
                version = get_schema_version(conn)
                if version != SCHEMA_VERSION:
                    log.info("policy_schema_mismatch", existing=version, expected=SCHEMA_VERSION)
                    return {}
                return load_store(conn, store)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read {self.db_path}: {e}") from e

    def save(self, store: str, key: str, values: set[str]) -> bool:
        """Replace one set. Returns False if the write failed."""
        try:
            init_database(self.db_path)
            conn = get_connection(self.db_path)
            try:
                replace_set(conn, store, key, values)
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            log.warning("policy_save_failed", store=store, key=key, error=str(e))
            return False

        log.info("policy_saved", store=store, key=key, count=len(values))
        return True
