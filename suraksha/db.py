"""
Database module for Suraksha.

Provides SQLite-based storage for identities, key custody, one-time codes,
active emergency alerts, the resolved-alert archive, complaints, and
responder accounts.

A ``Database`` is constructed explicitly and handed to each store. Each
thread gets its own connection; every multi-statement write runs inside
``transaction()``, which takes SQLite's write lock up front
(BEGIN IMMEDIATE) so read-then-write sequences cannot interleave.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

from . import config

TABLES = (
    "identities",
    "identity_keys",
    "otp_records",
    "incidents",
    "incident_history",
    "complaints",
    "responders",
)

# All three envelope columns are present or none are.
_ENVELOPE_CHECK = """
    CHECK (
        (ciphertext IS NULL AND wrapped_key IS NULL AND iv IS NULL)
        OR (ciphertext IS NOT NULL AND wrapped_key IS NOT NULL AND iv IS NOT NULL)
    )"""

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS identities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phone_number TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        dob TEXT NOT NULL,
        is_verified INTEGER NOT NULL DEFAULT 0,
        latitude REAL,
        longitude REAL,
        address TEXT,
        location_updated_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_login INTEGER
    );""",
    """
    CREATE TABLE IF NOT EXISTS identity_keys (
        owner_phone TEXT PRIMARY KEY REFERENCES identities(phone_number) ON DELETE CASCADE,
        public_key TEXT NOT NULL,
        private_key TEXT NOT NULL,
        key_size INTEGER NOT NULL,
        fingerprint TEXT NOT NULL,
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE TABLE IF NOT EXISTS otp_records (
        phone_number TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        created_at INTEGER NOT NULL
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_otp_records_expires
    ON otp_records(expires_at);""",
    f"""
    CREATE TABLE IF NOT EXISTS incidents (
        owner_phone TEXT PRIMARY KEY,
        incident_id TEXT NOT NULL UNIQUE,
        owner_name TEXT,
        message TEXT,
        ciphertext TEXT,
        wrapped_key TEXT,
        iv TEXT,
        is_encrypted INTEGER NOT NULL DEFAULT 0,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        address TEXT,
        accuracy REAL,
        urgency TEXT NOT NULL DEFAULT 'critical'
            CHECK (urgency IN ('low', 'medium', 'high', 'critical')),
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'responding')),
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        CHECK (message IS NOT NULL OR ciphertext IS NOT NULL),
        {_ENVELOPE_CHECK}
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_incidents_status
    ON incidents(status);""",
    f"""
    CREATE TABLE IF NOT EXISTS incident_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        incident_id TEXT NOT NULL UNIQUE,
        owner_phone TEXT NOT NULL,
        owner_name TEXT,
        message TEXT,
        ciphertext TEXT,
        wrapped_key TEXT,
        iv TEXT,
        is_encrypted INTEGER NOT NULL DEFAULT 0,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        address TEXT,
        accuracy REAL,
        urgency TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'resolved' CHECK (status = 'resolved'),
        resolved_by TEXT NOT NULL,
        resolved_notes TEXT,
        created_at INTEGER NOT NULL,
        resolved_at INTEGER NOT NULL,
        {_ENVELOPE_CHECK}
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_incident_history_resolved
    ON incident_history(resolved_at);""",
    f"""
    CREATE TABLE IF NOT EXISTS complaints (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_phone TEXT NOT NULL,
        owner_name TEXT,
        category TEXT NOT NULL,
        subject TEXT NOT NULL,
        description TEXT,
        ciphertext TEXT,
        wrapped_key TEXT,
        iv TEXT,
        is_encrypted INTEGER NOT NULL DEFAULT 0,
        location TEXT,
        urgency TEXT NOT NULL DEFAULT 'medium'
            CHECK (urgency IN ('low', 'medium', 'high', 'critical')),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'assigned', 'in_progress', 'resolved', 'rejected')),
        assigned_to TEXT,
        response_notes TEXT,
        resolved_by TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        resolved_at INTEGER,
        CHECK (description IS NOT NULL OR ciphertext IS NOT NULL),
        {_ENVELOPE_CHECK}
    );""",
    """
    CREATE INDEX IF NOT EXISTS idx_complaints_status
    ON complaints(status);""",
    """
    CREATE INDEX IF NOT EXISTS idx_complaints_owner
    ON complaints(owner_phone);""",
    """
    CREATE TABLE IF NOT EXISTS responders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'officer'
            CHECK (role IN ('officer', 'supervisor', 'admin')),
        department TEXT,
        rank TEXT,
        badge_number TEXT UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_login INTEGER
    );""",
]


class Database:
    """
    SQLite store shared by all Suraksha components.

    Usage:
        db = Database("data/suraksha.db")
        db.init()
        ...
        db.close()

    or as a context manager. ``:memory:`` databases are per-thread and
    only suitable for single-threaded use.
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = str(path or config.DB_PATH)
        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()

    def __enter__(self) -> "Database":
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connection(self) -> sqlite3.Connection:
        """
        Get the calling thread's connection, opening it on first use.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON;")
            if self.path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.
        Commits on success, rolls back on failure. Nested use joins the
        enclosing transaction.
        """
        conn = self.connection()
        if conn.in_transaction:
            yield conn
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.rollback()
            raise

    def init(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    def reset(self) -> None:
        """
        Clear all tables but preserve schema.
        Intended for test isolation.
        """
        with self.transaction() as conn:
            for table in reversed(TABLES):
                conn.execute(f"DELETE FROM {table}")

    def stats(self) -> Dict[str, int]:
        """Get row counts per table for monitoring."""
        conn = self.connection()
        stats = {}
        for table in TABLES:
            cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def close(self) -> None:
        """Close every connection opened by this database."""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()


def open_database(path: Optional[str] = None) -> Database:
    """Create a Database and initialize its schema."""
    db = Database(path)
    db.init()
    return db
