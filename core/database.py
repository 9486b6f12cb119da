"""
SQLite access for PAR2Protect.
Per-thread connections, schema creation, and write transactions that
retry while another writer holds the database lock.
"""

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS protected_items (
    path TEXT PRIMARY KEY,
    mode TEXT NOT NULL,
    redundancy INTEGER NOT NULL,
    size INTEGER NOT NULL DEFAULT 0,
    par2_size INTEGER NOT NULL DEFAULT 0,
    parity_location TEXT NOT NULL,
    last_status TEXT NOT NULL DEFAULT 'UNKNOWN',
    last_details TEXT,
    protected_date TEXT NOT NULL,
    last_verified TEXT,
    file_types TEXT
);

CREATE TABLE IF NOT EXISTS verification_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    verified_at TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT
);
CREATE INDEX IF NOT EXISTS idx_history_path ON verification_history(path, verified_at);

CREATE TABLE IF NOT EXISTS file_metadata (
    item_path TEXT NOT NULL,
    file_path TEXT NOT NULL,
    uid INTEGER NOT NULL,
    gid INTEGER NOT NULL,
    mode INTEGER NOT NULL,
    mtime REAL NOT NULL,
    PRIMARY KEY (item_path, file_path)
);

CREATE TABLE IF NOT EXISTS operation_queue (
    id TEXT PRIMARY KEY,
    operation_type TEXT NOT NULL,
    path TEXT,
    parameters TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    pid INTEGER,
    result TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_status ON operation_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_path ON operation_queue(path, status);
"""

# Columns added after the first release: (table, column, definition)
MIGRATIONS = [
    ("protected_items", "file_types", "TEXT"),
]


def now_iso() -> str:
    """Current local time as a sortable ISO-8601 string."""
    return datetime.now().isoformat(timespec="microseconds")


def is_busy_error(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Database:
    """Shared factory for SQLite connections, one per thread.

    Connections run in autocommit mode; writes go through ``write()``,
    which wraps the callable in ``BEGIN IMMEDIATE`` so the write lock is
    taken up front.
    """

    def __init__(self, db_path: str, busy_timeout: int = 5000, journal_mode: str = "WAL",
                 synchronous: str = "NORMAL", retry_attempts: int = 5, retry_delay: float = 0.1):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.journal_mode = journal_mode
        self.synchronous = synchronous
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()

    @classmethod
    def from_config(cls, db_config) -> "Database":
        return cls(
            db_config.path,
            busy_timeout=db_config.busy_timeout,
            journal_mode=db_config.journal_mode,
            synchronous=db_config.synchronous,
            retry_attempts=db_config.retry_attempts,
            retry_delay=db_config.retry_delay,
        )

    def initialize(self) -> None:
        """Create the database file and schema if missing."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        conn = self.connection()
        conn.executescript(SCHEMA)
        self._migrate(conn)
        logger.debug(f"Database schema ready at {self.db_path}")

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        for table, column, definition in MIGRATIONS:
            columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
            if column in columns:
                continue
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                logger.info(f"Added column {table}.{column}")
            except sqlite3.OperationalError as e:
                # Another process migrated first
                if "duplicate column" not in str(e).lower():
                    raise

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout)}")
            conn.execute(f"PRAGMA journal_mode = {self.journal_mode}")
            conn.execute(f"PRAGMA synchronous = {self.synchronous}")
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
        conn = self.connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def write(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run fn inside a write transaction, retrying while the database is busy.

        The delay doubles on each retry. The last busy error is re-raised
        once the attempts are exhausted.
        """
        delay = self.retry_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with self.transaction() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as e:
                if not is_busy_error(e) or attempt == self.retry_attempts:
                    raise
                logger.debug(f"Database busy (attempt {attempt}/{self.retry_attempts}), retrying in {delay:.2f}s")
                time.sleep(delay)
                delay *= 2
        raise sqlite3.OperationalError("database is locked")

    def fetch_all(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        """Returns a list of Row objects."""
        return self.connection().execute(sql, params).fetchall()

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        """Returns a single Row object or None."""
        return self.connection().execute(sql, params).fetchone()

    def scalar(self, sql: str, params: tuple = ()) -> Any:
        row = self.fetch_one(sql, params)
        return row[0] if row is not None else None

    def close(self) -> None:
        """Close every connection opened through this instance."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local = threading.local()
