"""
Database connection management.

Provides the SQLite connection and the process-wide store handle.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from ai_cost_audit.core.cost_resolution import sql_resolved_cost

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "ai_cost_audit.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection configured for the stats store.

    The connection runs in autocommit mode so that migrations and batch
    inserts can manage their own ``BEGIN``/``COMMIT`` explicitly. Rows are
    returned as ``sqlite3.Row`` and the ``resolved_cost`` SQL function is
    registered.

    Args:
        db_path: Path to SQLite database file (``:memory:`` is accepted)

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.create_function("resolved_cost", 4, sql_resolved_cost, deterministic=True)
    return conn


class StatsDatabase:
    """Owned handle to the stats database.

    Exactly one instance is created by the composition root and passed to
    every component. Components that cache per-connection state register a
    close callback so the cache is dropped whenever the connection goes away.

    The connection is shared with the audit scheduler thread. Every write
    and every multi-statement block holds ``lock`` so a statement from one
    thread never lands inside another thread's open transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self.lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._close_callbacks: List[Callable[[], None]] = []

    @property
    def connection(self) -> sqlite3.Connection:
        """The open connection, opening it on first use."""
        if self._conn is None:
            self.open()
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> None:
        with self.lock:
            if self._conn is not None:
                return
            self._conn = get_connection(self.db_path)
        logger.debug("Opened stats database at %s", self.db_path)

    def close(self) -> None:
        with self.lock:
            if self._conn is None:
                return
            for callback in self._close_callbacks:
                callback()
            self._conn.close()
            self._conn = None
        logger.debug("Closed stats database at %s", self.db_path)

    def reopen(self) -> None:
        self.close()
        self.open()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block in one BEGIN ... COMMIT while holding the lock.

        Any exception rolls the transaction back and propagates.
        """
        with self.lock:
            conn = self.connection
            conn.execute("BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def on_close(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked just before the connection closes."""
        self._close_callbacks.append(callback)

    def __enter__(self) -> "StatsDatabase":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
