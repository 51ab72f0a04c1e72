"""
Repository pattern for data access.

Handles insertion and retrieval of usage facts and session lifecycle rows.
"""

import logging
import sqlite3
import uuid
from typing import Dict, List, Optional, Union

from .db import StatsDatabase
from .models import (
    SessionLifecycleEvent,
    StatsFilters,
    TimeRange,
    UsageFact,
    coerce_time_range,
    current_time_ms,
)

logger = logging.getLogger(__name__)

_FACT_COLUMNS = (
    "id", "session_id", "agent_id", "agent_type", "source", "start_time", "duration",
    "project_path", "tab_id", "is_remote", "input_tokens", "output_tokens",
    "tokens_per_second", "cache_read_input_tokens", "cache_creation_input_tokens",
    "total_cost_usd", "external_cost", "external_model", "local_cost",
    "local_billing_mode", "local_pricing_model", "local_calculated_at", "uuid",
    "external_message_id", "is_reconstructed", "reconstructed_at", "external_session_id",
)

INSERT_FACT_SQL = (
    f"INSERT INTO query_events ({', '.join(_FACT_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _FACT_COLUMNS)})"
)

INSERT_SESSION_SQL = """
    INSERT INTO session_lifecycle
    (id, session_id, agent_type, project_path, created_at, is_remote)
    VALUES (?, ?, ?, ?, ?, ?)
"""

CLOSE_SESSION_SQL = """
    UPDATE session_lifecycle
    SET closed_at = ?, duration = ? - created_at
    WHERE session_id = ?
"""


def generate_id() -> str:
    return uuid.uuid4().hex


def normalize_path(path: Optional[str]) -> Optional[str]:
    """Canonicalize a project path for storage and filtering.

    Backslashes become forward slashes and trailing separators are removed,
    so that the same project recorded from different shells groups together.
    Empty values become None.
    """
    if path is None:
        return None
    normalized = path.strip().replace("\\", "/")
    if not normalized:
        return None
    stripped = normalized.rstrip("/")
    return stripped or "/"


class StatementCache:
    """Connection-scoped cursors keyed by SQL text.

    Compiled statements are cached by the connection itself
    (``cached_statements``); this only keeps one cursor per hot statement.
    Cursors belong to one connection, so the cache empties itself whenever
    it is asked for a different connection, and ``clear()`` is hooked to the
    database close so no cursor outlives its connection.
    """

    def __init__(self):
        self._conn: Optional[sqlite3.Connection] = None
        self._cursors: Dict[str, sqlite3.Cursor] = {}

    def get(self, conn: sqlite3.Connection, sql: str) -> sqlite3.Cursor:
        if conn is not self._conn:
            self.clear()
            self._conn = conn
        cursor = self._cursors.get(sql)
        if cursor is None:
            cursor = conn.cursor()
            self._cursors[sql] = cursor
        return cursor

    def clear(self) -> None:
        for cursor in self._cursors.values():
            cursor.close()
        self._cursors.clear()
        self._conn = None

    def __len__(self) -> int:
        return len(self._cursors)


def _bool_to_int(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


def _int_to_bool(value: Optional[int]) -> Optional[bool]:
    if value is None:
        return None
    return value == 1


def _fact_params(fact_id: str, fact: UsageFact) -> tuple:
    return (
        fact_id,
        fact.session_id,
        fact.agent_id,
        fact.agent_type,
        fact.source,
        fact.start_time,
        fact.duration,
        normalize_path(fact.project_path),
        fact.tab_id,
        _bool_to_int(fact.is_remote),
        fact.input_tokens,
        fact.output_tokens,
        fact.tokens_per_second,
        fact.cache_read_input_tokens,
        fact.cache_creation_input_tokens,
        fact.total_cost_usd,
        fact.external_cost,
        fact.external_model,
        fact.local_cost,
        fact.local_billing_mode,
        fact.local_pricing_model,
        fact.local_calculated_at,
        fact.uuid,
        fact.external_message_id,
        1 if fact.is_reconstructed else 0,
        fact.reconstructed_at,
        fact.external_session_id,
    )


def map_fact_row(row: sqlite3.Row) -> UsageFact:
    """Convert a query_events row into a UsageFact."""
    return UsageFact(
        id=row["id"],
        session_id=row["session_id"],
        agent_id=row["agent_id"],
        agent_type=row["agent_type"],
        source=row["source"],
        start_time=row["start_time"],
        duration=row["duration"],
        project_path=row["project_path"],
        tab_id=row["tab_id"],
        is_remote=_int_to_bool(row["is_remote"]),
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        tokens_per_second=row["tokens_per_second"],
        cache_read_input_tokens=row["cache_read_input_tokens"],
        cache_creation_input_tokens=row["cache_creation_input_tokens"],
        total_cost_usd=row["total_cost_usd"],
        external_cost=row["external_cost"],
        external_model=row["external_model"],
        local_cost=row["local_cost"],
        local_billing_mode=row["local_billing_mode"],
        local_pricing_model=row["local_pricing_model"],
        local_calculated_at=row["local_calculated_at"],
        uuid=row["uuid"],
        external_message_id=row["external_message_id"],
        is_reconstructed=bool(row["is_reconstructed"]),
        reconstructed_at=row["reconstructed_at"],
        external_session_id=row["external_session_id"],
    )


def map_session_row(row: sqlite3.Row) -> SessionLifecycleEvent:
    return SessionLifecycleEvent(
        id=row["id"],
        session_id=row["session_id"],
        agent_type=row["agent_type"],
        project_path=row["project_path"],
        created_at=row["created_at"],
        closed_at=row["closed_at"],
        duration=row["duration"],
        is_remote=_int_to_bool(row["is_remote"]),
    )


class EventStore:
    """Append-only access to the usage fact table.

    There is deliberately no update or delete: facts are written once by the
    producer and only ever read afterwards. Insert failures propagate.
    """

    def __init__(self, database: StatsDatabase):
        """Initialize the store.

        Args:
            database: Migrated store handle
        """
        self.database = database
        self._statements = StatementCache()
        database.on_close(self._statements.clear)

    def insert(self, fact: UsageFact) -> str:
        """Insert a single usage fact.

        Args:
            fact: The fact to record; its ``id`` is ignored

        Returns:
            The generated identity of the stored fact
        """
        fact_id = generate_id()
        with self.database.lock:
            cursor = self._statements.get(self.database.connection, INSERT_FACT_SQL)
            cursor.execute(INSERT_FACT_SQL, _fact_params(fact_id, fact))
        logger.debug("Inserted usage fact %s", fact_id)
        return fact_id

    def insert_many(self, facts: List[UsageFact]) -> List[str]:
        """Insert several facts atomically.

        All facts are inserted in a single transaction; if any insert fails
        none are kept and the error propagates.

        Args:
            facts: Facts to record

        Returns:
            Generated identities in input order
        """
        if not facts:
            return []

        ids = [generate_id() for _ in facts]
        with self.database.transaction() as conn:
            cursor = self._statements.get(conn, INSERT_FACT_SQL)
            for fact_id, fact in zip(ids, facts):
                cursor.execute(INSERT_FACT_SQL, _fact_params(fact_id, fact))
        logger.debug("Inserted %d usage facts", len(ids))
        return ids

    def query(
        self,
        time_range: Union[TimeRange, str] = TimeRange.ALL,
        filters: Optional[StatsFilters] = None,
        now_ms: Optional[int] = None,
    ) -> List[UsageFact]:
        """Get facts within a time range, newest first.

        Args:
            time_range: Relative window to include
            filters: Optional equality filters
            now_ms: Reference time for the window (defaults to now)

        Returns:
            Matching facts ordered by start time descending; empty if none
        """
        start = coerce_time_range(time_range).start_ms(now_ms)
        sql = "SELECT * FROM query_events WHERE start_time >= ?"
        params: list = [start]

        if filters is not None:
            if filters.agent_type:
                sql += " AND agent_type = ?"
                params.append(filters.agent_type)
            if filters.source:
                sql += " AND source = ?"
                params.append(filters.source)
            if filters.project_path:
                sql += " AND project_path = ?"
                params.append(normalize_path(filters.project_path) or "")
            if filters.session_id:
                sql += " AND session_id = ?"
                params.append(filters.session_id)

        sql += " ORDER BY start_time DESC"
        with self.database.lock:
            rows = self.database.connection.execute(sql, params).fetchall()
        return [map_fact_row(row) for row in rows]

    def record_session_created(
        self,
        session_id: str,
        agent_type: str,
        created_at: Optional[int] = None,
        project_path: Optional[str] = None,
        is_remote: Optional[bool] = None,
    ) -> str:
        """Record the creation of an agent session.

        Returns:
            The generated identity of the lifecycle row
        """
        row_id = generate_id()
        params = (
            row_id,
            session_id,
            agent_type,
            normalize_path(project_path),
            created_at if created_at is not None else current_time_ms(),
            _bool_to_int(is_remote),
        )
        with self.database.lock:
            cursor = self._statements.get(self.database.connection, INSERT_SESSION_SQL)
            cursor.execute(INSERT_SESSION_SQL, params)
        logger.debug("Recorded session created %s", session_id)
        return row_id

    def record_session_closed(self, session_id: str, closed_at: Optional[int] = None) -> bool:
        """Record the closure of a session and compute its duration.

        Returns:
            True if a matching session was found
        """
        closed_at = closed_at if closed_at is not None else current_time_ms()
        with self.database.lock:
            cursor = self._statements.get(self.database.connection, CLOSE_SESSION_SQL)
            cursor.execute(CLOSE_SESSION_SQL, (closed_at, closed_at, session_id))
            found = cursor.rowcount > 0
        if not found:
            logger.warning("Session %s closed without a creation record", session_id)
        return found

    def get_sessions(
        self,
        time_range: Union[TimeRange, str] = TimeRange.ALL,
        now_ms: Optional[int] = None,
    ) -> List[SessionLifecycleEvent]:
        """Get session lifecycle rows created within a range, newest first."""
        start = coerce_time_range(time_range).start_ms(now_ms)
        with self.database.lock:
            rows = self.database.connection.execute(
                "SELECT * FROM session_lifecycle WHERE created_at >= ? ORDER BY created_at DESC",
                (start,),
            ).fetchall()
        return [map_session_row(row) for row in rows]
