"""
Schema migration system.

Applies versioned, sequential schema changes and records their history.

Each migration runs exactly once inside its own transaction together with
its history row and the ``user_version`` bump. Adding a migration means
writing a ``_migrate_vN`` function and appending it to ``get_migrations()``.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .db import StatsDatabase
from .models import MigrationRecord, current_time_ms
from .schema import (
    CREATE_AUDIT_SCHEDULE_SQL,
    CREATE_AUDIT_SNAPSHOTS_INDEXES_SQL,
    CREATE_AUDIT_SNAPSHOTS_SQL,
    CREATE_META_TABLE_SQL,
    CREATE_MIGRATIONS_TABLE_SQL,
    CREATE_QUERY_EVENTS_INDEXES_SQL,
    CREATE_QUERY_EVENTS_SQL,
    CREATE_SESSION_LIFECYCLE_INDEXES_SQL,
    CREATE_SESSION_LIFECYCLE_SQL,
    run_statements,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A single registered schema change."""
    version: int
    description: str
    up: Callable[[sqlite3.Connection], None]


def get_migrations() -> List[Migration]:
    """Registry of all schema migrations, starting at version 1."""
    return [
        Migration(1, "Initial schema: query_events table", _migrate_v1),
        Migration(2, "Add is_remote column to query_events for SSH sessions", _migrate_v2),
        Migration(3, "Add session_lifecycle table", _migrate_v3),
        Migration(4, "Add token metrics columns to query_events", _migrate_v4),
        Migration(5, "Add cache token and legacy cost columns to query_events", _migrate_v5),
        Migration(6, "Add agent_id column for agent attribution", _migrate_v6),
        Migration(7, "Add dual-source cost tracking columns and audit tables", _migrate_v7),
        Migration(8, "Add external_session_id for reconstruction matching", _migrate_v8),
    ]


class SchemaMigrator:
    """Runs and inspects schema migrations for a stats database.

    Migration failure is fatal: the exception propagates so that the owning
    process refuses to start on a partially migrated schema.
    """

    def __init__(self, database: StatsDatabase, migrations: Optional[List[Migration]] = None):
        """Initialize the migrator.

        Args:
            database: Store handle to migrate
            migrations: Migration registry (defaults to get_migrations())
        """
        self.database = database
        self.migrations = migrations if migrations is not None else get_migrations()

    def run_migrations(self) -> List[int]:
        """Apply every pending migration in ascending version order.

        Returns:
            Versions applied by this call (empty when already up to date)

        Raises:
            Exception: Whatever the failing migration raised, after the
                failure has been recorded in the history table
        """
        with self.database.lock:
            return self._run_pending()

    def _run_pending(self) -> List[int]:
        conn = self.database.connection
        conn.execute(CREATE_MIGRATIONS_TABLE_SQL)

        current = self.current_version()
        pending = sorted(
            (m for m in self.migrations if m.version > current),
            key=lambda m: m.version,
        )

        if not pending:
            logger.debug("Database is up to date (version %d)", current)
            return []

        logger.info(
            "Running %d pending migration(s) (current version: %d)", len(pending), current
        )
        applied = []
        for migration in pending:
            self._apply(migration)
            applied.append(migration.version)
        return applied

    def _apply(self, migration: Migration) -> None:
        started = time.perf_counter()
        logger.info("Applying migration v%d: %s", migration.version, migration.description)

        try:
            with self.database.transaction() as conn:
                migration.up(conn)
                conn.execute(
                    """
                    INSERT OR REPLACE INTO _migrations
                    (version, description, applied_at, status, error_message)
                    VALUES (?, ?, ?, 'success', NULL)
                    """,
                    (migration.version, migration.description, current_time_ms()),
                )
                # PRAGMA does not accept bound parameters; version is an int.
                conn.execute(f"PRAGMA user_version = {int(migration.version)}")
        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            self.database.connection.execute(
                """
                INSERT OR REPLACE INTO _migrations
                (version, description, applied_at, status, error_message)
                VALUES (?, ?, ?, 'failed', ?)
                """,
                (migration.version, migration.description, current_time_ms(), error_message),
            )
            logger.error("Migration v%d failed: %s", migration.version, error_message)
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("Migration v%d completed in %.0fms", migration.version, elapsed_ms)

    def current_version(self) -> int:
        with self.database.lock:
            row = self.database.connection.execute("PRAGMA user_version").fetchone()
        return row[0] if row else 0

    def target_version(self) -> int:
        if not self.migrations:
            return 0
        return max(m.version for m in self.migrations)

    def has_pending_migrations(self) -> bool:
        return self.current_version() < self.target_version()

    def migration_history(self) -> List[MigrationRecord]:
        """Get every recorded migration attempt, oldest version first."""
        conn = self.database.connection
        exists = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='_migrations'"
        ).fetchone()
        if not exists:
            return []

        rows = conn.execute(
            """
            SELECT version, description, applied_at, status, error_message
            FROM _migrations
            ORDER BY version ASC
            """
        ).fetchall()
        return [
            MigrationRecord(
                version=row["version"],
                description=row["description"],
                applied_at=row["applied_at"],
                status=row["status"],
                error_message=row["error_message"],
            )
            for row in rows
        ]


def run_migrations(database: StatsDatabase) -> List[int]:
    """Apply all pending migrations from the default registry."""
    return SchemaMigrator(database).run_migrations()


# ============================================================================
# Individual migrations
# ============================================================================


def _migrate_v1(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_QUERY_EVENTS_SQL)
    run_statements(conn, CREATE_QUERY_EVENTS_INDEXES_SQL)


def _migrate_v2(conn: sqlite3.Connection) -> None:
    conn.execute("ALTER TABLE query_events ADD COLUMN is_remote INTEGER")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_query_is_remote ON query_events(is_remote)")


def _migrate_v3(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_SESSION_LIFECYCLE_SQL)
    run_statements(conn, CREATE_SESSION_LIFECYCLE_INDEXES_SQL)


def _migrate_v4(conn: sqlite3.Connection) -> None:
    """Per-request token counts and throughput (output_tokens / seconds)."""
    conn.execute("ALTER TABLE query_events ADD COLUMN input_tokens INTEGER")
    conn.execute("ALTER TABLE query_events ADD COLUMN output_tokens INTEGER")
    conn.execute("ALTER TABLE query_events ADD COLUMN tokens_per_second REAL")


def _migrate_v5(conn: sqlite3.Connection) -> None:
    conn.execute("ALTER TABLE query_events ADD COLUMN cache_read_input_tokens INTEGER")
    conn.execute("ALTER TABLE query_events ADD COLUMN cache_creation_input_tokens INTEGER")
    conn.execute("ALTER TABLE query_events ADD COLUMN total_cost_usd REAL")


def _migrate_v6(conn: sqlite3.Connection) -> None:
    """Add agent_id and backfill it from session ids.

    The base agent id is the session id without its -batch-*, -ai-* or
    -synopsis-* suffix.
    """
    conn.execute("ALTER TABLE query_events ADD COLUMN agent_id TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_query_events_agent_id ON query_events(agent_id)")
    conn.execute(
        """
        UPDATE query_events
        SET agent_id = CASE
            WHEN session_id LIKE '%-batch-%' THEN substr(session_id, 1, instr(session_id, '-batch-') - 1)
            WHEN session_id LIKE '%-ai-%' THEN substr(session_id, 1, instr(session_id, '-ai-') - 1)
            WHEN session_id LIKE '%-synopsis-%' THEN substr(session_id, 1, instr(session_id, '-synopsis-') - 1)
            ELSE session_id
        END
        WHERE agent_id IS NULL
        """
    )


def _migrate_v7(conn: sqlite3.Connection) -> None:
    """Dual-source cost tracking, reconstruction metadata and audit tables."""
    for column in (
        "external_cost REAL",
        "external_model TEXT",
        "local_cost REAL",
        "local_billing_mode TEXT",
        "local_pricing_model TEXT",
        "local_calculated_at INTEGER",
        "uuid TEXT",
        "external_message_id TEXT",
        "is_reconstructed INTEGER DEFAULT 0",
        "reconstructed_at INTEGER",
    ):
        conn.execute(f"ALTER TABLE query_events ADD COLUMN {column}")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_query_events_uuid ON query_events(uuid)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_query_events_external_msg_id "
        "ON query_events(external_message_id)"
    )

    # Legacy rows keep their single cost as the reported cost.
    conn.execute(
        """
        UPDATE query_events SET external_cost = total_cost_usd
        WHERE external_cost IS NULL AND total_cost_usd IS NOT NULL
        """
    )

    conn.execute(CREATE_AUDIT_SNAPSHOTS_SQL)
    run_statements(conn, CREATE_AUDIT_SNAPSHOTS_INDEXES_SQL)
    conn.execute(CREATE_AUDIT_SCHEDULE_SQL)
    conn.execute(CREATE_META_TABLE_SQL)


def _migrate_v8(conn: sqlite3.Connection) -> None:
    conn.execute("ALTER TABLE query_events ADD COLUMN external_session_id TEXT")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_query_events_external_session_id "
        "ON query_events(external_session_id)"
    )
