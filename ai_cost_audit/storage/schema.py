"""
Database schema definitions.

SQL for every table and index, plus a helper for multi-statement strings.
"""

import sqlite3

CREATE_MIGRATIONS_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS _migrations (
        version INTEGER PRIMARY KEY,
        description TEXT NOT NULL,
        applied_at INTEGER NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('success', 'failed')),
        error_message TEXT
    )
"""

CREATE_META_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS _meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
"""

# Base columns only; later columns are added by migrations v2-v8.
CREATE_QUERY_EVENTS_SQL = """
    CREATE TABLE IF NOT EXISTS query_events (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        agent_type TEXT NOT NULL,
        source TEXT NOT NULL CHECK(source IN ('user', 'auto')),
        start_time INTEGER NOT NULL,
        duration INTEGER NOT NULL CHECK(duration >= 0),
        project_path TEXT,
        tab_id TEXT
    )
"""

CREATE_QUERY_EVENTS_INDEXES_SQL = """
    CREATE INDEX IF NOT EXISTS idx_query_start_time ON query_events(start_time);
    CREATE INDEX IF NOT EXISTS idx_query_agent_type ON query_events(agent_type);
    CREATE INDEX IF NOT EXISTS idx_query_source ON query_events(source);
    CREATE INDEX IF NOT EXISTS idx_query_session ON query_events(session_id);
    CREATE INDEX IF NOT EXISTS idx_query_project_path ON query_events(project_path);
    CREATE INDEX IF NOT EXISTS idx_query_agent_time ON query_events(agent_type, start_time)
"""

CREATE_SESSION_LIFECYCLE_SQL = """
    CREATE TABLE IF NOT EXISTS session_lifecycle (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL UNIQUE,
        agent_type TEXT NOT NULL,
        project_path TEXT,
        created_at INTEGER NOT NULL,
        closed_at INTEGER,
        duration INTEGER,
        is_remote INTEGER
    )
"""

CREATE_SESSION_LIFECYCLE_INDEXES_SQL = """
    CREATE INDEX IF NOT EXISTS idx_session_created_at ON session_lifecycle(created_at);
    CREATE INDEX IF NOT EXISTS idx_session_agent_type ON session_lifecycle(agent_type)
"""

CREATE_AUDIT_SNAPSHOTS_SQL = """
    CREATE TABLE IF NOT EXISTS audit_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at INTEGER NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        audit_type TEXT NOT NULL CHECK(audit_type IN ('daily', 'weekly', 'monthly', 'manual')),

        authoritative_input_tokens INTEGER,
        authoritative_output_tokens INTEGER,
        authoritative_cache_read_tokens INTEGER,
        authoritative_cache_write_tokens INTEGER,
        authoritative_total_cost REAL,

        local_input_tokens INTEGER,
        local_output_tokens INTEGER,
        local_cache_read_tokens INTEGER,
        local_cache_write_tokens INTEGER,
        local_reported_cost REAL,
        local_calculated_cost REAL,

        token_match_percent REAL,
        cost_discrepancy_usd REAL,
        anomaly_count INTEGER,
        entry_count INTEGER,
        match_count INTEGER,
        minor_count INTEGER,
        major_count INTEGER,
        missing_count INTEGER,

        audit_result_json TEXT NOT NULL,
        status TEXT DEFAULT 'completed' CHECK(status IN ('completed', 'failed', 'partial'))
    )
"""

CREATE_AUDIT_SNAPSHOTS_INDEXES_SQL = """
    CREATE INDEX IF NOT EXISTS idx_audit_snapshots_period ON audit_snapshots(period_start, period_end);
    CREATE INDEX IF NOT EXISTS idx_audit_snapshots_created ON audit_snapshots(created_at)
"""

CREATE_AUDIT_SCHEDULE_SQL = """
    CREATE TABLE IF NOT EXISTS audit_schedule (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        schedule_type TEXT NOT NULL UNIQUE CHECK(schedule_type IN ('daily', 'weekly', 'monthly')),
        enabled INTEGER DEFAULT 0,
        last_run_at INTEGER,
        last_run_status TEXT,
        next_run_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    )
"""


def run_statements(conn: sqlite3.Connection, multi_statement_sql: str) -> None:
    """Execute a semicolon-separated SQL string one statement at a time.

    Must not use ``executescript``: it COMMITs the surrounding migration
    transaction.
    """
    for sql in multi_statement_sql.split(";"):
        if sql.strip():
            conn.execute(sql)
