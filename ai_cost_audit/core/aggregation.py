"""
Usage aggregation for dashboards.

Composes independent, time-bounded rollup queries into one stats snapshot.

Every sub-query receives the same absolute lower bound, resolved once per
call, so the parts of a snapshot agree with each other even if the clock
advances while they run. Sub-queries only read and never depend on each
other's results.
"""

import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from ai_cost_audit.storage.db import StatsDatabase
from ai_cost_audit.storage.models import TimeRange, coerce_time_range

logger = logging.getLogger(__name__)

DEFAULT_SLOW_THRESHOLD_MS = 500.0

_LOCAL_DATE = "date(start_time / 1000, 'unixepoch', 'localtime')"
# Throughput is only meaningful for rows that recorded output tokens.
_KNOWN_TPS = "CASE WHEN output_tokens IS NOT NULL THEN tokens_per_second END"


@dataclass(frozen=True)
class AgentStats:
    count: int
    duration: int
    total_output_tokens: int
    avg_tokens_per_second: float


@dataclass(frozen=True)
class SourceBreakdown:
    user: int = 0
    auto: int = 0


@dataclass(frozen=True)
class LocationBreakdown:
    local: int = 0
    remote: int = 0


@dataclass(frozen=True)
class DayStats:
    date: str
    count: int
    duration: int
    output_tokens: Optional[int] = None
    avg_tokens_per_second: Optional[float] = None


@dataclass(frozen=True)
class DailySeriesPoint:
    date: str
    count: int
    duration: int
    output_tokens: int
    avg_tokens_per_second: float


@dataclass(frozen=True)
class HourStats:
    hour: int
    count: int
    duration: int


@dataclass(frozen=True)
class DateCount:
    date: str
    count: int


@dataclass(frozen=True)
class SessionStats:
    total_sessions: int
    sessions_by_agent: Dict[str, int]
    sessions_by_day: List[DateCount]
    avg_session_duration: int


@dataclass(frozen=True)
class TokenMetrics:
    queries_with_token_data: int
    total_input_tokens: int
    total_output_tokens: int
    avg_tokens_per_second: float
    avg_output_tokens_per_query: float


@dataclass(frozen=True)
class CostMetrics:
    total_cache_read_input_tokens: int
    total_cache_creation_input_tokens: int
    total_cost_usd: float


@dataclass(frozen=True)
class StatsAggregation:
    """Dashboard snapshot for one time range. Computed per call, never stored."""
    time_range: str
    start_time: int
    total_queries: int
    total_duration: int
    avg_duration: int
    by_agent: Dict[str, AgentStats]
    by_source: SourceBreakdown
    by_location: LocationBreakdown
    by_day: List[DayStats]
    by_hour: List[HourStats]
    by_agent_by_day: Dict[str, List[DailySeriesPoint]]
    by_agent_id_by_day: Dict[str, List[DailySeriesPoint]]
    by_session_by_day: Dict[str, List[DailySeriesPoint]]
    total_sessions: int
    sessions_by_agent: Dict[str, int]
    sessions_by_day: List[DateCount]
    avg_session_duration: int
    total_input_tokens: int
    total_output_tokens: int
    avg_tokens_per_second: float
    avg_output_tokens_per_query: float
    queries_with_token_data: int
    total_cache_read_input_tokens: int
    total_cache_creation_input_tokens: int
    total_cost_usd: float
    elapsed_ms: float = field(default=0.0, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AggregationEngine:
    """Builds StatsAggregation snapshots from the fact table."""

    def __init__(
        self,
        database: StatsDatabase,
        slow_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS,
    ):
        """Initialize the engine.

        Args:
            database: Migrated store handle
            slow_threshold_ms: Wall time above which a warning is logged
        """
        self.database = database
        self.slow_threshold_ms = slow_threshold_ms

    def get_aggregated_stats(
        self,
        time_range: Union[TimeRange, str] = TimeRange.ALL,
        now_ms: Optional[int] = None,
    ) -> StatsAggregation:
        """Get aggregated statistics for a time range.

        A slow aggregation is logged but never truncated; any query error
        propagates.

        Args:
            time_range: Relative window to aggregate
            now_ms: Reference time for the window (defaults to now)

        Returns:
            Complete StatsAggregation for the window
        """
        started = time.perf_counter()
        resolved = coerce_time_range(time_range)
        start = resolved.start_ms(now_ms)
        with self.database.lock:
            conn = self.database.connection
            totals = self._timed("totals", _query_totals, conn, start)
            by_agent = self._timed("by_agent", _query_by_agent, conn, start)
            by_source = self._timed("by_source", _query_by_source, conn, start)
            by_location = self._timed("by_location", _query_by_location, conn, start)
            by_day = self._timed("by_day", _query_by_day, conn, start)
            by_agent_by_day = self._timed(
                "by_agent_by_day", _query_series_by, conn, start, "agent_type"
            )
            by_agent_id_by_day = self._timed(
                "by_agent_id_by_day", _query_series_by, conn, start, "COALESCE(agent_id, session_id)"
            )
            by_hour = self._timed("by_hour", _query_by_hour, conn, start)
            sessions = self._timed("sessions", _query_session_stats, conn, start)
            by_session_by_day = self._timed(
                "by_session_by_day", _query_series_by, conn, start, "session_id"
            )
            tokens = self._timed("token_metrics", _query_token_metrics, conn, start)
            costs = self._timed("cost_metrics", _query_cost_metrics, conn, start)

        count, total_duration = totals
        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.slow_threshold_ms:
            logger.warning(
                "get_aggregated_stats took %.0fms (threshold: %.0fms) range=%s total_queries=%d",
                elapsed_ms, self.slow_threshold_ms, resolved.value, count,
            )
        else:
            logger.debug("get_aggregated_stats took %.1fms range=%s", elapsed_ms, resolved.value)

        return StatsAggregation(
            time_range=resolved.value,
            start_time=start,
            total_queries=count,
            total_duration=total_duration,
            avg_duration=round(total_duration / count) if count > 0 else 0,
            by_agent=by_agent,
            by_source=by_source,
            by_location=by_location,
            by_day=by_day,
            by_hour=by_hour,
            by_agent_by_day=by_agent_by_day,
            by_agent_id_by_day=by_agent_id_by_day,
            by_session_by_day=by_session_by_day,
            total_sessions=sessions.total_sessions,
            sessions_by_agent=sessions.sessions_by_agent,
            sessions_by_day=sessions.sessions_by_day,
            avg_session_duration=sessions.avg_session_duration,
            total_input_tokens=tokens.total_input_tokens,
            total_output_tokens=tokens.total_output_tokens,
            avg_tokens_per_second=tokens.avg_tokens_per_second,
            avg_output_tokens_per_query=tokens.avg_output_tokens_per_query,
            queries_with_token_data=tokens.queries_with_token_data,
            total_cache_read_input_tokens=costs.total_cache_read_input_tokens,
            total_cache_creation_input_tokens=costs.total_cache_creation_input_tokens,
            total_cost_usd=costs.total_cost_usd,
            elapsed_ms=elapsed_ms,
        )

    def _timed(self, name, query, *args):
        started = time.perf_counter()
        result = query(*args)
        logger.debug(
            "get_aggregated_stats:%s took %.2fms", name, (time.perf_counter() - started) * 1000
        )
        return result


# ============================================================================
# Sub-queries
# ============================================================================


def _query_totals(conn: sqlite3.Connection, start: int):
    row = conn.execute(
        """
        SELECT COUNT(*) AS count, COALESCE(SUM(duration), 0) AS total_duration
        FROM query_events
        WHERE start_time >= ?
        """,
        (start,),
    ).fetchone()
    return row["count"], row["total_duration"]


def _query_by_agent(conn: sqlite3.Connection, start: int) -> Dict[str, AgentStats]:
    rows = conn.execute(
        f"""
        SELECT agent_type,
               COUNT(*) AS count,
               SUM(duration) AS duration,
               COALESCE(SUM(output_tokens), 0) AS total_output_tokens,
               COALESCE(AVG({_KNOWN_TPS}), 0) AS avg_tokens_per_second
        FROM query_events
        WHERE start_time >= ?
        GROUP BY agent_type
        """,
        (start,),
    ).fetchall()
    return {
        row["agent_type"]: AgentStats(
            count=row["count"],
            duration=row["duration"],
            total_output_tokens=row["total_output_tokens"],
            avg_tokens_per_second=row["avg_tokens_per_second"],
        )
        for row in rows
    }


def _query_by_source(conn: sqlite3.Connection, start: int) -> SourceBreakdown:
    rows = conn.execute(
        """
        SELECT source, COUNT(*) AS count
        FROM query_events
        WHERE start_time >= ?
        GROUP BY source
        """,
        (start,),
    ).fetchall()
    counts = {row["source"]: row["count"] for row in rows}
    return SourceBreakdown(user=counts.get("user", 0), auto=counts.get("auto", 0))


def _query_by_location(conn: sqlite3.Connection, start: int) -> LocationBreakdown:
    rows = conn.execute(
        """
        SELECT is_remote, COUNT(*) AS count
        FROM query_events
        WHERE start_time >= ?
        GROUP BY is_remote
        """,
        (start,),
    ).fetchall()
    local = remote = 0
    for row in rows:
        if row["is_remote"] == 1:
            remote += row["count"]
        else:
            # NULL (rows written before v2) counts as local
            local += row["count"]
    return LocationBreakdown(local=local, remote=remote)


def _query_by_day(conn: sqlite3.Connection, start: int) -> List[DayStats]:
    rows = conn.execute(
        f"""
        SELECT {_LOCAL_DATE} AS date,
               COUNT(*) AS count,
               SUM(duration) AS duration,
               SUM(output_tokens) AS output_tokens,
               AVG({_KNOWN_TPS}) AS avg_tokens_per_second
        FROM query_events
        WHERE start_time >= ?
        GROUP BY {_LOCAL_DATE}
        ORDER BY date ASC
        """,
        (start,),
    ).fetchall()
    return [
        DayStats(
            date=row["date"],
            count=row["count"],
            duration=row["duration"],
            output_tokens=row["output_tokens"],
            avg_tokens_per_second=row["avg_tokens_per_second"],
        )
        for row in rows
    ]


def _query_series_by(
    conn: sqlite3.Connection, start: int, key_expr: str
) -> Dict[str, List[DailySeriesPoint]]:
    """Per-day series grouped by a key column (agent type, agent id, session)."""
    rows = conn.execute(
        f"""
        SELECT {key_expr} AS series_key,
               {_LOCAL_DATE} AS date,
               COUNT(*) AS count,
               SUM(duration) AS duration,
               COALESCE(SUM(output_tokens), 0) AS output_tokens,
               COALESCE(AVG({_KNOWN_TPS}), 0) AS avg_tokens_per_second
        FROM query_events
        WHERE start_time >= ?
        GROUP BY series_key, {_LOCAL_DATE}
        ORDER BY series_key, date ASC
        """,
        (start,),
    ).fetchall()

    series: Dict[str, List[DailySeriesPoint]] = {}
    for row in rows:
        series.setdefault(row["series_key"], []).append(DailySeriesPoint(
            date=row["date"],
            count=row["count"],
            duration=row["duration"],
            output_tokens=row["output_tokens"],
            avg_tokens_per_second=row["avg_tokens_per_second"],
        ))
    return series


def _query_by_hour(conn: sqlite3.Connection, start: int) -> List[HourStats]:
    rows = conn.execute(
        """
        SELECT CAST(strftime('%H', start_time / 1000, 'unixepoch', 'localtime') AS INTEGER) AS hour,
               COUNT(*) AS count,
               SUM(duration) AS duration
        FROM query_events
        WHERE start_time >= ?
        GROUP BY hour
        ORDER BY hour ASC
        """,
        (start,),
    ).fetchall()
    return [HourStats(hour=row["hour"], count=row["count"], duration=row["duration"]) for row in rows]


def _query_session_stats(conn: sqlite3.Connection, start: int) -> SessionStats:
    total = conn.execute(
        "SELECT COUNT(DISTINCT session_id) AS count FROM query_events WHERE start_time >= ?",
        (start,),
    ).fetchone()["count"]

    avg_duration = conn.execute(
        """
        SELECT COALESCE(AVG(duration), 0) AS avg_duration
        FROM session_lifecycle
        WHERE created_at >= ? AND duration IS NOT NULL
        """,
        (start,),
    ).fetchone()["avg_duration"]

    by_agent = conn.execute(
        """
        SELECT agent_type, COUNT(*) AS count
        FROM session_lifecycle
        WHERE created_at >= ?
        GROUP BY agent_type
        """,
        (start,),
    ).fetchall()

    by_day = conn.execute(
        """
        SELECT date(created_at / 1000, 'unixepoch', 'localtime') AS date, COUNT(*) AS count
        FROM session_lifecycle
        WHERE created_at >= ?
        GROUP BY date
        ORDER BY date ASC
        """,
        (start,),
    ).fetchall()

    return SessionStats(
        total_sessions=total,
        sessions_by_agent={row["agent_type"]: row["count"] for row in by_agent},
        sessions_by_day=[DateCount(date=row["date"], count=row["count"]) for row in by_day],
        avg_session_duration=round(avg_duration),
    )


def _query_token_metrics(conn: sqlite3.Connection, start: int) -> TokenMetrics:
    row = conn.execute(
        """
        SELECT COUNT(*) AS queries_with_data,
               COALESCE(SUM(input_tokens), 0) AS total_input_tokens,
               COALESCE(SUM(output_tokens), 0) AS total_output_tokens,
               COALESCE(AVG(tokens_per_second), 0) AS avg_tokens_per_second,
               COALESCE(AVG(output_tokens), 0) AS avg_output_tokens
        FROM query_events
        WHERE start_time >= ? AND output_tokens IS NOT NULL
        """,
        (start,),
    ).fetchone()
    return TokenMetrics(
        queries_with_token_data=row["queries_with_data"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        avg_tokens_per_second=row["avg_tokens_per_second"],
        avg_output_tokens_per_query=row["avg_output_tokens"],
    )


def _query_cost_metrics(conn: sqlite3.Connection, start: int) -> CostMetrics:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(cache_read_input_tokens), 0) AS cache_read,
               COALESCE(SUM(cache_creation_input_tokens), 0) AS cache_creation,
               COALESCE(SUM(resolved_cost(external_cost, local_cost, total_cost_usd, 'external')), 0)
                   AS total_cost
        FROM query_events
        WHERE start_time >= ?
        """,
        (start,),
    ).fetchone()
    return CostMetrics(
        total_cache_read_input_tokens=row["cache_read"],
        total_cache_creation_input_tokens=row["cache_creation"],
        total_cost_usd=row["total_cost"],
    )
