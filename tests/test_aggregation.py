"""
Unit tests for usage aggregation.

Tests totals, breakdowns, time series, token metrics and timing.
"""

import logging
from datetime import datetime

import pytest

from ai_cost_audit.core.aggregation import AggregationEngine, StatsAggregation
from ai_cost_audit.storage.models import TimeRange, UsageFact

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def local_ms(year, month, day, hour=12) -> int:
    """Epoch ms of a local wall-clock time."""
    return int(datetime(year, month, day, hour).timestamp() * 1000)


NOW_MS = local_ms(2026, 2, 10)


def create_fact(**overrides) -> UsageFact:
    values = dict(
        session_id="agent1-ai-tab1",
        agent_type="claude-code",
        source="user",
        start_time=NOW_MS - HOUR_MS,
        duration=1000,
    )
    values.update(overrides)
    return UsageFact(**values)


@pytest.fixture
def engine(database):
    return AggregationEngine(database)


class TestEmptyStore:
    """Test aggregation over no data."""

    def test_all_zero(self, engine):
        """Verify an empty store yields zeros, not errors."""
        stats = engine.get_aggregated_stats(TimeRange.ALL)
        assert stats.total_queries == 0
        assert stats.avg_duration == 0
        assert stats.by_agent == {}
        assert stats.by_day == []
        assert stats.queries_with_token_data == 0
        assert stats.avg_tokens_per_second == 0
        assert stats.total_cost_usd == 0


class TestTotals:
    """Test totals and breakdowns."""

    def test_totals_and_average(self, events, engine):
        """Verify totals and rounded average duration."""
        for duration in (1000, 2000, 2500):
            events.insert(create_fact(duration=duration))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert stats.total_queries == 3
        assert stats.total_duration == 5500
        assert stats.avg_duration == round(5500 / 3)

    def test_per_agent_counts_sum_to_total(self, events, engine):
        """Verify the by-agent breakdown partitions the total."""
        for agent in ("claude-code", "claude-code", "codex", "opencode"):
            events.insert(create_fact(agent_type=agent))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert sum(agent.count for agent in stats.by_agent.values()) == stats.total_queries
        assert stats.by_agent["claude-code"].count == 2

    def test_by_source_and_location(self, events, engine):
        """Verify source and remote/local splits; unknown location counts as local."""
        events.insert(create_fact(source="user", is_remote=True))
        events.insert(create_fact(source="auto", is_remote=False))
        events.insert(create_fact(source="auto"))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert (stats.by_source.user, stats.by_source.auto) == (1, 2)
        assert (stats.by_location.local, stats.by_location.remote) == (2, 1)

    def test_range_monotonicity(self, events, engine):
        """Verify a narrower range never counts more than a wider one."""
        for days_ago in (0, 2, 10, 100, 400):
            events.insert(create_fact(start_time=NOW_MS - days_ago * DAY_MS - HOUR_MS))

        counts = [
            engine.get_aggregated_stats(time_range, now_ms=NOW_MS).total_queries
            for time_range in (TimeRange.DAY, TimeRange.WEEK, TimeRange.MONTH, TimeRange.YEAR, TimeRange.ALL)
        ]
        assert counts == [1, 2, 3, 4, 5]

    def test_start_time_shared(self, engine):
        """Verify the resolved bound is reported."""
        stats = engine.get_aggregated_stats("week", now_ms=NOW_MS)
        assert stats.start_time == NOW_MS - 7 * DAY_MS
        assert stats.time_range == "week"


class TestTokenMetrics:
    """Test token and throughput metrics."""

    def test_only_rows_with_output_tokens(self, events, engine):
        """Verify throughput ignores rows with unknown output tokens."""
        events.insert(create_fact(input_tokens=100, output_tokens=200, tokens_per_second=40.0))
        events.insert(create_fact(input_tokens=300, output_tokens=400, tokens_per_second=60.0))
        events.insert(create_fact())
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert stats.queries_with_token_data == 2
        assert stats.queries_with_token_data <= stats.total_queries
        assert stats.total_input_tokens == 400
        assert stats.total_output_tokens == 600
        assert stats.avg_tokens_per_second == pytest.approx(50.0)
        assert stats.avg_output_tokens_per_query == pytest.approx(300.0)

    def test_null_output_does_not_change_throughput(self, events, engine):
        """Verify adding a fact without token data leaves averages alone."""
        events.insert(create_fact(output_tokens=100, tokens_per_second=25.0))
        before = engine.get_aggregated_stats(TimeRange.ALL)

        events.insert(create_fact(tokens_per_second=999.0))
        after = engine.get_aggregated_stats(TimeRange.ALL)

        assert after.avg_tokens_per_second == before.avg_tokens_per_second
        assert after.by_agent["claude-code"].avg_tokens_per_second == pytest.approx(25.0)
        assert after.total_queries == before.total_queries + 1

    def test_cache_and_cost_totals(self, events, engine):
        """Verify cache totals and resolved cost sum."""
        events.insert(create_fact(cache_read_input_tokens=1000, cache_creation_input_tokens=10,
                                  external_cost=1.0, local_cost=0.5))
        events.insert(create_fact(cache_read_input_tokens=500, total_cost_usd=0.25))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert stats.total_cache_read_input_tokens == 1500
        assert stats.total_cache_creation_input_tokens == 10
        assert stats.total_cost_usd == pytest.approx(1.25)


class TestTimeSeries:
    """Test per-day, per-hour and per-key series."""

    def test_by_day_local_dates(self, events, engine):
        """Verify facts group by local calendar date."""
        events.insert(create_fact(start_time=local_ms(2026, 2, 1, 10)))
        events.insert(create_fact(start_time=local_ms(2026, 2, 1, 23)))
        events.insert(create_fact(start_time=local_ms(2026, 2, 2, 0)))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert [(day.date, day.count) for day in stats.by_day] == [
            ("2026-02-01", 2), ("2026-02-02", 1),
        ]

    def test_by_hour(self, events, engine):
        """Verify hours of day are local integer hours."""
        events.insert(create_fact(start_time=local_ms(2026, 2, 1, 9)))
        events.insert(create_fact(start_time=local_ms(2026, 2, 2, 9)))
        events.insert(create_fact(start_time=local_ms(2026, 2, 2, 17)))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert [(hour.hour, hour.count) for hour in stats.by_hour] == [(9, 2), (17, 1)]

    def test_series_by_agent_agent_id_and_session(self, events, engine):
        """Verify keyed daily series."""
        events.insert(create_fact(agent_type="codex", session_id="a1-ai-x", agent_id="a1",
                                  start_time=local_ms(2026, 2, 1), output_tokens=10))
        events.insert(create_fact(agent_type="codex", session_id="a1-ai-y", agent_id="a1",
                                  start_time=local_ms(2026, 2, 2)))
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert [p.date for p in stats.by_agent_by_day["codex"]] == ["2026-02-01", "2026-02-02"]
        assert [p.count for p in stats.by_agent_id_by_day["a1"]] == [1, 1]
        assert set(stats.by_session_by_day) == {"a1-ai-x", "a1-ai-y"}
        assert stats.by_agent_by_day["codex"][0].output_tokens == 10
        assert stats.by_agent_by_day["codex"][1].output_tokens == 0


class TestSessionStats:
    """Test session lifecycle statistics."""

    def test_session_counts_and_duration(self, events, engine):
        """Verify distinct sessions and lifecycle aggregates."""
        events.insert(create_fact(session_id="s1"))
        events.insert(create_fact(session_id="s1"))
        events.insert(create_fact(session_id="s2"))
        events.record_session_created("s1", "claude-code", created_at=local_ms(2026, 2, 1, 8))
        events.record_session_created("s2", "codex", created_at=local_ms(2026, 2, 1, 9))
        events.record_session_closed("s1", closed_at=local_ms(2026, 2, 1, 8) + 4000)
        events.record_session_closed("s2", closed_at=local_ms(2026, 2, 1, 9) + 1000)
        stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert stats.total_sessions == 2
        assert stats.sessions_by_agent == {"claude-code": 1, "codex": 1}
        assert [(d.date, d.count) for d in stats.sessions_by_day] == [("2026-02-01", 2)]
        assert stats.avg_session_duration == 2500


class TestPerformanceLogging:
    """Test slow aggregation warnings."""

    def test_slow_aggregation_logs_warning(self, database, events, caplog):
        """Verify exceeding the threshold warns but returns the full result."""
        events.insert(create_fact())
        engine = AggregationEngine(database, slow_threshold_ms=1e-9)

        with caplog.at_level(logging.WARNING, logger="ai_cost_audit.core.aggregation"):
            stats = engine.get_aggregated_stats(TimeRange.ALL)

        assert stats.total_queries == 1
        assert any("threshold" in record.getMessage() for record in caplog.records)

    def test_to_dict_is_complete(self, events, engine):
        """Verify the dashboard payload is a plain dict."""
        events.insert(create_fact(output_tokens=5))
        payload = engine.get_aggregated_stats(TimeRange.ALL).to_dict()
        assert payload["total_queries"] == 1
        assert payload["by_agent"]["claude-code"]["count"] == 1
        assert set(payload) >= {f for f in StatsAggregation.__dataclass_fields__}
