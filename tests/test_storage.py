"""
Unit tests for storage layer.

Tests fact insertion, retrieval, filtering and session lifecycle records.
"""

import sqlite3
import threading

import pytest

from ai_cost_audit.storage.models import StatsFilters, TimeRange, UsageFact
from ai_cost_audit.storage.repository import INSERT_FACT_SQL, EventStore, normalize_path

NOW_MS = 1_770_000_000_000
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def create_fact(**overrides) -> UsageFact:
    values = dict(
        session_id="agent1-ai-tab1",
        agent_type="claude-code",
        source="user",
        start_time=NOW_MS - HOUR_MS,
        duration=1500,
    )
    values.update(overrides)
    return UsageFact(**values)


class TestUsageFactValidation:
    """Test fact invariants."""

    def test_negative_duration_rejected(self):
        """Verify duration cannot be negative."""
        with pytest.raises(ValueError, match="duration"):
            create_fact(duration=-1)

    def test_negative_tokens_rejected(self):
        """Verify token counts cannot be negative."""
        with pytest.raises(ValueError, match="output_tokens"):
            create_fact(output_tokens=-5)

    def test_unknown_source_rejected(self):
        """Verify source must be user or auto."""
        with pytest.raises(ValueError, match="source"):
            create_fact(source="cron")

    def test_absent_tokens_allowed(self):
        """Verify None means unknown and is valid."""
        assert create_fact(input_tokens=None).input_tokens is None


class TestEventInsertion:
    """Test usage fact insertion operations."""

    def test_insert_and_query_round_trip(self, events):
        """Verify a fully populated fact reads back unchanged."""
        fact = create_fact(
            agent_id="agent1",
            project_path="/home/user/project",
            tab_id="tab1",
            is_remote=True,
            input_tokens=1200,
            output_tokens=300,
            tokens_per_second=42.5,
            cache_read_input_tokens=5000,
            cache_creation_input_tokens=700,
            total_cost_usd=0.5,
            external_cost=0.51,
            external_model="claude-opus-4-5-20251101",
            local_cost=0.49,
            local_billing_mode="api",
            local_pricing_model="claude-opus-4-5",
            local_calculated_at=NOW_MS,
            uuid="uuid-1",
            external_message_id="msg_1",
            is_reconstructed=True,
            reconstructed_at=NOW_MS,
            external_session_id="ext-session",
        )
        fact_id = events.insert(fact)

        stored = events.query(TimeRange.ALL)
        assert len(stored) == 1
        assert stored[0].id == fact_id
        assert stored[0] == UsageFact(**{**fact.__dict__, "id": fact_id})

    def test_insert_with_absent_fields(self, events):
        """Verify absent optional fields are stored as NULL and read back as None."""
        fact = create_fact()
        fact_id = events.insert(fact)

        stored = events.query(TimeRange.ALL)[0]
        assert stored == UsageFact(**{**fact.__dict__, "id": fact_id})
        assert stored.output_tokens is None
        assert stored.is_remote is None

    def test_ids_are_unique(self, events):
        """Verify every insert generates a new identity."""
        ids = {events.insert(create_fact()) for _ in range(5)}
        assert len(ids) == 5

    def test_project_path_canonicalized(self, events):
        """Verify backslashes and trailing separators are normalized."""
        events.insert(create_fact(project_path="C:\\work\\repo\\"))
        assert events.query(TimeRange.ALL)[0].project_path == "C:/work/repo"

    def test_insert_many_is_atomic(self, events):
        """Verify a failing batch keeps none of its facts."""
        good = create_fact()
        bad = create_fact()
        object.__setattr__(bad, "duration", -1)  # bypass validation to hit the CHECK constraint

        with pytest.raises(sqlite3.IntegrityError):
            events.insert_many([good, bad])
        assert events.query(TimeRange.ALL) == []

    def test_insert_many_returns_ids_in_order(self, events):
        """Verify batch inserts return one id per fact."""
        ids = events.insert_many([create_fact(start_time=NOW_MS - i) for i in range(3)])
        assert len(ids) == 3
        assert {fact.id for fact in events.query(TimeRange.ALL)} == set(ids)

    def test_insert_many_waits_for_other_thread_transaction(self, database, events):
        """Verify a batch from another thread starts after the open transaction ends."""
        errors = []

        def insert_batch():
            try:
                events.insert_many([create_fact(session_id="batch")])
            except Exception as exc:
                errors.append(exc)

        writer = threading.Thread(target=insert_batch)
        with database.transaction():
            events.insert(create_fact(session_id="outer"))
            writer.start()
            writer.join(timeout=0.2)
            assert writer.is_alive()
        writer.join(timeout=5)

        assert errors == []
        assert {fact.session_id for fact in events.query(TimeRange.ALL)} == {"outer", "batch"}


class TestEventQuery:
    """Test retrieval with ranges and filters."""

    def test_newest_first(self, events):
        """Verify results are ordered by start time descending."""
        for offset in (3, 1, 2):
            events.insert(create_fact(start_time=NOW_MS - offset * HOUR_MS))
        starts = [fact.start_time for fact in events.query(TimeRange.ALL)]
        assert starts == sorted(starts, reverse=True)

    def test_time_range_bound(self, events):
        """Verify the range excludes older facts."""
        events.insert(create_fact(start_time=NOW_MS - HOUR_MS))
        events.insert(create_fact(start_time=NOW_MS - 3 * DAY_MS))

        assert len(events.query(TimeRange.DAY, now_ms=NOW_MS)) == 1
        assert len(events.query(TimeRange.WEEK, now_ms=NOW_MS)) == 2
        assert len(events.query("all")) == 2

    def test_invalid_range(self, events):
        """Verify unknown range names are rejected."""
        with pytest.raises(ValueError, match="time range"):
            events.query("fortnight")

    def test_filters(self, events):
        """Verify each filter narrows the results."""
        events.insert(create_fact(agent_type="claude-code", source="user", project_path="/a"))
        events.insert(create_fact(agent_type="codex", source="auto", project_path="/b",
                                  session_id="other"))

        assert len(events.query(filters=StatsFilters(agent_type="codex"))) == 1
        assert len(events.query(filters=StatsFilters(source="user"))) == 1
        assert len(events.query(filters=StatsFilters(project_path="/b/"))) == 1
        assert len(events.query(filters=StatsFilters(session_id="other"))) == 1

    def test_empty_result(self, events):
        """Verify no match is an empty list, not an error."""
        assert events.query(filters=StatsFilters(agent_type="nobody")) == []


class TestStatementCache:
    """Test the per-statement cursor cache."""

    def test_one_cursor_per_statement(self, database):
        """Verify repeated inserts reuse the cursor held for their statement."""
        store = EventStore(database)
        store.insert(create_fact())
        store.record_session_created("s1", "claude-code", created_at=NOW_MS)
        assert len(store._statements) == 2

        cursor = store._statements.get(database.connection, INSERT_FACT_SQL)
        store.insert(create_fact())
        assert store._statements.get(database.connection, INSERT_FACT_SQL) is cursor
        assert len(store._statements) == 2

    def test_cache_cleared_on_close(self, database):
        """Verify closing the database empties the cache."""
        store = EventStore(database)
        store.insert(create_fact())
        assert len(store._statements) == 1

        database.close()
        assert len(store._statements) == 0

    def test_store_works_after_reopen(self, database):
        """Verify inserts succeed on a reopened connection."""
        store = EventStore(database)
        store.insert(create_fact())
        database.reopen()
        store.insert(create_fact())
        assert len(store.query(TimeRange.ALL)) == 2


class TestSessionLifecycle:
    """Test session creation and closure records."""

    def test_close_computes_duration(self, events):
        """Verify duration is closed minus created."""
        events.record_session_created("s1", "claude-code", created_at=NOW_MS - 5000)
        assert events.record_session_closed("s1", closed_at=NOW_MS)

        session = events.get_sessions(TimeRange.ALL)[0]
        assert session.closed_at == NOW_MS
        assert session.duration == 5000

    def test_close_unknown_session(self, events):
        """Verify closing an unknown session reports False."""
        assert events.record_session_closed("missing", closed_at=NOW_MS) is False


class TestNormalizePath:
    """Test project path canonicalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("/home/user/project/", "/home/user/project"),
        ("C:\\Users\\dev\\repo", "C:/Users/dev/repo"),
        ("/", "/"),
        ("", None),
        ("   ", None),
        (None, None),
    ])
    def test_normalize(self, raw, expected):
        """Verify canonical forms."""
        assert normalize_path(raw) == expected
