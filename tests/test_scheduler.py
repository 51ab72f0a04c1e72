"""
Unit tests for scheduled audits.

Tests audit periods, next-run calculation, config persistence and run status.
"""

from datetime import date, datetime
from unittest.mock import Mock

import pytest

from ai_cost_audit.audit.errors import NoUsageDataError
from ai_cost_audit.audit.scheduler import (
    AuditScheduleConfig,
    AuditScheduler,
    audit_period,
    load_schedule_config,
    next_run_time,
    parse_time_of_day,
    save_schedule_config,
)

# A Wednesday
NOW = datetime(2026, 2, 11, 15, 30)


class TestAuditPeriod:
    """Test the dates covered by each schedule type."""

    def test_daily(self):
        assert audit_period("daily", date(2026, 2, 11)) == ("2026-02-11", "2026-02-11")

    def test_weekly(self):
        assert audit_period("weekly", date(2026, 2, 11)) == ("2026-02-04", "2026-02-11")

    def test_monthly(self):
        assert audit_period("monthly", date(2026, 2, 11)) == ("2026-01-11", "2026-02-11")

    def test_monthly_clamps_day(self):
        """Verify short months clamp to their last day."""
        assert audit_period("monthly", date(2026, 3, 31)) == ("2026-02-28", "2026-03-31")
        assert audit_period("monthly", date(2026, 1, 15)) == ("2025-12-15", "2026-01-15")

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            audit_period("manual", date(2026, 2, 11))


class TestNextRunTime:
    """Test when each schedule fires next."""

    def test_daily_later_today(self):
        config = AuditScheduleConfig(daily_enabled=True, daily_time="18:00")
        assert next_run_time("daily", config, NOW) == datetime(2026, 2, 11, 18, 0)

    def test_daily_tomorrow(self):
        config = AuditScheduleConfig(daily_enabled=True, daily_time="09:15")
        assert next_run_time("daily", config, NOW) == datetime(2026, 2, 12, 9, 15)

    def test_weekly(self):
        """Verify weekly_day counts from Sunday."""
        sunday = AuditScheduleConfig(weekly_enabled=True, weekly_day=0)
        friday = AuditScheduleConfig(weekly_enabled=True, weekly_day=5)
        assert next_run_time("weekly", sunday, NOW) == datetime(2026, 2, 15)
        assert next_run_time("weekly", friday, NOW) == datetime(2026, 2, 13)

    def test_weekly_same_day_is_next_week(self):
        wednesday = AuditScheduleConfig(weekly_enabled=True, weekly_day=3)
        assert next_run_time("weekly", wednesday, NOW) == datetime(2026, 2, 18)

    def test_monthly(self):
        config = AuditScheduleConfig(monthly_enabled=True)
        assert next_run_time("monthly", config, NOW) == datetime(2026, 3, 1)
        assert next_run_time("monthly", config, datetime(2026, 12, 5)) == datetime(2027, 1, 1)


class TestScheduleConfig:
    """Test schedule validation and persistence."""

    @pytest.mark.parametrize("value", ["24:00", "7", "ab:cd", "12:60"])
    def test_invalid_time(self, value):
        with pytest.raises(ValueError):
            parse_time_of_day(value)

    def test_invalid_weekday(self):
        with pytest.raises(ValueError):
            AuditScheduleConfig(weekly_day=7)

    def test_default_when_unset(self, database):
        assert load_schedule_config(database) == AuditScheduleConfig()

    def test_round_trip(self, database):
        config = AuditScheduleConfig(daily_enabled=True, daily_time="06:30", weekly_day=2)
        save_schedule_config(database, config)
        assert load_schedule_config(database) == config


class TestAuditScheduler:
    """Test running scheduled audits."""

    def setup_method(self):
        self.service = Mock()
        self.service.run_audit.return_value = Mock(anomalies=(), costs=Mock(savings=1.5))

    def test_successful_run_records_status(self, database):
        scheduler = AuditScheduler(self.service, database, clock=lambda: NOW)

        result = scheduler.run_scheduled_audit("weekly")

        assert result is self.service.run_audit.return_value
        self.service.run_audit.assert_called_once_with(
            "2026-02-04", "2026-02-11", audit_type="weekly", save=True
        )
        status = scheduler.schedule_status()["weekly"]
        assert status.last_run_status == "completed"
        assert status.last_run_at is not None

    def test_failed_run_records_status(self, database):
        """Verify failures are recorded and not raised."""
        self.service.run_audit.side_effect = NoUsageDataError(0)
        scheduler = AuditScheduler(self.service, database, clock=lambda: NOW)

        assert scheduler.run_scheduled_audit("daily") is None
        assert scheduler.schedule_status()["daily"].last_run_status == "failed"

    def test_start_arms_enabled_schedules(self, database):
        save_schedule_config(database, AuditScheduleConfig(daily_enabled=True, monthly_enabled=True))
        scheduler = AuditScheduler(self.service, database, clock=lambda: NOW)
        try:
            armed = scheduler.start()
            status = scheduler.schedule_status()
        finally:
            scheduler.stop()

        assert armed == ["daily", "monthly"]
        assert not scheduler.running
        assert status["weekly"].enabled is False
        assert status["weekly"].next_run_at is None
        assert status["monthly"].next_run_at == int(datetime(2026, 3, 1).timestamp() * 1000)

    def test_update_config_persists(self, database):
        scheduler = AuditScheduler(self.service, database, clock=lambda: NOW)
        scheduler.update_config(AuditScheduleConfig(weekly_enabled=True))
        assert load_schedule_config(database).weekly_enabled
        assert not scheduler.running
