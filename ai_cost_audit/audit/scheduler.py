"""
Scheduled audits.

Runs daily, weekly and monthly audits in the background with
``threading.Timer``. The schedule itself is stored in the ``_meta`` table so
it survives restarts; per-schedule run status lives in ``audit_schedule``.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ai_cost_audit.storage.db import StatsDatabase
from ai_cost_audit.storage.models import current_time_ms

from .models import AuditResult
from .service import AuditReconciliationService

logger = logging.getLogger(__name__)

SCHEDULE_TYPES = ("daily", "weekly", "monthly")
CONFIG_META_KEY = "audit_config"


@dataclass(frozen=True)
class AuditScheduleConfig:
    """Which scheduled audits are enabled and when they fire.

    ``weekly_day`` counts from Sunday (0) to Saturday (6).
    """
    daily_enabled: bool = False
    daily_time: str = "00:00"
    weekly_enabled: bool = False
    weekly_day: int = 0
    monthly_enabled: bool = False

    def __post_init__(self):
        """Validate time and weekday."""
        parse_time_of_day(self.daily_time)
        if not 0 <= self.weekly_day <= 6:
            raise ValueError(f"weekly_day must be between 0 and 6, got {self.weekly_day}")

    def is_enabled(self, schedule_type: str) -> bool:
        return {
            "daily": self.daily_enabled,
            "weekly": self.weekly_enabled,
            "monthly": self.monthly_enabled,
        }[schedule_type]


@dataclass(frozen=True)
class ScheduleStatus:
    enabled: bool
    last_run_at: Optional[int]
    last_run_status: Optional[str]
    next_run_at: Optional[int]


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM``.

    Raises:
        ValueError: If the value is not a valid 24-hour time
    """
    try:
        hours_text, minutes_text = value.split(":")
        hours, minutes = int(hours_text), int(minutes_text)
    except (AttributeError, ValueError):
        raise ValueError(f"time must be HH:MM, got {value!r}")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"time must be HH:MM, got {value!r}")
    return hours, minutes


def load_schedule_config(database: StatsDatabase) -> AuditScheduleConfig:
    """Read the stored schedule, or the all-disabled default."""
    with database.lock:
        row = database.connection.execute(
            "SELECT value FROM _meta WHERE key = ?", (CONFIG_META_KEY,)
        ).fetchone()
    if row is None:
        return AuditScheduleConfig()
    return AuditScheduleConfig(**json.loads(row["value"]))


def save_schedule_config(database: StatsDatabase, config: AuditScheduleConfig) -> None:
    with database.lock:
        database.connection.execute(
            "INSERT OR REPLACE INTO _meta (key, value) VALUES (?, ?)",
            (CONFIG_META_KEY, json.dumps(asdict(config))),
        )
    logger.info("Saved audit schedule config")


def _months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last day of the target month
    next_month = date(year + (month // 12), month % 12 + 1, 1)
    last_day = (next_month - timedelta(days=1)).day
    return date(year, month, min(day.day, last_day))


def audit_period(audit_type: str, today: Optional[date] = None) -> Tuple[str, str]:
    """Date range audited by a scheduled run, as ISO strings.

    daily covers today, weekly the last seven days, monthly the span since
    the same day last month.
    """
    today = today or date.today()
    if audit_type == "daily":
        start = today
    elif audit_type == "weekly":
        start = today - timedelta(days=7)
    elif audit_type == "monthly":
        start = _months_before(today, 1)
    else:
        raise ValueError(f"audit_type must be one of {SCHEDULE_TYPES}, got {audit_type!r}")
    return start.isoformat(), today.isoformat()


def next_run_time(audit_type: str, config: AuditScheduleConfig, now: datetime) -> datetime:
    """When a schedule next fires after ``now``.

    daily fires at ``daily_time``; weekly at midnight on ``weekly_day``
    (never today, so at most seven days out); monthly at midnight on the
    first of next month.
    """
    if audit_type == "daily":
        hours, minutes = parse_time_of_day(config.daily_time)
        candidate = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate
    if audit_type == "weekly":
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        sunday_based_weekday = (now.weekday() + 1) % 7
        days_until = (config.weekly_day - sunday_based_weekday + 7) % 7 or 7
        return midnight + timedelta(days=days_until)
    if audit_type == "monthly":
        if now.month == 12:
            return datetime(now.year + 1, 1, 1)
        return datetime(now.year, now.month + 1, 1)
    raise ValueError(f"audit_type must be one of {SCHEDULE_TYPES}, got {audit_type!r}")


class AuditScheduler:
    """Arms one timer per enabled schedule and reruns it after every firing."""

    def __init__(
        self,
        service: AuditReconciliationService,
        database: StatsDatabase,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service = service
        self.database = database
        self.clock = clock
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> List[str]:
        """Arm timers for every enabled schedule.

        Returns:
            The schedule types that were armed
        """
        self.stop()
        config = load_schedule_config(self.database)
        self._running = True
        armed = []
        for schedule_type in SCHEDULE_TYPES:
            enabled = config.is_enabled(schedule_type)
            next_at = None
            if enabled:
                next_at = self._arm(schedule_type, config)
                armed.append(schedule_type)
            self._update_schedule_row(schedule_type, enabled=enabled, next_run_at=next_at)
        logger.info("Audits scheduled: %s", ", ".join(armed) or "none")
        return armed

    def stop(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._running = False
        logger.debug("Cleared all scheduled audit timers")

    def update_config(self, config: AuditScheduleConfig) -> None:
        """Store a new schedule and re-arm timers if the scheduler is running."""
        save_schedule_config(self.database, config)
        if self._running:
            self.start()

    def _arm(self, schedule_type: str, config: AuditScheduleConfig) -> int:
        now = self.clock()
        next_at = next_run_time(schedule_type, config, now)
        delay = max((next_at - now).total_seconds(), 0.0)
        timer = threading.Timer(delay, self._fire, args=(schedule_type,))
        timer.daemon = True
        with self._lock:
            self._timers[schedule_type] = timer
        timer.start()
        logger.info("Scheduling %s audit for %s", schedule_type, next_at.isoformat())
        return int(next_at.timestamp() * 1000)

    def _fire(self, schedule_type: str) -> None:
        self.run_scheduled_audit(schedule_type)
        if self._running:
            config = load_schedule_config(self.database)
            if config.is_enabled(schedule_type):
                next_at = self._arm(schedule_type, config)
                self._update_schedule_row(schedule_type, enabled=True, next_run_at=next_at)

    def run_scheduled_audit(
        self, schedule_type: str, today: Optional[date] = None
    ) -> Optional[AuditResult]:
        """Run and save one scheduled audit.

        Failures are logged and recorded as the schedule's last run status;
        this never raises because it runs on a timer thread.

        Returns:
            The audit result, or None if the run failed
        """
        start, end = audit_period(schedule_type, today or self.clock().date())
        logger.info("Running %s audit for %s to %s", schedule_type, start, end)
        try:
            result = self.service.run_audit(start, end, audit_type=schedule_type, save=True)
        except Exception:
            logger.exception("%s audit failed", schedule_type)
            self._record_run(schedule_type, "failed")
            return None

        logger.info(
            "%s audit completed: %d anomalies, savings $%.2f",
            schedule_type, len(result.anomalies), result.costs.savings,
        )
        self._record_run(schedule_type, "completed")
        return result

    def schedule_status(self) -> Dict[str, ScheduleStatus]:
        """Last and next run information per schedule type that has a row."""
        with self.database.lock:
            rows = self.database.connection.execute(
                "SELECT schedule_type, enabled, last_run_at, last_run_status, next_run_at FROM audit_schedule"
            ).fetchall()
        return {
            row["schedule_type"]: ScheduleStatus(
                enabled=bool(row["enabled"]),
                last_run_at=row["last_run_at"],
                last_run_status=row["last_run_status"],
                next_run_at=row["next_run_at"],
            )
            for row in rows
        }

    def _record_run(self, schedule_type: str, status: str) -> None:
        now = current_time_ms()
        with self.database.lock:
            self.database.connection.execute(
                """
                INSERT INTO audit_schedule
                    (schedule_type, enabled, last_run_at, last_run_status, created_at, updated_at)
                VALUES (?, 1, ?, ?, ?, ?)
                ON CONFLICT(schedule_type) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_run_status = excluded.last_run_status,
                    updated_at = excluded.updated_at
                """,
                (schedule_type, now, status, now, now),
            )

    def _update_schedule_row(
        self, schedule_type: str, enabled: bool, next_run_at: Optional[int]
    ) -> None:
        now = current_time_ms()
        with self.database.lock:
            self.database.connection.execute(
                """
                INSERT INTO audit_schedule
                    (schedule_type, enabled, next_run_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(schedule_type) DO UPDATE SET
                    enabled = excluded.enabled,
                    next_run_at = excluded.next_run_at,
                    updated_at = excluded.updated_at
                """,
                (schedule_type, 1 if enabled else 0, next_run_at, now, now),
            )
