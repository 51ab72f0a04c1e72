"""
Data models for storage layer.

Defines database entities and data structures.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

VALID_SOURCES = ("user", "auto")

_TOKEN_FIELDS = (
    "input_tokens",
    "output_tokens",
    "cache_read_input_tokens",
    "cache_creation_input_tokens",
)


@dataclass(frozen=True)
class UsageFact:
    """Immutable record of one completed agent query cycle.

    Insert-only rows of the fact table. Token counts and costs are optional:
    ``None`` means the producer did not know the value, which is different
    from zero.
    """
    session_id: str
    agent_type: str
    source: str
    start_time: int  # epoch milliseconds
    duration: int  # milliseconds
    id: Optional[str] = None
    agent_id: Optional[str] = None
    project_path: Optional[str] = None
    tab_id: Optional[str] = None
    is_remote: Optional[bool] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    tokens_per_second: Optional[float] = None
    cache_read_input_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    total_cost_usd: Optional[float] = None
    # Dual-source cost tracking
    external_cost: Optional[float] = None
    external_model: Optional[str] = None
    local_cost: Optional[float] = None
    local_billing_mode: Optional[str] = None
    local_pricing_model: Optional[str] = None
    local_calculated_at: Optional[int] = None
    # Reconciliation metadata
    uuid: Optional[str] = None
    external_message_id: Optional[str] = None
    is_reconstructed: bool = False
    reconstructed_at: Optional[int] = None
    external_session_id: Optional[str] = None

    def __post_init__(self):
        """Validate the fact invariants."""
        if self.source not in VALID_SOURCES:
            raise ValueError(f"source must be one of {VALID_SOURCES}, got {self.source!r}")
        if self.duration is None or self.duration < 0:
            raise ValueError("duration cannot be negative")
        for name in _TOKEN_FIELDS:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} cannot be negative")


@dataclass(frozen=True)
class SessionLifecycleEvent:
    """Creation and (optional) closure of an agent session."""
    session_id: str
    agent_type: str
    created_at: int
    id: Optional[str] = None
    project_path: Optional[str] = None
    closed_at: Optional[int] = None
    duration: Optional[int] = None
    is_remote: Optional[bool] = None


@dataclass(frozen=True)
class MigrationRecord:
    """One row of the migration history."""
    version: int
    description: str
    applied_at: int
    status: str  # "success" or "failed"
    error_message: Optional[str] = None


@dataclass(frozen=True)
class StatsFilters:
    """Optional equality filters for fact queries."""
    agent_type: Optional[str] = None
    source: Optional[str] = None
    project_path: Optional[str] = None
    session_id: Optional[str] = None


class TimeRange(Enum):
    """Relative time windows understood by queries and aggregations."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"

    def start_ms(self, now_ms: Optional[int] = None) -> int:
        """Absolute lower bound (epoch ms) of this range relative to now_ms."""
        if self == TimeRange.ALL:
            return 0
        if now_ms is None:
            now_ms = current_time_ms()
        return now_ms - _RANGE_DAYS[self] * _DAY_MS


_DAY_MS = 24 * 60 * 60 * 1000
_RANGE_DAYS = {
    TimeRange.DAY: 1,
    TimeRange.WEEK: 7,
    TimeRange.MONTH: 30,
    TimeRange.YEAR: 365,
}


def coerce_time_range(value: Union[TimeRange, str]) -> TimeRange:
    """Accept a TimeRange or its string value.

    Raises:
        ValueError: If the string is not a known range
    """
    if isinstance(value, TimeRange):
        return value
    try:
        return TimeRange(value)
    except ValueError:
        valid = [r.value for r in TimeRange]
        raise ValueError(f"time range must be one of: {valid}")


def current_time_ms() -> int:
    return int(time.time() * 1000)
