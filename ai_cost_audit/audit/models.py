"""
Audit result data structures.

Everything here is immutable and converts to and from plain JSON-native
dicts. Snapshots store ``AuditResult.to_dict()`` verbatim, so ``from_dict``
must restore exactly what was computed.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ai_cost_audit.core.anomaly import AuditAnomaly
from ai_cost_audit.core.token_counter import TokenCounts


class EntryStatus(Enum):
    """Agreement classification of one compared entry."""
    MATCH = "match"
    MINOR = "minor"
    MAJOR = "major"
    MISSING = "missing"


AUDIT_TYPES = ("daily", "weekly", "monthly", "manual")


@dataclass(frozen=True)
class AuditEntry:
    """Comparison of one local (date, model, billing mode) group against its day."""
    id: str
    date: str
    model: str
    billing_mode: str
    authoritative_tokens: TokenCounts
    local_tokens: TokenCounts
    authoritative_cost: float
    local_cost: float
    local_calculated_cost: float
    status: EntryStatus
    discrepancy_percent: float

    @staticmethod
    def make_id(date: str, model: str, billing_mode: str) -> str:
        return f"{date}_{model}_{billing_mode}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "model": self.model,
            "billing_mode": self.billing_mode,
            "authoritative_tokens": self.authoritative_tokens.to_dict(),
            "local_tokens": self.local_tokens.to_dict(),
            "authoritative_cost": self.authoritative_cost,
            "local_cost": self.local_cost,
            "local_calculated_cost": self.local_calculated_cost,
            "status": self.status.value,
            "discrepancy_percent": self.discrepancy_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=data["id"],
            date=data["date"],
            model=data["model"],
            billing_mode=data["billing_mode"],
            authoritative_tokens=TokenCounts.from_dict(data["authoritative_tokens"]),
            local_tokens=TokenCounts.from_dict(data["local_tokens"]),
            authoritative_cost=data["authoritative_cost"],
            local_cost=data["local_cost"],
            local_calculated_cost=data["local_calculated_cost"],
            status=EntryStatus(data["status"]),
            discrepancy_percent=data["discrepancy_percent"],
        )


@dataclass(frozen=True)
class ModelBreakdownEntry:
    """Per-model totals from both sources over the whole period."""
    model: str
    authoritative_tokens: TokenCounts
    authoritative_cost: float
    local_tokens: TokenCounts
    local_cost: float
    status: EntryStatus

    @property
    def match(self) -> bool:
        return self.status == EntryStatus.MATCH

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "authoritative_tokens": self.authoritative_tokens.to_dict(),
            "authoritative_cost": self.authoritative_cost,
            "local_tokens": self.local_tokens.to_dict(),
            "local_cost": self.local_cost,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelBreakdownEntry":
        return cls(
            model=data["model"],
            authoritative_tokens=TokenCounts.from_dict(data["authoritative_tokens"]),
            authoritative_cost=data["authoritative_cost"],
            local_tokens=TokenCounts.from_dict(data["local_tokens"]),
            local_cost=data["local_cost"],
            status=EntryStatus(data["status"]),
        )


@dataclass(frozen=True)
class BillingModeTotals:
    """Running totals for one billing mode."""
    entry_count: int = 0
    authoritative_cost: float = 0.0
    local_cost: float = 0.0
    token_count: int = 0
    cache_savings: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_count": self.entry_count,
            "authoritative_cost": self.authoritative_cost,
            "local_cost": self.local_cost,
            "token_count": self.token_count,
            "cache_savings": self.cache_savings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingModeTotals":
        return cls(**data)


@dataclass(frozen=True)
class BillingModeBreakdown:
    """Entry totals split by billing mode.

    ``authoritative_cost`` adds the shared day total once per entry, so a day
    with both api and max groups counts its authoritative cost in both.
    """
    api: BillingModeTotals
    max: BillingModeTotals

    def to_dict(self) -> Dict[str, Any]:
        return {"api": self.api.to_dict(), "max": self.max.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BillingModeBreakdown":
        return cls(
            api=BillingModeTotals.from_dict(data["api"]),
            max=BillingModeTotals.from_dict(data["max"]),
        )


@dataclass(frozen=True)
class AuditSummary:
    total: int = 0
    match: int = 0
    minor: int = 0
    major: int = 0
    missing: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "match": self.match,
            "minor": self.minor,
            "major": self.major,
            "missing": self.missing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditSummary":
        return cls(**data)


@dataclass(frozen=True)
class AuditTokens:
    """Whole-period token totals from both sources."""
    authoritative: TokenCounts
    local: TokenCounts
    difference: TokenCounts
    percent_diff: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authoritative": self.authoritative.to_dict(),
            "local": self.local.to_dict(),
            "difference": self.difference.to_dict(),
            "percent_diff": self.percent_diff,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditTokens":
        return cls(
            authoritative=TokenCounts.from_dict(data["authoritative"]),
            local=TokenCounts.from_dict(data["local"]),
            difference=TokenCounts.from_dict(data["difference"]),
            percent_diff=data["percent_diff"],
        )


@dataclass(frozen=True)
class AuditCosts:
    """Whole-period costs.

    ``local_reported`` prefers the cost the agent tool reported,
    ``local_calculated`` prefers the cost computed from the pricing table.
    ``savings`` is what the authoritative report charges beyond the locally
    calculated cost.
    """
    authoritative_total: float
    local_reported: float
    local_calculated: float
    discrepancy: float
    savings: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "authoritative_total": self.authoritative_total,
            "local_reported": self.local_reported,
            "local_calculated": self.local_calculated,
            "discrepancy": self.discrepancy,
            "savings": self.savings,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditCosts":
        return cls(**data)


@dataclass(frozen=True)
class AuditResult:
    """Complete outcome of one audit run."""
    period_start: str
    period_end: str
    generated_at: int
    tokens: AuditTokens
    costs: AuditCosts
    entries: Tuple[AuditEntry, ...]
    model_breakdown: Tuple[ModelBreakdownEntry, ...]
    billing_mode_breakdown: BillingModeBreakdown
    anomalies: Tuple[AuditAnomaly, ...]
    summary: AuditSummary

    @property
    def token_match_percent(self) -> float:
        return 100 - self.tokens.percent_diff

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": {"start": self.period_start, "end": self.period_end},
            "generated_at": self.generated_at,
            "tokens": self.tokens.to_dict(),
            "costs": self.costs.to_dict(),
            "entries": [entry.to_dict() for entry in self.entries],
            "model_breakdown": [model.to_dict() for model in self.model_breakdown],
            "billing_mode_breakdown": self.billing_mode_breakdown.to_dict(),
            "anomalies": [anomaly.to_dict() for anomaly in self.anomalies],
            "summary": self.summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditResult":
        return cls(
            period_start=data["period"]["start"],
            period_end=data["period"]["end"],
            generated_at=data["generated_at"],
            tokens=AuditTokens.from_dict(data["tokens"]),
            costs=AuditCosts.from_dict(data["costs"]),
            entries=tuple(AuditEntry.from_dict(item) for item in data["entries"]),
            model_breakdown=tuple(
                ModelBreakdownEntry.from_dict(item) for item in data["model_breakdown"]
            ),
            billing_mode_breakdown=BillingModeBreakdown.from_dict(data["billing_mode_breakdown"]),
            anomalies=tuple(AuditAnomaly.from_dict(item) for item in data["anomalies"]),
            summary=AuditSummary.from_dict(data["summary"]),
        )


@dataclass(frozen=True)
class AuditTrendPoint:
    """Flattened snapshot columns, read without decoding the payload."""
    snapshot_id: int
    created_at: int
    period_start: str
    period_end: str
    audit_type: str
    token_match_percent: Optional[float]
    cost_discrepancy_usd: Optional[float]
    anomaly_count: Optional[int]
    authoritative_total_cost: Optional[float]
    local_reported_cost: Optional[float]
    status: str
