"""
Anomaly detection for audit periods.

Flags whole-period token and cost disagreements between usage sources.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .token_counter import TokenCounts

# Discrepancies at or below this percentage are treated as agreement.
MATCH_THRESHOLD_PERCENT = 1.0
# Discrepancies above MATCH and at or below this are minor; above it, major.
MINOR_THRESHOLD_PERCENT = 5.0

TOKEN_FLOOR = 1.0
COST_FLOOR = 0.001


class AnomalySeverity(Enum):
    """Severity levels for detected anomalies."""
    WARNING = "warning"
    ERROR = "error"


class AnomalyType(Enum):
    """What kind of disagreement an anomaly describes."""
    TOKEN_MISMATCH = "token_mismatch"
    COST_MISMATCH = "cost_mismatch"


@dataclass(frozen=True)
class AuditAnomaly:
    """Detected anomaly with a machine-readable details payload."""
    type: AnomalyType
    severity: AnomalySeverity
    description: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditAnomaly":
        return cls(
            type=AnomalyType(data["type"]),
            severity=AnomalySeverity(data["severity"]),
            description=data["description"],
            details=data["details"],
        )


def discrepancy_percent(authoritative: float, local: float, floor: float) -> float:
    """Relative difference between two totals, in percent.

    The denominator is the larger of the two values, never less than floor,
    so two exact zeros compare as 0% instead of dividing by zero.
    """
    base = max(authoritative, local, floor)
    return abs(authoritative - local) / base * 100


def token_discrepancy_percent(authoritative: int, local: int) -> float:
    return discrepancy_percent(authoritative, local, TOKEN_FLOOR)


def cost_discrepancy_percent(authoritative: float, local: float) -> float:
    return discrepancy_percent(authoritative, local, COST_FLOOR)


def severity_for(percent: float) -> Optional[AnomalySeverity]:
    """Severity for a period discrepancy, or None when within tolerance."""
    if percent > MINOR_THRESHOLD_PERCENT:
        return AnomalySeverity.ERROR
    if percent > MATCH_THRESHOLD_PERCENT:
        return AnomalySeverity.WARNING
    return None


def detect_anomalies(
    authoritative_tokens: TokenCounts,
    local_tokens: TokenCounts,
    authoritative_cost: float,
    local_cost: float,
) -> List[AuditAnomaly]:
    """Detect whole-period anomalies between the two sources.

    Rules:
    - Token mismatch: total token discrepancy > 1% (WARNING), > 5% (ERROR)
    - Cost mismatch: total cost discrepancy > 1% (WARNING), > 5% (ERROR)

    Args:
        authoritative_tokens: Period token totals from the authoritative source
        local_tokens: Period token totals recorded locally
        authoritative_cost: Period cost from the authoritative source
        local_cost: Period cost recorded locally

    Returns:
        List of detected anomalies (empty if none)
    """
    anomalies = []

    token_percent = token_discrepancy_percent(
        authoritative_tokens.total_tokens, local_tokens.total_tokens
    )
    severity = severity_for(token_percent)
    if severity is not None:
        difference = authoritative_tokens - local_tokens
        anomalies.append(AuditAnomaly(
            type=AnomalyType.TOKEN_MISMATCH,
            severity=severity,
            description=f"Token count differs by {token_percent:.2f}%",
            details={
                "authoritative": authoritative_tokens.to_dict(),
                "local": local_tokens.to_dict(),
                "difference": difference.to_dict(),
                "discrepancy_percent": token_percent,
            },
        ))

    cost_percent = cost_discrepancy_percent(authoritative_cost, local_cost)
    severity = severity_for(cost_percent)
    if severity is not None:
        anomalies.append(AuditAnomaly(
            type=AnomalyType.COST_MISMATCH,
            severity=severity,
            description=(
                f"Cost differs by {cost_percent:.2f}% "
                f"(${authoritative_cost:.2f} authoritative vs ${local_cost:.2f} local)"
            ),
            details={
                "authoritative": authoritative_cost,
                "local": local_cost,
                "difference": authoritative_cost - local_cost,
                "discrepancy_percent": cost_percent,
            },
        ))

    return anomalies
