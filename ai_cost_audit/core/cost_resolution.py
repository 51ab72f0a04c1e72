"""
Cost resolution for usage facts.

Chooses which recorded cost field represents a fact when several exist.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CostSource(Enum):
    """Origin of a resolved cost value."""
    EXTERNAL = "external"  # Reported by the agent tool itself
    LOCAL = "local"        # Calculated from the local pricing table
    LEGACY = "legacy"      # Single cost column written before dual-source tracking
    NONE = "none"


@dataclass(frozen=True)
class ResolvedCost:
    """A cost value together with the field it was taken from."""
    value: float
    source: CostSource


def resolve_cost_values(
    external_cost: Optional[float],
    local_cost: Optional[float],
    legacy_cost: Optional[float],
    prefer: CostSource = CostSource.EXTERNAL,
) -> ResolvedCost:
    """Resolve a cost from raw column values.

    Order: the preferred dual-source field, then the other dual-source
    field, then the legacy single-cost field.

    Args:
        external_cost: Cost reported by the agent tool
        local_cost: Cost calculated locally
        legacy_cost: Cost from the pre-dual-source column
        prefer: Which dual-source field wins when both are present

    Returns:
        ResolvedCost with value 0.0 and source NONE when nothing is recorded

    Raises:
        ValueError: If prefer is not EXTERNAL or LOCAL
    """
    if prefer == CostSource.EXTERNAL:
        candidates = ((external_cost, CostSource.EXTERNAL), (local_cost, CostSource.LOCAL))
    elif prefer == CostSource.LOCAL:
        candidates = ((local_cost, CostSource.LOCAL), (external_cost, CostSource.EXTERNAL))
    else:
        raise ValueError(f"prefer must be EXTERNAL or LOCAL, got {prefer}")

    for value, source in candidates + ((legacy_cost, CostSource.LEGACY),):
        if value is not None:
            return ResolvedCost(value=float(value), source=source)
    return ResolvedCost(value=0.0, source=CostSource.NONE)


def resolve_cost(record, prefer: CostSource = CostSource.EXTERNAL) -> ResolvedCost:
    """Resolve the cost of a usage fact.

    Args:
        record: Any object with ``external_cost``, ``local_cost`` and
            ``total_cost_usd`` attributes (normally a UsageFact)
        prefer: Which dual-source field wins when both are present

    Returns:
        ResolvedCost for the record
    """
    return resolve_cost_values(
        record.external_cost,
        record.local_cost,
        record.total_cost_usd,
        prefer=prefer,
    )


def sql_resolved_cost(external_cost, local_cost, legacy_cost, prefer):
    """SQLite adapter for resolve_cost_values.

    Registered on every connection as ``resolved_cost(external, local,
    legacy, prefer)`` where prefer is ``'external'`` or ``'local'``.
    Returns NULL when no cost is recorded so that SUM() ignores the row.
    """
    resolved = resolve_cost_values(external_cost, local_cost, legacy_cost, CostSource(prefer))
    if resolved.source == CostSource.NONE:
        return None
    return resolved.value
