"""
Audit comparison.

Pure functions that turn authoritative day records and local usage groups
into an ``AuditResult``. No I/O happens here, so the same inputs always give
the same entries, breakdowns, summary and anomalies.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ai_cost_audit.core.anomaly import (
    MATCH_THRESHOLD_PERCENT,
    MINOR_THRESHOLD_PERCENT,
    cost_discrepancy_percent,
    detect_anomalies,
    token_discrepancy_percent,
)
from ai_cost_audit.core.pricing import (
    BILLING_MODE_API,
    BILLING_MODE_MAX,
    PRICING_TABLE,
    PricingTable,
    calculate_cache_savings,
)
from ai_cost_audit.core.token_counter import TokenCounts
from ai_cost_audit.storage.models import current_time_ms

from .models import (
    AuditCosts,
    AuditEntry,
    AuditResult,
    AuditSummary,
    AuditTokens,
    BillingModeBreakdown,
    BillingModeTotals,
    EntryStatus,
    ModelBreakdownEntry,
)
from .usage_cli import DailyUsage

logger = logging.getLogger(__name__)

MISSING_DISCREPANCY_PERCENT = 100.0

_DATE_SUFFIX = re.compile(r"-\d{8}$")


@dataclass(frozen=True)
class LocalUsageGroup:
    """Local usage summed over one (date, model, billing mode) group."""
    date: str
    model: str
    billing_mode: str
    tokens: TokenCounts
    reported_cost: float
    calculated_cost: float
    row_count: int


def canonical_model_id(model: str) -> str:
    """Model id without a trailing ``-YYYYMMDD`` release date."""
    return _DATE_SUFFIX.sub("", model)


def classify(token_percent: float, cost_percent: float) -> Tuple[EntryStatus, float]:
    """Classify by the worse of the two discrepancies.

    Returns:
        The status and the percentage that decided it
    """
    worse = max(token_percent, cost_percent)
    if worse <= MATCH_THRESHOLD_PERCENT:
        return EntryStatus.MATCH, worse
    if worse <= MINOR_THRESHOLD_PERCENT:
        return EntryStatus.MINOR, worse
    return EntryStatus.MAJOR, worse


def merge_by_date(days: Iterable[DailyUsage]) -> Dict[str, DailyUsage]:
    """Sum day records that share a date (e.g. the same day from several hosts)."""
    merged: Dict[str, DailyUsage] = {}
    for day in days:
        existing = merged.get(day.date)
        if existing is None:
            merged[day.date] = day
            continue
        models_used = existing.models_used + tuple(
            m for m in day.models_used if m not in existing.models_used
        )
        merged[day.date] = DailyUsage(
            date=day.date,
            input_tokens=existing.input_tokens + day.input_tokens,
            output_tokens=existing.output_tokens + day.output_tokens,
            cache_creation_tokens=existing.cache_creation_tokens + day.cache_creation_tokens,
            cache_read_tokens=existing.cache_read_tokens + day.cache_read_tokens,
            total_tokens=existing.total_tokens + day.total_tokens,
            total_cost=existing.total_cost + day.total_cost,
            models_used=models_used,
            model_breakdowns=existing.model_breakdowns + day.model_breakdowns,
        )
    return merged


def _compare_group(group: LocalUsageGroup, day: Optional[DailyUsage]) -> AuditEntry:
    entry_id = AuditEntry.make_id(group.date, group.model, group.billing_mode)
    if day is None:
        return AuditEntry(
            id=entry_id,
            date=group.date,
            model=group.model,
            billing_mode=group.billing_mode,
            authoritative_tokens=TokenCounts(),
            local_tokens=group.tokens,
            authoritative_cost=0.0,
            local_cost=group.reported_cost,
            local_calculated_cost=group.calculated_cost,
            status=EntryStatus.MISSING,
            discrepancy_percent=MISSING_DISCREPANCY_PERCENT,
        )

    authoritative_tokens = day.tokens
    token_percent = token_discrepancy_percent(
        authoritative_tokens.total_tokens, group.tokens.total_tokens
    )
    cost_percent = cost_discrepancy_percent(day.total_cost, group.reported_cost)
    status, percent = classify(token_percent, cost_percent)
    return AuditEntry(
        id=entry_id,
        date=group.date,
        model=group.model,
        billing_mode=group.billing_mode,
        authoritative_tokens=authoritative_tokens,
        local_tokens=group.tokens,
        authoritative_cost=day.total_cost,
        local_cost=group.reported_cost,
        local_calculated_cost=group.calculated_cost,
        status=status,
        discrepancy_percent=percent,
    )


class _ModelAccumulator:
    def __init__(self):
        self.authoritative_tokens = TokenCounts()
        self.authoritative_cost = 0.0
        self.local_tokens = TokenCounts()
        self.local_cost = 0.0
        self.has_authoritative = False

    def to_entry(self, model: str) -> ModelBreakdownEntry:
        if not self.has_authoritative:
            status = EntryStatus.MISSING
        else:
            status, _ = classify(
                token_discrepancy_percent(
                    self.authoritative_tokens.total_tokens, self.local_tokens.total_tokens
                ),
                cost_discrepancy_percent(self.authoritative_cost, self.local_cost),
            )
        return ModelBreakdownEntry(
            model=model,
            authoritative_tokens=self.authoritative_tokens,
            authoritative_cost=self.authoritative_cost,
            local_tokens=self.local_tokens,
            local_cost=self.local_cost,
            status=status,
        )


def compare_usage(
    authoritative_days: Sequence[DailyUsage],
    local_groups: Sequence[LocalUsageGroup],
    period_start: str,
    period_end: str,
    pricing: PricingTable = PRICING_TABLE,
    generated_at: Optional[int] = None,
) -> AuditResult:
    """Compare authoritative usage against local groups for one period.

    Every local group is compared against the whole authoritative day for
    its date, since the authoritative report has no billing-mode split.

    Args:
        authoritative_days: Day records, possibly from several hosts
        local_groups: Local usage per (date, model, billing mode)
        period_start: First date of the period (ISO)
        period_end: Last date of the period (ISO, inclusive)
        pricing: Lookup for cache savings of max-billed usage
        generated_at: Generation timestamp in epoch ms (defaults to now)

    Returns:
        Complete AuditResult
    """
    days = {
        day_date: day
        for day_date, day in merge_by_date(authoritative_days).items()
        if period_start <= day_date <= period_end
    }
    groups = sorted(local_groups, key=lambda g: (g.date, g.model, g.billing_mode))

    entries: List[AuditEntry] = []
    billing: Dict[str, BillingModeTotals] = {
        BILLING_MODE_API: BillingModeTotals(),
        BILLING_MODE_MAX: BillingModeTotals(),
    }
    models: Dict[str, _ModelAccumulator] = {}

    for group in groups:
        entry = _compare_group(group, days.get(group.date))
        entries.append(entry)

        totals = billing.get(group.billing_mode)
        if totals is not None:
            savings = totals.cache_savings
            if group.billing_mode == BILLING_MODE_MAX:
                savings += _cache_savings(group, pricing)
            billing[group.billing_mode] = replace(
                totals,
                entry_count=totals.entry_count + 1,
                authoritative_cost=totals.authoritative_cost + entry.authoritative_cost,
                local_cost=totals.local_cost + group.reported_cost,
                token_count=totals.token_count + group.tokens.total_tokens,
                cache_savings=savings,
            )
        else:
            logger.debug("Entry %s has no known billing mode", entry.id)

        accumulator = models.setdefault(canonical_model_id(group.model), _ModelAccumulator())
        accumulator.local_tokens = accumulator.local_tokens + group.tokens
        accumulator.local_cost += group.reported_cost

    for day in sorted(days.values(), key=lambda d: d.date):
        for usage in day.model_breakdowns:
            accumulator = models.setdefault(
                canonical_model_id(usage.model_name), _ModelAccumulator()
            )
            accumulator.authoritative_tokens = accumulator.authoritative_tokens + usage.tokens
            accumulator.authoritative_cost += usage.cost
            accumulator.has_authoritative = True

    authoritative_tokens = TokenCounts()
    authoritative_cost = 0.0
    for day in sorted(days.values(), key=lambda d: d.date):
        authoritative_tokens = authoritative_tokens + day.tokens
        authoritative_cost += day.total_cost

    local_tokens = TokenCounts()
    local_reported = 0.0
    local_calculated = 0.0
    for group in groups:
        local_tokens = local_tokens + group.tokens
        local_reported += group.reported_cost
        local_calculated += group.calculated_cost

    percent_diff = token_discrepancy_percent(
        authoritative_tokens.total_tokens, local_tokens.total_tokens
    )
    anomalies = detect_anomalies(
        authoritative_tokens, local_tokens, authoritative_cost, local_reported
    )

    summary = AuditSummary(
        total=len(entries),
        match=sum(1 for e in entries if e.status == EntryStatus.MATCH),
        minor=sum(1 for e in entries if e.status == EntryStatus.MINOR),
        major=sum(1 for e in entries if e.status == EntryStatus.MAJOR),
        missing=sum(1 for e in entries if e.status == EntryStatus.MISSING),
    )

    logger.info(
        "Audit %s..%s: %d entries (%d match, %d minor, %d major, %d missing), %d anomalies",
        period_start, period_end, summary.total, summary.match, summary.minor,
        summary.major, summary.missing, len(anomalies),
    )

    return AuditResult(
        period_start=period_start,
        period_end=period_end,
        generated_at=generated_at if generated_at is not None else current_time_ms(),
        tokens=AuditTokens(
            authoritative=authoritative_tokens,
            local=local_tokens,
            difference=authoritative_tokens - local_tokens,
            percent_diff=percent_diff,
        ),
        costs=AuditCosts(
            authoritative_total=authoritative_cost,
            local_reported=local_reported,
            local_calculated=local_calculated,
            discrepancy=abs(authoritative_cost - local_reported),
            savings=authoritative_cost - local_calculated,
        ),
        entries=tuple(entries),
        model_breakdown=tuple(
            accumulator.to_entry(model) for model, accumulator in sorted(models.items())
        ),
        billing_mode_breakdown=BillingModeBreakdown(
            api=billing[BILLING_MODE_API], max=billing[BILLING_MODE_MAX]
        ),
        anomalies=tuple(anomalies),
        summary=summary,
    )


def _cache_savings(group: LocalUsageGroup, pricing: PricingTable) -> float:
    if pricing.lookup(group.model) is None:
        logger.debug("No pricing for %s; cache savings counted as 0", group.model)
        return 0.0
    return calculate_cache_savings(
        group.model,
        group.tokens.cache_read_tokens,
        group.tokens.cache_write_tokens,
        pricing,
    )
