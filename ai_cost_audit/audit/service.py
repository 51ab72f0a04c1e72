"""
Audit reconciliation service.

Orchestrates one audit run: collects authoritative usage (locally, falling
back to remote hosts), groups local facts, compares them and persists the
result as a snapshot.
"""

import json
import logging
from datetime import date
from typing import Callable, List, Optional, Sequence, Union

from ai_cost_audit.core.pricing import PRICING_TABLE, PricingTable
from ai_cost_audit.core.token_counter import TokenCounts
from ai_cost_audit.storage.db import StatsDatabase
from ai_cost_audit.storage.models import current_time_ms

from .comparison import LocalUsageGroup, compare_usage
from .errors import AuditError, NoLocalUsageDataError, NoUsageDataError
from .models import AUDIT_TYPES, AuditResult, AuditTrendPoint
from .transport import RemoteHost
from .usage_cli import DailyUsage, UsageCliClient, normalize_date

logger = logging.getLogger(__name__)

HostProvider = Callable[[], Sequence[RemoteHost]]
DateLike = Union[str, date]

_LOCAL_DATE = "date(start_time / 1000, 'unixepoch', 'localtime')"

QUERY_LOCAL_SQL = f"""
    SELECT
        {_LOCAL_DATE} AS date,
        COALESCE(local_pricing_model, external_model, 'unknown') AS model,
        COALESCE(local_billing_mode, 'unknown') AS billing_mode,
        COALESCE(SUM(input_tokens), 0) AS input_tokens,
        COALESCE(SUM(output_tokens), 0) AS output_tokens,
        COALESCE(SUM(cache_read_input_tokens), 0) AS cache_read_tokens,
        COALESCE(SUM(cache_creation_input_tokens), 0) AS cache_write_tokens,
        COALESCE(SUM(resolved_cost(external_cost, local_cost, total_cost_usd, 'external')), 0)
            AS reported_cost,
        COALESCE(SUM(resolved_cost(external_cost, local_cost, total_cost_usd, 'local')), 0)
            AS calculated_cost,
        COUNT(*) AS row_count
    FROM query_events
    WHERE {_LOCAL_DATE} >= ? AND {_LOCAL_DATE} <= ?
    GROUP BY date, model, billing_mode
    ORDER BY date, model, billing_mode
"""

INSERT_SNAPSHOT_SQL = """
    INSERT INTO audit_snapshots (
        created_at, period_start, period_end, audit_type,
        authoritative_input_tokens, authoritative_output_tokens,
        authoritative_cache_read_tokens, authoritative_cache_write_tokens,
        authoritative_total_cost,
        local_input_tokens, local_output_tokens,
        local_cache_read_tokens, local_cache_write_tokens,
        local_reported_cost, local_calculated_cost,
        token_match_percent, cost_discrepancy_usd, anomaly_count,
        entry_count, match_count, minor_count, major_count, missing_count,
        audit_result_json, status
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _no_hosts() -> List[RemoteHost]:
    return []


class AuditReconciliationService:
    """Compares local usage records against the authoritative usage report."""

    def __init__(
        self,
        database: StatsDatabase,
        usage_client: UsageCliClient,
        host_provider: HostProvider = _no_hosts,
        pricing: PricingTable = PRICING_TABLE,
    ):
        """Initialize the service.

        Args:
            database: Migrated store handle
            usage_client: Adapter for the external usage tool
            host_provider: Returns the enabled remote hosts, read at audit time
            pricing: Lookup used for cache savings
        """
        self.database = database
        self.usage_client = usage_client
        self.host_provider = host_provider
        self.pricing = pricing

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def query_local(self, start_date: DateLike, end_date: DateLike) -> List[LocalUsageGroup]:
        """Group local facts by (local date, model, billing mode).

        Args:
            start_date: First date, inclusive
            end_date: Last date, inclusive

        Returns:
            One group per combination, ordered by date, model and billing mode
        """
        params = (normalize_date(start_date), normalize_date(end_date))
        with self.database.lock:
            rows = self.database.connection.execute(QUERY_LOCAL_SQL, params).fetchall()
        groups = [
            LocalUsageGroup(
                date=row["date"],
                model=row["model"],
                billing_mode=row["billing_mode"],
                tokens=TokenCounts(
                    input_tokens=row["input_tokens"],
                    output_tokens=row["output_tokens"],
                    cache_read_tokens=row["cache_read_tokens"],
                    cache_write_tokens=row["cache_write_tokens"],
                ),
                reported_cost=row["reported_cost"],
                calculated_cost=row["calculated_cost"],
                row_count=row["row_count"],
            )
            for row in rows
        ]
        logger.debug("Queried local usage: %d groups", len(groups))
        return groups

    def fetch_authoritative_data(
        self,
        start_date: str,
        end_date: str,
        include_remotes: bool = False,
    ) -> List[DailyUsage]:
        """Collect authoritative day records for a period.

        When this machine has no usage history every enabled remote host is
        tried instead. With ``include_remotes`` the remotes are added on top
        of a successful local fetch. A failing host is logged and skipped.

        Raises:
            NoUsageDataError: If no local history exists and no remote
                returned any records
            AuditError: Any other local fetch failure
        """
        try:
            days = self.usage_client.fetch_authoritative("daily", start_date, end_date)
        except NoLocalUsageDataError:
            hosts = list(self.host_provider())
            logger.info(
                "No local usage data; falling back to %d remote host(s)", len(hosts)
            )
            days = self._fetch_remotes(hosts, start_date, end_date)
            if not days:
                raise NoUsageDataError(remotes_configured=len(hosts))
            return days

        if include_remotes:
            days = days + self._fetch_remotes(list(self.host_provider()), start_date, end_date)
        return days

    def _fetch_remotes(
        self, hosts: Sequence[RemoteHost], start_date: str, end_date: str
    ) -> List[DailyUsage]:
        collected: List[DailyUsage] = []
        for host in hosts:
            try:
                collected.extend(self.usage_client.fetch_authoritative_remote(
                    host, "daily", start_date, end_date
                ))
            except AuditError as exc:
                logger.warning("Skipping remote %s: %s", host.name, exc)
        return collected

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def perform_audit(
        self,
        start_date: DateLike,
        end_date: DateLike,
        include_remotes: bool = False,
        generated_at: Optional[int] = None,
    ) -> AuditResult:
        """Run a full comparison for a period without saving it.

        Args:
            start_date: First date, inclusive
            end_date: Last date, inclusive
            include_remotes: Also merge usage from every enabled remote host
            generated_at: Override the generation timestamp (epoch ms)

        Returns:
            The computed AuditResult
        """
        start = normalize_date(start_date)
        end = normalize_date(end_date)
        if start > end:
            raise ValueError(f"start date {start} is after end date {end}")

        logger.info("Starting audit for %s to %s", start, end)
        authoritative = self.fetch_authoritative_data(start, end, include_remotes)
        local_groups = self.query_local(start, end)
        return compare_usage(
            authoritative,
            local_groups,
            start,
            end,
            pricing=self.pricing,
            generated_at=generated_at,
        )

    def run_audit(
        self,
        start_date: DateLike,
        end_date: DateLike,
        audit_type: str = "manual",
        include_remotes: bool = False,
        save: bool = True,
    ) -> AuditResult:
        """Perform an audit and, unless ``save`` is false, store its snapshot."""
        if audit_type not in AUDIT_TYPES:
            raise ValueError(f"audit_type must be one of {AUDIT_TYPES}, got {audit_type!r}")
        result = self.perform_audit(start_date, end_date, include_remotes=include_remotes)
        if save:
            self.save_snapshot(result, audit_type)
        return result

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, result: AuditResult, audit_type: str = "manual") -> int:
        """Persist an audit result.

        Returns:
            Row id of the new snapshot
        """
        if audit_type not in AUDIT_TYPES:
            raise ValueError(f"audit_type must be one of {AUDIT_TYPES}, got {audit_type!r}")

        authoritative = result.tokens.authoritative
        local = result.tokens.local
        summary = result.summary
        params = (
            current_time_ms(),
            result.period_start,
            result.period_end,
            audit_type,
            authoritative.input_tokens,
            authoritative.output_tokens,
            authoritative.cache_read_tokens,
            authoritative.cache_write_tokens,
            result.costs.authoritative_total,
            local.input_tokens,
            local.output_tokens,
            local.cache_read_tokens,
            local.cache_write_tokens,
            result.costs.local_reported,
            result.costs.local_calculated,
            result.token_match_percent,
            result.costs.discrepancy,
            len(result.anomalies),
            summary.total,
            summary.match,
            summary.minor,
            summary.major,
            summary.missing,
            json.dumps(result.to_dict()),
            "completed",
        )
        with self.database.lock:
            cursor = self.database.connection.execute(INSERT_SNAPSHOT_SQL, params)
            snapshot_id = cursor.lastrowid
        logger.info("Saved %s audit snapshot %d", audit_type, snapshot_id)
        return snapshot_id

    def get_history(self, limit: int = 10) -> List[AuditResult]:
        """Most recent audit results, newest first."""
        with self.database.lock:
            rows = self.database.connection.execute(
                """
                SELECT audit_result_json
                FROM audit_snapshots
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [AuditResult.from_dict(json.loads(row["audit_result_json"])) for row in rows]

    def get_snapshots_by_range(self, start_date: DateLike, end_date: DateLike) -> List[AuditResult]:
        """Audit results whose period lies within [start_date, end_date], newest first."""
        with self.database.lock:
            rows = self.database.connection.execute(
                """
                SELECT audit_result_json
                FROM audit_snapshots
                WHERE period_start >= ? AND period_end <= ?
                ORDER BY created_at DESC, id DESC
                """,
                (normalize_date(start_date), normalize_date(end_date)),
            ).fetchall()
        return [AuditResult.from_dict(json.loads(row["audit_result_json"])) for row in rows]

    def get_trend(self, limit: int = 30) -> List[AuditTrendPoint]:
        """Summary columns of the latest snapshots, oldest first, for charting."""
        with self.database.lock:
            rows = self.database.connection.execute(
                """
                SELECT id, created_at, period_start, period_end, audit_type,
                       token_match_percent, cost_discrepancy_usd, anomaly_count,
                       authoritative_total_cost, local_reported_cost, status
                FROM audit_snapshots
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        points = [
            AuditTrendPoint(
                snapshot_id=row["id"],
                created_at=row["created_at"],
                period_start=row["period_start"],
                period_end=row["period_end"],
                audit_type=row["audit_type"],
                token_match_percent=row["token_match_percent"],
                cost_discrepancy_usd=row["cost_discrepancy_usd"],
                anomaly_count=row["anomaly_count"],
                authoritative_total_cost=row["authoritative_total_cost"],
                local_reported_cost=row["local_reported_cost"],
                status=row["status"],
            )
            for row in rows
        ]
        points.reverse()
        return points
