"""
Composition root.

Builds the single stats database handle, brings its schema up to date and
wires every component to it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ai_cost_audit.audit.scheduler import AuditScheduler
from ai_cost_audit.audit.service import AuditReconciliationService
from ai_cost_audit.audit.transport import RemoteShellTransport
from ai_cost_audit.audit.usage_cli import UsageCliClient
from ai_cost_audit.config.loader import AppConfig, default_config
from ai_cost_audit.core.aggregation import AggregationEngine
from ai_cost_audit.core.pricing import PRICING_TABLE
from ai_cost_audit.storage.db import StatsDatabase
from ai_cost_audit.storage.migrations import SchemaMigrator
from ai_cost_audit.storage.repository import EventStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every component of a running process, sharing one database handle."""
    config: AppConfig
    database: StatsDatabase
    migrator: SchemaMigrator
    events: EventStore
    aggregation: AggregationEngine
    audit: AuditReconciliationService
    scheduler: AuditScheduler

    def close(self) -> None:
        self.scheduler.stop()
        self.database.close()

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def bootstrap(
    config: Optional[AppConfig] = None,
    transport: Optional[RemoteShellTransport] = None,
) -> Runtime:
    """Open the database, run pending migrations and build all components.

    Migrations run before anything else touches the database; a failing
    migration propagates and no Runtime is returned.

    Args:
        config: Application configuration (defaults when omitted)
        transport: Remote shell transport override, mainly for tests

    Returns:
        Fully wired Runtime
    """
    config = config or default_config()
    database = StatsDatabase(config.database.path)

    migrator = SchemaMigrator(database)
    try:
        applied = migrator.run_migrations()
    except Exception:
        database.close()
        raise
    if applied:
        logger.info("Applied migrations: %s", applied)

    pricing = PRICING_TABLE.with_overrides(config.pricing) if config.pricing else PRICING_TABLE
    usage_client = UsageCliClient(
        tool_command=config.audit.tool_command,
        local_timeout=config.audit.local_timeout,
        remote_timeout=config.audit.remote_timeout,
        transport=transport,
        output_excerpt_chars=config.audit.output_excerpt_chars,
    )
    audit = AuditReconciliationService(
        database,
        usage_client,
        host_provider=config.enabled_remotes,
        pricing=pricing,
    )

    return Runtime(
        config=config,
        database=database,
        migrator=migrator,
        events=EventStore(database),
        aggregation=AggregationEngine(database, config.stats.slow_query_threshold_ms),
        audit=audit,
        scheduler=AuditScheduler(audit, database),
    )
