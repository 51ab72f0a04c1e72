"""
CLI interface for AI Cost Audit.

Provides command-line access to the stats store, aggregations and audits.
"""

import json
import logging
import sys
from datetime import date, datetime
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_cost_audit.audit.errors import AuditError, UsageToolNotFoundError
from ai_cost_audit.audit.models import AUDIT_TYPES, AuditResult, EntryStatus
from ai_cost_audit.audit.scheduler import AuditScheduleConfig, load_schedule_config
from ai_cost_audit.config.loader import default_config, load_config
from ai_cost_audit.demo.seed_demo_data import seed_demo_data
from ai_cost_audit.runtime import Runtime, bootstrap
from ai_cost_audit.storage.models import StatsFilters

app = typer.Typer()
audit_app = typer.Typer(help="Compare local usage against the authoritative usage report.")
app.add_typer(audit_app, name="audit")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATUS_STYLES = {
    EntryStatus.MATCH: "green",
    EntryStatus.MINOR: "yellow",
    EntryStatus.MAJOR: "red",
    EntryStatus.MISSING: "magenta",
}


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Route library logging through rich."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    logging.getLogger("ai_cost_audit").setLevel(level)


def _runtime(ctx: typer.Context) -> Runtime:
    config_path = (ctx.obj or {}).get("config_path")
    config = load_config(config_path) if config_path else default_config()
    return bootstrap(config)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _format_tokens(count: int) -> str:
    return f"{count:,}"


def _format_timestamp(epoch_ms: Optional[int]) -> str:
    if epoch_ms is None:
        return "-"
    return datetime.fromtimestamp(epoch_ms / 1000).strftime("%Y-%m-%d %H:%M")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show info logs"),
    debug: bool = typer.Option(False, "--debug", help="Show debug logs"),
):
    """AI Cost Audit CLI."""
    setup_logging(verbose=verbose, debug=debug)
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Audit - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Create the stats database and apply all migrations."""
    try:
        with _runtime(ctx) as runtime:
            version = runtime.migrator.current_version()
            path = runtime.database.db_path
        console.print(f"[green]✓[/] Database ready at {path} (schema version {version})")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def migrations(ctx: typer.Context):
    """Show schema version and migration history."""
    try:
        with _runtime(ctx) as runtime:
            migrator = runtime.migrator
            current = migrator.current_version()
            target = migrator.target_version()
            history = migrator.migration_history()
    except Exception as e:
        _fail(str(e))

    console.print(f"Schema version: [bold]{current}[/] (target {target})")
    table = Table(title="Migration history")
    table.add_column("Version", justify="right")
    table.add_column("Description")
    table.add_column("Applied")
    table.add_column("Status")
    for record in history:
        style = "green" if record.status == "success" else "red"
        status = record.status if not record.error_message else f"{record.status}: {record.error_message}"
        table.add_row(
            str(record.version),
            record.description,
            _format_timestamp(record.applied_at),
            f"[{style}]{status}[/]",
        )
    console.print(table)


@app.command()
def events(
    ctx: typer.Context,
    time_range: str = typer.Option("week", "--range", "-r", help="day, week, month, year or all"),
    agent_type: Optional[str] = typer.Option(None, "--agent", help="Filter by agent type"),
    source: Optional[str] = typer.Option(None, "--source", help="Filter by source (user/auto)"),
    project: Optional[str] = typer.Option(None, "--project", help="Filter by project path"),
    session: Optional[str] = typer.Option(None, "--session", help="Filter by session id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows to show"),
):
    """List recorded usage facts, newest first."""
    filters = StatsFilters(
        agent_type=agent_type, source=source, project_path=project, session_id=session
    )
    try:
        with _runtime(ctx) as runtime:
            facts = runtime.events.query(time_range, filters)
    except ValueError as e:
        _fail(str(e))

    if not facts:
        console.print("\n[bold yellow]No usage facts found for this range[/]\n")
        return

    table = Table(title=f"Usage facts ({len(facts)} total)")
    table.add_column("Started")
    table.add_column("Agent")
    table.add_column("Source")
    table.add_column("Duration", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Model")
    for fact in facts[:limit]:
        table.add_row(
            _format_timestamp(fact.start_time),
            fact.agent_type,
            fact.source,
            f"{fact.duration / 1000:.1f}s",
            "-" if fact.output_tokens is None else _format_tokens(fact.output_tokens),
            fact.local_pricing_model or fact.external_model or "-",
        )
    console.print(table)


@app.command()
def stats(
    ctx: typer.Context,
    time_range: str = typer.Option("week", "--range", "-r", help="day, week, month, year or all"),
    as_json: bool = typer.Option(False, "--json", help="Print the full aggregation as JSON"),
):
    """Show aggregated usage statistics."""
    try:
        with _runtime(ctx) as runtime:
            result = runtime.aggregation.get_aggregated_stats(time_range)
    except ValueError as e:
        _fail(str(e))

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    console.print(f"\n[bold]Usage statistics[/] ({result.time_range})")
    console.print("-" * 40)
    console.print(f"Queries: {result.total_queries:,}")
    console.print(f"Average duration: {result.avg_duration / 1000:.1f}s")
    console.print(f"Sessions: {result.total_sessions:,}")
    console.print(
        f"Tokens: {_format_tokens(result.total_input_tokens)} in / "
        f"{_format_tokens(result.total_output_tokens)} out "
        f"({result.queries_with_token_data} of {result.total_queries} queries with token data)"
    )
    console.print(f"Average throughput: {result.avg_tokens_per_second:.1f} tokens/s")
    console.print(f"Total cost: {_format_currency(result.total_cost_usd)}")

    if result.by_agent:
        table = Table(title="By agent")
        table.add_column("Agent")
        table.add_column("Queries", justify="right")
        table.add_column("Output tokens", justify="right")
        table.add_column("Tokens/s", justify="right")
        for agent, agent_stats in sorted(result.by_agent.items()):
            table.add_row(
                agent,
                str(agent_stats.count),
                _format_tokens(agent_stats.total_output_tokens),
                f"{agent_stats.avg_tokens_per_second:.1f}",
            )
        console.print(table)


@app.command()
def demo(ctx: typer.Context):
    """Insert a week of sample usage facts."""
    with _runtime(ctx) as runtime:
        count = seed_demo_data(runtime.events)
    console.print(f"[green]✓[/] Inserted {count} demo usage facts")


# ============================================================================
# Audit commands
# ============================================================================


def _display_audit_result(result: AuditResult) -> None:
    """Display audit results in a clean, financial format."""
    console.print(f"\n[bold]Usage Audit {result.period_start} to {result.period_end}[/bold]")
    console.print("-" * 40)

    tokens = result.tokens
    console.print(
        f"Tokens: {_format_tokens(tokens.authoritative.total_tokens)} authoritative / "
        f"{_format_tokens(tokens.local.total_tokens)} local "
        f"({tokens.percent_diff:.2f}% difference)"
    )
    costs = result.costs
    console.print(
        f"Cost: {_format_currency(costs.authoritative_total)} authoritative / "
        f"{_format_currency(costs.local_reported)} reported / "
        f"{_format_currency(costs.local_calculated)} calculated"
    )
    console.print(f"Savings: {_format_currency(costs.savings)}")

    summary = result.summary
    console.print(
        f"Entries: {summary.total} ([green]{summary.match} match[/], "
        f"[yellow]{summary.minor} minor[/], [red]{summary.major} major[/], "
        f"[magenta]{summary.missing} missing[/])"
    )

    if result.entries:
        table = Table(title="Entries")
        table.add_column("Date")
        table.add_column("Model")
        table.add_column("Billing")
        table.add_column("Local tokens", justify="right")
        table.add_column("Local cost", justify="right")
        table.add_column("Status")
        for entry in result.entries:
            style = _STATUS_STYLES[entry.status]
            table.add_row(
                entry.date,
                entry.model,
                entry.billing_mode,
                _format_tokens(entry.local_tokens.total_tokens),
                _format_currency(entry.local_cost),
                f"[{style}]{entry.status.value} ({entry.discrepancy_percent:.1f}%)[/]",
            )
        console.print(table)

    max_mode = result.billing_mode_breakdown.max
    if max_mode.entry_count:
        console.print(f"Max plan cache savings: {_format_currency(max_mode.cache_savings)}")

    for anomaly in result.anomalies:
        style = "red" if anomaly.severity.value == "error" else "yellow"
        console.print(f"[{style}]{anomaly.severity.value.upper()}[/] {anomaly.description}")


@audit_app.command("run")
def audit_run(
    ctx: typer.Context,
    start: Optional[str] = typer.Option(None, "--start", "-s", help="First date (YYYY-MM-DD)"),
    end: Optional[str] = typer.Option(None, "--end", "-e", help="Last date (YYYY-MM-DD), default today"),
    audit_type: str = typer.Option("manual", "--type", "-t", help=f"One of {', '.join(AUDIT_TYPES)}"),
    include_remotes: bool = typer.Option(
        False, "--include-remotes", help="Also merge usage from configured remote hosts"
    ),
    save: bool = typer.Option(True, "--save/--no-save", help="Store the result as a snapshot"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
):
    """Run an audit for a date range."""
    end_date = end or date.today().isoformat()
    start_date = start or end_date
    try:
        with _runtime(ctx) as runtime:
            result = runtime.audit.run_audit(
                start_date,
                end_date,
                audit_type=audit_type,
                include_remotes=include_remotes,
                save=save,
            )
    except UsageToolNotFoundError as e:
        _fail(f"{e}\nInstall Node.js (for npx) or set audit.tool_command in the config.")
    except (AuditError, ValueError) as e:
        _fail(str(e))

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _display_audit_result(result)


@audit_app.command("history")
def audit_history(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of snapshots"),
):
    """Show recent audit snapshots."""
    with _runtime(ctx) as runtime:
        results = runtime.audit.get_history(limit)

    if not results:
        console.print("\n[bold yellow]No audit snapshots yet[/]\n")
        return

    table = Table(title="Audit history")
    table.add_column("Period")
    table.add_column("Generated")
    table.add_column("Entries", justify="right")
    table.add_column("Major", justify="right")
    table.add_column("Anomalies", justify="right")
    table.add_column("Discrepancy", justify="right")
    for result in results:
        table.add_row(
            f"{result.period_start} to {result.period_end}",
            _format_timestamp(result.generated_at),
            str(result.summary.total),
            str(result.summary.major),
            str(len(result.anomalies)),
            _format_currency(result.costs.discrepancy),
        )
    console.print(table)


@audit_app.command("trend")
def audit_trend(
    ctx: typer.Context,
    limit: int = typer.Option(30, "--limit", "-n", help="Number of snapshots"),
):
    """Show token match and cost discrepancy over recent snapshots."""
    with _runtime(ctx) as runtime:
        points = runtime.audit.get_trend(limit)

    if not points:
        console.print("\n[bold yellow]No audit snapshots yet[/]\n")
        return

    table = Table(title="Audit trend")
    table.add_column("Created")
    table.add_column("Type")
    table.add_column("Period")
    table.add_column("Token match", justify="right")
    table.add_column("Cost discrepancy", justify="right")
    table.add_column("Anomalies", justify="right")
    for point in points:
        table.add_row(
            _format_timestamp(point.created_at),
            point.audit_type,
            f"{point.period_start} to {point.period_end}",
            f"{point.token_match_percent or 0:.2f}%",
            _format_currency(point.cost_discrepancy_usd or 0.0),
            str(point.anomaly_count or 0),
        )
    console.print(table)


@audit_app.command("schedule")
def audit_schedule(
    ctx: typer.Context,
    daily: Optional[bool] = typer.Option(None, "--daily/--no-daily", help="Enable daily audits"),
    daily_time: Optional[str] = typer.Option(None, "--daily-time", help="Daily run time (HH:MM)"),
    weekly: Optional[bool] = typer.Option(None, "--weekly/--no-weekly", help="Enable weekly audits"),
    weekly_day: Optional[int] = typer.Option(
        None, "--weekly-day", help="Weekly run day, 0=Sunday to 6=Saturday"
    ),
    monthly: Optional[bool] = typer.Option(None, "--monthly/--no-monthly", help="Enable monthly audits"),
):
    """Show or change the audit schedule."""
    with _runtime(ctx) as runtime:
        current = load_schedule_config(runtime.database)
        changes = {
            "daily_enabled": daily,
            "daily_time": daily_time,
            "weekly_enabled": weekly,
            "weekly_day": weekly_day,
            "monthly_enabled": monthly,
        }
        changes = {key: value for key, value in changes.items() if value is not None}
        if changes:
            values = {
                "daily_enabled": current.daily_enabled,
                "daily_time": current.daily_time,
                "weekly_enabled": current.weekly_enabled,
                "weekly_day": current.weekly_day,
                "monthly_enabled": current.monthly_enabled,
            }
            values.update(changes)
            try:
                current = AuditScheduleConfig(**values)
            except ValueError as e:
                _fail(str(e))
            runtime.scheduler.update_config(current)
            console.print("[green]✓[/] Audit schedule updated")
        status = runtime.scheduler.schedule_status()

    table = Table(title="Audit schedule")
    table.add_column("Schedule")
    table.add_column("Enabled")
    table.add_column("Last run")
    table.add_column("Last status")
    for schedule_type in ("daily", "weekly", "monthly"):
        row = status.get(schedule_type)
        table.add_row(
            schedule_type,
            "yes" if current.is_enabled(schedule_type) else "no",
            _format_timestamp(row.last_run_at) if row else "-",
            (row.last_run_status or "-") if row else "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()
