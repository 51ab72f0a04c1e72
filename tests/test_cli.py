"""
Tests for the CLI interface.
"""
import json
import os
import subprocess
import tempfile
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from ai_cost_audit.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL

runner = CliRunner()

AUTHORITATIVE_DAY = {
    "date": "2026-02-01",
    "inputTokens": 1000,
    "outputTokens": 100,
    "cacheCreationTokens": 0,
    "cacheReadTokens": 0,
    "totalTokens": 1100,
    "totalCost": 0.5,
    "modelsUsed": [],
    "modelBreakdowns": [],
}


@pytest.fixture
def config_path():
    """Config file pointing at a throwaway database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "config.yaml")
        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump({
                "database": {"path": os.path.join(temp_dir, "stats.db")},
                "audit": {"tool_command": "ccusage"},
            }, f)
        yield path


@pytest.fixture
def mock_usage_tool():
    """Patch the usage tool subprocess call."""
    with patch('ai_cost_audit.audit.usage_cli.subprocess.run') as mock_run:
        mock_run.return_value = subprocess.CompletedProcess(
            args=[], returncode=0, stdout=json.dumps({"daily": [AUTHORITATIVE_DAY]}), stderr=""
        )
        yield mock_run


def invoke(config_path, *args):
    return runner.invoke(app, ["--config", config_path, *args])


class TestCLI:
    """Test CLI commands."""

    def test_no_command_shows_hint(self, config_path):
        result = invoke(config_path)
        assert result.exit_code == EXIT_CODE_PASS
        assert "--help" in result.output

    def test_init(self, config_path):
        """Test database initialization reports the schema version."""
        result = invoke(config_path, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database ready" in result.output

    def test_migrations(self, config_path):
        result = invoke(config_path, "migrations")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Schema version" in result.output

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", "/nonexistent/config.yaml", "init"])
        assert result.exit_code == EXIT_CODE_FAIL

    def test_events_empty(self, config_path):
        result = invoke(config_path, "events", "--range", "all")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage facts found" in result.output

    def test_invalid_range(self, config_path):
        result = invoke(config_path, "stats", "--range", "fortnight")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "time range must be one of" in result.output

    def test_demo_then_stats(self, config_path):
        """Test seeding demo data and reading aggregated stats."""
        result = invoke(config_path, "demo")
        assert result.exit_code == EXIT_CODE_PASS
        assert "demo usage facts" in result.output

        result = invoke(config_path, "stats", "--range", "all")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage statistics" in result.output
        assert "By agent" in result.output

        result = invoke(config_path, "events", "--range", "all", "--agent", "codex", "-n", "3")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage facts" in result.output

    def test_stats_json(self, config_path):
        result = invoke(config_path, "stats", "--json")
        assert result.exit_code == EXIT_CODE_PASS
        assert json.loads(result.output)["total_queries"] == 0


class TestAuditCLI:
    """Test audit subcommands."""

    def test_audit_run_and_history(self, config_path, mock_usage_tool):
        """Test a saved audit appears in history and trend."""
        result = invoke(config_path, "audit", "run", "--start", "2026-02-01", "--end", "2026-02-01")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage Audit 2026-02-01 to 2026-02-01" in result.output

        args = mock_usage_tool.call_args[0][0]
        assert args == ["ccusage", "daily", "--json", "--since", "20260201", "--until", "20260201"]

        result = invoke(config_path, "audit", "history")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Audit history" in result.output

        result = invoke(config_path, "audit", "trend")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Audit trend" in result.output

    def test_audit_run_no_save(self, config_path, mock_usage_tool):
        result = invoke(config_path, "audit", "run", "--start", "2026-02-01", "--end", "2026-02-01",
                        "--no-save", "--json")
        assert result.exit_code == EXIT_CODE_PASS
        assert '"period"' in result.output

        result = invoke(config_path, "audit", "history")
        assert "No audit snapshots yet" in result.output

    def test_audit_tool_missing(self, config_path):
        """Test a missing usage tool fails with an install hint."""
        with patch('ai_cost_audit.audit.usage_cli.subprocess.run', side_effect=FileNotFoundError("ccusage")):
            result = invoke(config_path, "audit", "run", "--start", "2026-02-01")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Node.js" in result.output

    def test_audit_no_data_anywhere(self, config_path):
        """Test the no-remotes message when there is no local usage history."""
        no_data = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="No usage data found")
        with patch('ai_cost_audit.audit.usage_cli.subprocess.run', return_value=no_data):
            result = invoke(config_path, "audit", "run", "--start", "2026-02-01")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "remote" in result.output

    def test_audit_invalid_dates(self, config_path, mock_usage_tool):
        result = invoke(config_path, "audit", "run", "--start", "2026-02-05", "--end", "2026-02-01")
        assert result.exit_code == EXIT_CODE_FAIL
        mock_usage_tool.assert_not_called()

    def test_schedule_update(self, config_path):
        """Test enabling a schedule persists it."""
        result = invoke(config_path, "audit", "schedule", "--weekly", "--weekly-day", "1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Audit schedule updated" in result.output

        result = invoke(config_path, "audit", "schedule")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Audit schedule updated" not in result.output
        assert "weekly" in result.output

    def test_schedule_invalid_time(self, config_path):
        result = invoke(config_path, "audit", "schedule", "--daily-time", "25:00")
        assert result.exit_code == EXIT_CODE_FAIL
