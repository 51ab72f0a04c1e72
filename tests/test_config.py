"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for application configs.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from ai_cost_audit.config.loader import (
    AppConfig,
    AuditConfig,
    DatabaseConfig,
    StatsConfig,
    default_config,
    load_config,
)
from ai_cost_audit.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_data = {
            "database": {"path": "/tmp/stats.db"},
            "stats": {"slow_query_threshold_ms": 250},
            "audit": {
                "tool_command": "ccusage",
                "local_timeout": 30,
                "remote_timeout": 90,
                "output_excerpt_chars": 120,
            },
            "remotes": [
                {"name": "build", "host": "build.example.org", "user": "dev", "port": 2222},
                {"name": "laptop", "host": "10.0.0.2", "enabled": False},
            ],
            "pricing": {
                "claude-opus-4-5": {
                    "input_per_million": 5,
                    "output_per_million": 25,
                    "cache_read_per_million": 0.5,
                    "cache_write_per_million": 6.25,
                }
            },
        }

        config = load_config(self._write_config(config_data))

        assert config.database.path == "/tmp/stats.db"
        assert config.stats.slow_query_threshold_ms == 250.0
        assert config.audit.tool_command == ("ccusage",)
        assert config.audit.local_timeout == 30.0
        assert config.audit.output_excerpt_chars == 120
        assert [r.name for r in config.remotes] == ["build", "laptop"]
        assert config.remotes[0].destination == "dev@build.example.org"
        assert [r.name for r in config.enabled_remotes()] == ["build"]
        assert config.pricing["claude-opus-4-5"].cache_read_per_million == Decimal("0.5")

    def test_sections_are_optional(self):
        """Test that omitted sections fall back to defaults."""
        config = load_config(self._write_config({"database": {"path": "x.db"}}))

        assert config.stats == StatsConfig()
        assert config.audit == AuditConfig()
        assert config.remotes == ()
        assert config.pricing == {}

    def test_tool_command_list(self):
        config = load_config(self._write_config({"audit": {"tool_command": ["bunx", "ccusage"]}}))
        assert config.audit.tool_command == ("bunx", "ccusage")

    def test_defaults(self):
        config = default_config()
        assert isinstance(config, AppConfig)
        assert config.database == DatabaseConfig(path=DEFAULT_DB_PATH)
        assert config.enabled_remotes() == []

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(os.path.join(self.temp_dir, "absent.yaml"))

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("database: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_config(config_path)

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_config(self._write_config({"budget": {"daily": 10}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in audit"):
            load_config(self._write_config({"audit": {"timeout": 10}}))

    def test_remote_requires_host(self):
        with pytest.raises(ValueError, match="Missing required 'host' in remotes\\[0\\]"):
            load_config(self._write_config({"remotes": [{"name": "a"}]}))

    def test_duplicate_remote_names(self):
        remotes = [{"name": "a", "host": "h1"}, {"name": "a", "host": "h2"}]
        with pytest.raises(ValueError, match="Duplicate remote name"):
            load_config(self._write_config({"remotes": remotes}))

    def test_remote_port_must_be_integer(self):
        with pytest.raises(ValueError, match="'port' in remotes\\[0\\] must be an integer"):
            load_config(self._write_config({"remotes": [{"name": "a", "host": "h", "port": "22"}]}))

    def test_pricing_requires_all_rates(self):
        pricing = {"my-model": {"input_per_million": 1, "output_per_million": 2}}
        with pytest.raises(ValueError, match="Missing required 'cache_read_per_million'"):
            load_config(self._write_config({"pricing": pricing}))

    def test_non_positive_timeout(self):
        with pytest.raises(ValueError, match="local_timeout must be > 0"):
            load_config(self._write_config({"audit": {"local_timeout": 0}}))

    def test_threshold_must_be_number(self):
        with pytest.raises(ValueError, match="must be a number"):
            load_config(self._write_config({"stats": {"slow_query_threshold_ms": "fast"}}))
