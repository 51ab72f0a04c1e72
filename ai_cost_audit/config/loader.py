"""
Configuration management and loading.

Handles application settings read from a YAML file.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from ai_cost_audit.audit.transport import RemoteHost
from ai_cost_audit.audit.usage_cli import (
    DEFAULT_EXCERPT_CHARS,
    DEFAULT_LOCAL_TIMEOUT,
    DEFAULT_REMOTE_TIMEOUT,
    DEFAULT_TOOL_COMMAND,
)
from ai_cost_audit.core.aggregation import DEFAULT_SLOW_THRESHOLD_MS
from ai_cost_audit.core.pricing import ModelPricing
from ai_cost_audit.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the stats database."""
    path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Validate path is not empty."""
        if not self.path:
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class StatsConfig:
    """Aggregation settings."""
    slow_query_threshold_ms: float = DEFAULT_SLOW_THRESHOLD_MS

    def __post_init__(self):
        """Validate threshold is positive."""
        if self.slow_query_threshold_ms <= 0:
            raise ValueError("slow_query_threshold_ms must be > 0")


@dataclass(frozen=True)
class AuditConfig:
    """External usage tool invocation settings."""
    tool_command: Tuple[str, ...] = DEFAULT_TOOL_COMMAND
    local_timeout: float = DEFAULT_LOCAL_TIMEOUT
    remote_timeout: float = DEFAULT_REMOTE_TIMEOUT
    output_excerpt_chars: int = DEFAULT_EXCERPT_CHARS

    def __post_init__(self):
        """Validate audit settings."""
        if not self.tool_command:
            raise ValueError("tool_command cannot be empty")
        if self.local_timeout <= 0:
            raise ValueError("local_timeout must be > 0")
        if self.remote_timeout <= 0:
            raise ValueError("remote_timeout must be > 0")
        if self.output_excerpt_chars <= 0:
            raise ValueError("output_excerpt_chars must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    remotes: Tuple[RemoteHost, ...] = ()
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)

    def enabled_remotes(self) -> List[RemoteHost]:
        """Remote hosts that take part in audits."""
        return [remote for remote in self.remotes if remote.enabled]


def default_config() -> AppConfig:
    """Configuration used when no file is given."""
    return AppConfig()


def load_config(path: str) -> AppConfig:
    """Load and validate application configuration from YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys are
    rejected in every section.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'stats', 'audit', 'remotes', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return AppConfig(
        database=_parse_database(raw_config.get('database', {})),
        stats=_parse_stats(raw_config.get('stats', {})),
        audit=_parse_audit(raw_config.get('audit', {})),
        remotes=_parse_remotes(raw_config.get('remotes', [])),
        pricing=_parse_pricing(raw_config.get('pricing', {})),
    )


def _section(data: Any, name: str, allowed_keys: set) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _parse_database(data: Any) -> DatabaseConfig:
    data = _section(data, 'database', {'path'})
    if 'path' not in data:
        return DatabaseConfig()
    if not isinstance(data['path'], str):
        raise ValueError("'database.path' must be a string")
    return DatabaseConfig(path=data['path'])


def _parse_stats(data: Any) -> StatsConfig:
    data = _section(data, 'stats', {'slow_query_threshold_ms'})
    if 'slow_query_threshold_ms' not in data:
        return StatsConfig()
    return StatsConfig(
        slow_query_threshold_ms=_number(
            data['slow_query_threshold_ms'], 'stats.slow_query_threshold_ms'
        )
    )


def _parse_audit(data: Any) -> AuditConfig:
    data = _section(
        data, 'audit',
        {'tool_command', 'local_timeout', 'remote_timeout', 'output_excerpt_chars'},
    )
    defaults = AuditConfig()

    tool_command = data.get('tool_command', defaults.tool_command)
    if isinstance(tool_command, str):
        tool_command = tool_command.split()
    if not isinstance(tool_command, (list, tuple)) or not all(
        isinstance(part, str) for part in tool_command
    ):
        raise ValueError("'audit.tool_command' must be a string or a list of strings")

    excerpt = data.get('output_excerpt_chars', defaults.output_excerpt_chars)
    if isinstance(excerpt, bool) or not isinstance(excerpt, int):
        raise ValueError("'audit.output_excerpt_chars' must be an integer")

    return AuditConfig(
        tool_command=tuple(tool_command),
        local_timeout=_number(data.get('local_timeout', defaults.local_timeout), 'audit.local_timeout'),
        remote_timeout=_number(
            data.get('remote_timeout', defaults.remote_timeout), 'audit.remote_timeout'
        ),
        output_excerpt_chars=excerpt,
    )


def _parse_remotes(data: Any) -> Tuple[RemoteHost, ...]:
    if not isinstance(data, list):
        raise ValueError("'remotes' must be a list")

    allowed_keys = {'name', 'host', 'user', 'port', 'identity_file', 'enabled'}
    remotes = []
    names = set()
    for index, item in enumerate(data):
        path = f"remotes[{index}]"
        item = _section(item, path, allowed_keys)
        for key in ('name', 'host'):
            if key not in item:
                raise ValueError(f"Missing required '{key}' in {path}")
            if not isinstance(item[key], str):
                raise ValueError(f"'{key}' in {path} must be a string")
        if item['name'] in names:
            raise ValueError(f"Duplicate remote name: {item['name']}")
        names.add(item['name'])

        port = item.get('port', 22)
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"'port' in {path} must be an integer")
        enabled = item.get('enabled', True)
        if not isinstance(enabled, bool):
            raise ValueError(f"'enabled' in {path} must be true or false")

        remotes.append(RemoteHost(
            name=item['name'],
            host=item['host'],
            user=item.get('user'),
            port=port,
            identity_file=item.get('identity_file'),
            enabled=enabled,
        ))
    return tuple(remotes)


def _parse_pricing(data: Any) -> Dict[str, ModelPricing]:
    """Parse per-model rate overrides.

    Args:
        data: Mapping of model id to its four per-million rates

    Returns:
        Validated ModelPricing per model id

    Raises:
        ValueError: If a rate is missing, unknown or not a number
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    rate_keys = (
        'input_per_million', 'output_per_million',
        'cache_read_per_million', 'cache_write_per_million',
    )
    pricing = {}
    for model, rates in data.items():
        path = f"pricing.{model}"
        rates = _section(rates, path, set(rate_keys))
        parsed = {}
        for key in rate_keys:
            if key not in rates:
                raise ValueError(f"Missing required '{key}' in {path}")
            try:
                parsed[key] = Decimal(str(rates[key]))
            except InvalidOperation:
                raise ValueError(f"'{key}' in {path} must be a number")
        pricing[str(model)] = ModelPricing(**parsed)
    return pricing
