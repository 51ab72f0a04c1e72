"""
Authoritative usage acquisition.

Runs the external usage-reporting CLI (``ccusage`` by default) locally or on
a remote host and turns its JSON report into canonical ``DailyUsage``
records. Different tool versions name the same fields differently; all of
that is absorbed by ``normalize_usage_records`` so comparison code only ever
sees one shape.
"""

import json
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ai_cost_audit.core.token_counter import TokenCounts

from .errors import (
    MalformedUsageOutputError,
    NoLocalUsageDataError,
    RemoteFetchError,
    UsageToolNotFoundError,
    UsageToolTimeoutError,
)
from .transport import CommandResult, RemoteHost, RemoteShellTransport, SshTransport

logger = logging.getLogger(__name__)

DEFAULT_TOOL_COMMAND = ("npx", "ccusage@latest")
DEFAULT_LOCAL_TIMEOUT = 60.0
DEFAULT_REMOTE_TIMEOUT = 120.0
DEFAULT_EXCERPT_CHARS = 200

VALID_PERIODS = ("daily", "weekly", "monthly")

# Diagnostics the tool prints instead of JSON when there is no history at all.
_NO_DATA_MARKERS = (
    "no usage data",
    "no claude usage data",
    "no valid claude data directories",
)
_COMMAND_NOT_FOUND = 127
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")

DateLike = Union[str, date]


@dataclass(frozen=True)
class ModelUsage:
    """One model's share of a day in the authoritative report."""
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0

    @property
    def tokens(self) -> TokenCounts:
        return TokenCounts(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_creation_tokens,
        )


@dataclass(frozen=True)
class DailyUsage:
    """One day of authoritative usage, in canonical form."""
    date: str  # ISO YYYY-MM-DD
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    models_used: Tuple[str, ...] = ()
    model_breakdowns: Tuple[ModelUsage, ...] = field(default_factory=tuple)

    @property
    def tokens(self) -> TokenCounts:
        return TokenCounts(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_creation_tokens,
        )


# ============================================================================
# Normalization
# ============================================================================

_DAY_FIELDS = {
    "date": ("date", "day", "week", "month"),
    "input_tokens": ("inputTokens", "input_tokens"),
    "output_tokens": ("outputTokens", "output_tokens"),
    "cache_creation_tokens": (
        "cacheCreationTokens", "cache_creation_tokens", "cacheWriteTokens", "cache_write_tokens",
    ),
    "cache_read_tokens": ("cacheReadTokens", "cache_read_tokens"),
    "total_tokens": ("totalTokens", "total_tokens"),
    "total_cost": ("totalCost", "total_cost", "cost", "costUSD"),
    "models_used": ("modelsUsed", "models_used"),
    "model_breakdowns": ("modelBreakdowns", "model_breakdowns"),
}

_MODEL_FIELDS = {
    "model_name": ("modelName", "model_name", "model"),
    "input_tokens": _DAY_FIELDS["input_tokens"],
    "output_tokens": _DAY_FIELDS["output_tokens"],
    "cache_creation_tokens": _DAY_FIELDS["cache_creation_tokens"],
    "cache_read_tokens": _DAY_FIELDS["cache_read_tokens"],
    "cost": ("cost", "totalCost", "total_cost", "costUSD"),
}


def _pick(record: Dict[str, Any], names: Sequence[str], default=None):
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return default


def _int(value) -> int:
    return int(value or 0)


def _float(value) -> float:
    return float(value or 0.0)


def normalize_date(value: Any) -> str:
    """Normalize ``YYYY-MM-DD``, ``YYYYMMDD`` or a date to ISO form.

    Values the tool reports for coarser periods (``2026-02`` for a month)
    are returned unchanged.
    """
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    match = _COMPACT_DATE.match(text)
    if match:
        return "-".join(match.groups())
    return text


def compact_date(value: DateLike) -> str:
    """Format a date the way the tool's ``--since``/``--until`` expect it."""
    return normalize_date(value).replace("-", "")


def _normalize_model(record: Any, excerpt_chars: int) -> ModelUsage:
    if not isinstance(record, dict):
        raise MalformedUsageOutputError("Model breakdown is not an object", repr(record)[:excerpt_chars])
    return ModelUsage(
        model_name=str(_pick(record, _MODEL_FIELDS["model_name"], "unknown")),
        input_tokens=_int(_pick(record, _MODEL_FIELDS["input_tokens"])),
        output_tokens=_int(_pick(record, _MODEL_FIELDS["output_tokens"])),
        cache_creation_tokens=_int(_pick(record, _MODEL_FIELDS["cache_creation_tokens"])),
        cache_read_tokens=_int(_pick(record, _MODEL_FIELDS["cache_read_tokens"])),
        cost=_float(_pick(record, _MODEL_FIELDS["cost"])),
    )


def _list_field(record: Dict[str, Any], names: Sequence[str], excerpt_chars: int) -> list:
    value = _pick(record, names, [])
    if not isinstance(value, list):
        raise MalformedUsageOutputError(
            f"Usage record field {names[0]!r} is not a list", repr(record)[:excerpt_chars]
        )
    return value


def _normalize_day(record: Any, excerpt_chars: int) -> DailyUsage:
    if not isinstance(record, dict):
        raise MalformedUsageOutputError("Usage record is not an object", repr(record)[:excerpt_chars])
    raw_date = _pick(record, _DAY_FIELDS["date"])
    if raw_date is None:
        raise MalformedUsageOutputError("Usage record has no date", repr(record)[:excerpt_chars])

    breakdowns = tuple(
        _normalize_model(item, excerpt_chars)
        for item in _list_field(record, _DAY_FIELDS["model_breakdowns"], excerpt_chars)
    )
    models_used = tuple(
        str(model) for model in _list_field(record, _DAY_FIELDS["models_used"], excerpt_chars)
    )
    input_tokens = _int(_pick(record, _DAY_FIELDS["input_tokens"]))
    output_tokens = _int(_pick(record, _DAY_FIELDS["output_tokens"]))
    cache_creation = _int(_pick(record, _DAY_FIELDS["cache_creation_tokens"]))
    cache_read = _int(_pick(record, _DAY_FIELDS["cache_read_tokens"]))
    total_tokens = _pick(record, _DAY_FIELDS["total_tokens"])
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens + cache_creation + cache_read

    return DailyUsage(
        date=normalize_date(raw_date),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_creation_tokens=cache_creation,
        cache_read_tokens=cache_read,
        total_tokens=int(total_tokens),
        total_cost=_float(_pick(record, _DAY_FIELDS["total_cost"])),
        models_used=models_used,
        model_breakdowns=breakdowns,
    )


def normalize_usage_records(
    records: Iterable[Any],
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
) -> List[DailyUsage]:
    """Map raw day records from any tool version onto ``DailyUsage``.

    Args:
        records: Day objects as decoded from the tool's JSON
        excerpt_chars: Longest slice of an offending record quoted in errors

    Returns:
        Canonical records in input order

    Raises:
        MalformedUsageOutputError: If a record is not an object, has no
            date, or holds a field of the wrong type
    """
    normalized = []
    for record in records:
        try:
            normalized.append(_normalize_day(record, excerpt_chars))
        except (TypeError, ValueError) as exc:
            raise MalformedUsageOutputError(
                f"Usage record has an invalid field ({exc})", repr(record)[:excerpt_chars]
            ) from exc
    return normalized


# ============================================================================
# Output parsing
# ============================================================================


def _is_no_data_message(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _NO_DATA_MARKERS)


def _excerpt(text: str, limit: int) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[:limit] + "..."


def parse_usage_output(
    stdout: str,
    period: str,
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
) -> List[DailyUsage]:
    """Parse the tool's stdout into canonical day records.

    The first non-whitespace character is checked before decoding: the tool
    prints plain-text diagnostics on some failures and those must not
    surface as a bare JSON decode error.

    Raises:
        NoLocalUsageDataError: If the tool reports that no history exists
        MalformedUsageOutputError: If the output is not the expected JSON
    """
    stripped = stdout.lstrip()
    if not stripped or stripped[0] not in "{[":
        if _is_no_data_message(stdout):
            raise NoLocalUsageDataError(stdout.strip())
        raise MalformedUsageOutputError(
            "Usage tool did not return JSON", _excerpt(stdout, excerpt_chars)
        )

    try:
        document = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise MalformedUsageOutputError(
            f"Usage tool returned invalid JSON ({exc.msg})", _excerpt(stdout, excerpt_chars)
        ) from exc

    if isinstance(document, list):
        records = document
    else:
        records = _pick(document, (period, "daily", "data"), [])
    if not isinstance(records, list):
        raise MalformedUsageOutputError(
            f"Expected a list of {period} records", _excerpt(stdout, excerpt_chars)
        )
    return normalize_usage_records(records, excerpt_chars)


# ============================================================================
# Client
# ============================================================================


class UsageCliClient:
    """Invokes the usage-reporting CLI and returns canonical records.

    Local runs use ``subprocess`` directly; remote runs go through a
    ``RemoteShellTransport`` with a larger timeout to absorb connection
    latency.
    """

    def __init__(
        self,
        tool_command: Sequence[str] = DEFAULT_TOOL_COMMAND,
        local_timeout: float = DEFAULT_LOCAL_TIMEOUT,
        remote_timeout: float = DEFAULT_REMOTE_TIMEOUT,
        transport: Optional[RemoteShellTransport] = None,
        output_excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
    ):
        if not tool_command:
            raise ValueError("tool_command cannot be empty")
        self.tool_command = list(tool_command)
        self.local_timeout = local_timeout
        self.remote_timeout = remote_timeout
        self.transport = transport if transport is not None else SshTransport()
        self.output_excerpt_chars = output_excerpt_chars

    def build_command(
        self,
        period: str,
        since: Optional[DateLike] = None,
        until: Optional[DateLike] = None,
    ) -> List[str]:
        """Argument vector for one report: ``<tool> <period> --json [...]``."""
        if period not in VALID_PERIODS:
            raise ValueError(f"period must be one of {VALID_PERIODS}, got {period!r}")
        args = self.tool_command + [period, "--json"]
        if since is not None:
            args += ["--since", compact_date(since)]
        if until is not None:
            args += ["--until", compact_date(until)]
        return args

    def fetch_authoritative(
        self,
        period: str = "daily",
        since: Optional[DateLike] = None,
        until: Optional[DateLike] = None,
    ) -> List[DailyUsage]:
        """Run the tool on this machine.

        Raises:
            UsageToolNotFoundError: If the tool or its launcher is missing
            UsageToolTimeoutError: If the tool exceeds ``local_timeout``
            NoLocalUsageDataError: If there is no usage history here
            MalformedUsageOutputError: If the output cannot be parsed
        """
        args = self.build_command(period, since, until)
        logger.info("Fetching authoritative usage: period=%s since=%s until=%s", period, since, until)
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.local_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise UsageToolNotFoundError(
                f"{args[0]} not found. Install it or set audit.tool_command."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise UsageToolTimeoutError(
                f"Usage tool timed out after {self.local_timeout:g}s. Try a narrower date range.",
                self.local_timeout,
            ) from exc

        result = CommandResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )
        records = self._parse_result(result, period, origin="local", is_remote=False)
        logger.info("Fetched %d usage records locally", len(records))
        return records

    def fetch_authoritative_remote(
        self,
        host: RemoteHost,
        period: str = "daily",
        since: Optional[DateLike] = None,
        until: Optional[DateLike] = None,
    ) -> List[DailyUsage]:
        """Run the tool on a remote host. Same contract as fetch_authoritative.

        Raises:
            RemoteFetchError: If the transport fails or the remote command
                exits non-zero without usable output
        """
        args = self.build_command(period, since, until)
        command = shlex.join(args)
        logger.info("Fetching authoritative usage from %s: period=%s", host.name, period)
        try:
            result = self.transport.run(host, command, self.remote_timeout)
        except FileNotFoundError as exc:
            raise UsageToolNotFoundError(f"Remote shell client not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise UsageToolTimeoutError(
                f"Usage tool on {host.name} timed out after {self.remote_timeout:g}s",
                self.remote_timeout,
            ) from exc

        records = self._parse_result(result, period, origin=host.name, is_remote=True)
        logger.info("Fetched %d usage records from %s", len(records), host.name)
        return records

    def _parse_result(
        self, result: CommandResult, period: str, origin: str, is_remote: bool
    ) -> List[DailyUsage]:
        if result.exit_code == _COMMAND_NOT_FOUND:
            raise UsageToolNotFoundError(
                f"{self.tool_command[0]} not found on {origin}: "
                f"{_excerpt(result.stderr, self.output_excerpt_chars)}"
            )

        if result.exit_code != 0:
            combined = f"{result.stdout}\n{result.stderr}"
            if _is_no_data_message(combined):
                raise NoLocalUsageDataError(combined.strip())
            if is_remote:
                raise RemoteFetchError(
                    origin,
                    f"exit status {result.exit_code}: "
                    f"{_excerpt(result.stderr or result.stdout, self.output_excerpt_chars)}",
                )
            raise MalformedUsageOutputError(
                f"Usage tool exited with status {result.exit_code}",
                _excerpt(result.stderr or result.stdout, self.output_excerpt_chars),
            )

        return parse_usage_output(result.stdout, period, self.output_excerpt_chars)
