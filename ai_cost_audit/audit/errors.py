"""
Audit error hierarchy.

Each failure class of the external usage tool is surfaced as its own type so
callers can react differently to a missing tool, a slow one, or garbage
output.
"""

from typing import Optional


class AuditError(Exception):
    """Base class for audit failures."""


class UsageToolNotFoundError(AuditError):
    """The usage reporting tool (or its launcher) is not installed."""


class UsageToolTimeoutError(AuditError):
    """The usage reporting tool did not finish within its time budget."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class MalformedUsageOutputError(AuditError):
    """The tool printed something that is not the expected JSON document."""

    def __init__(self, message: str, excerpt: str):
        super().__init__(f"{message}: {excerpt!r}")
        self.excerpt = excerpt


class NoLocalUsageDataError(AuditError):
    """No usage history exists on this machine."""


class RemoteFetchError(AuditError):
    """Fetching usage from one remote host failed."""

    def __init__(self, host: str, message: str):
        super().__init__(f"Failed to fetch usage from {host}: {message}")
        self.host = host


class NoUsageDataError(AuditError):
    """No usage data could be collected locally or from any remote."""

    def __init__(self, remotes_configured: int, message: Optional[str] = None):
        if message is None:
            if remotes_configured == 0:
                message = (
                    "No local usage data found and no remote hosts are configured. "
                    "Add a host under 'remotes' to audit usage recorded elsewhere."
                )
            else:
                message = (
                    f"No usage data found locally or on any of the "
                    f"{remotes_configured} configured remote host(s)."
                )
        super().__init__(message)
        self.remotes_configured = remotes_configured
