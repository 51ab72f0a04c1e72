"""
Remote shell transport.

Runs a command on a remote host and hands back its raw output. The audit
layer only depends on the ``RemoteShellTransport`` protocol; ``SshTransport``
is the default implementation and shells out to the system ``ssh`` client.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteHost:
    """Connection details for one remote machine."""
    name: str
    host: str
    user: Optional[str] = None
    port: int = 22
    identity_file: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        """Validate host settings."""
        if not self.host:
            raise ValueError("host cannot be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host


@dataclass(frozen=True)
class CommandResult:
    """Captured output of a finished command."""
    stdout: str
    stderr: str
    exit_code: int


class RemoteShellTransport(Protocol):
    def run(self, host: RemoteHost, command: str, timeout: float) -> CommandResult:
        """Run ``command`` on ``host``.

        Raises:
            subprocess.TimeoutExpired: If the command exceeds ``timeout``
            FileNotFoundError: If the transport client is not installed
        """
        ...


class SshTransport:
    """Transport backed by the OpenSSH client.

    Uses BatchMode so a host that would prompt for a password fails fast
    instead of hanging the audit.
    """

    def __init__(self, ssh_binary: str = "ssh", connect_timeout: int = 10):
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout

    def build_args(self, host: RemoteHost, command: str) -> List[str]:
        args = [
            self.ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-p", str(host.port),
        ]
        if host.identity_file:
            args += ["-i", host.identity_file]
        args += [host.destination, command]
        return args

    def run(self, host: RemoteHost, command: str, timeout: float) -> CommandResult:
        args = self.build_args(host, command)
        logger.debug("Running on %s: %s", host.name, command)
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        return CommandResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
        )
