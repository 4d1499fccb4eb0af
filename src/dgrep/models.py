"""Result model and aggregation for dgrep dispatch rounds."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

UNKNOWN_HOST = "unknown"


class ConfigError(ValueError):
    """Raised when the coordinator configuration is missing or invalid."""


class ErrorKind(str, Enum):
    """Why a target did not produce a clean result."""

    NETWORK = "network"
    TRANSPORT = "transport"
    COMMAND = "command"
    RESOURCE = "resource"


class NodeStatus(Enum):
    """Progress of a single target during a dispatch round."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class Target:
    """A remote execution endpoint."""

    host: str
    port: int

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.address

    @classmethod
    def parse(cls, address: str) -> Target:
        """Parse a ``host:port`` (or ``[v6-host]:port``) address."""
        if not isinstance(address, str):
            raise ConfigError(f"Target address must be a string, got {address!r}")

        host, sep, port_str = address.strip().rpartition(":")
        if not sep or not host:
            raise ConfigError(f"Target address must be host:port, got {address!r}")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]

        try:
            port = int(port_str)
        except ValueError:
            raise ConfigError(f"Invalid port in target address {address!r}") from None
        if not 0 < port < 65536:
            raise ConfigError(f"Port out of range in target address {address!r}")

        try:
            host.encode("idna")
        except UnicodeError:
            raise ConfigError(f"Invalid host name in target address {address!r}") from None

        return cls(host=host, port=port)


@dataclass(frozen=True)
class NodeError:
    """A classified per-target failure."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value} error: {self.message}"


@dataclass(frozen=True)
class NodeResult:
    """Outcome of dispatching one request to one target."""

    target: Target
    reachable: bool
    hostname: str = UNKNOWN_HOST
    output: str = ""
    error: NodeError | None = None

    @property
    def ok(self) -> bool:
        return self.reachable and self.error is None

    @property
    def lines(self) -> list[str]:
        """Non-empty lines of the output."""
        return [line for line in self.output.splitlines() if line.strip()]


@dataclass(frozen=True)
class DispatchSummary:
    """Counts derived from one dispatch round."""

    total: int
    reachable: int
    unreachable: int
    succeeded: int
    failed: int
    total_lines: int


def summarize(results: Sequence[NodeResult]) -> DispatchSummary:
    """Compute summary statistics over the ordered results of a round."""
    reachable = sum(1 for r in results if r.reachable)
    succeeded = sum(1 for r in results if r.ok)
    total_lines = sum(len(r.lines) for r in results if r.ok)

    return DispatchSummary(
        total=len(results),
        reachable=reachable,
        unreachable=len(results) - reachable,
        succeeded=succeeded,
        failed=len(results) - succeeded,
        total_lines=total_lines,
    )
