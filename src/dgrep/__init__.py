"""dgrep: Run grep on many machines and collect a per-machine report."""

from .config import Config, Defaults, load_config, load_targets
from .executor import Dispatcher, run_dispatch
from .models import (
    ConfigError,
    DispatchSummary,
    ErrorKind,
    NodeError,
    NodeResult,
    NodeStatus,
    Target,
    summarize,
)
from .protocol import ExecutionReply, ExecutionRequest, ProtocolError
from .server import GrepServer
from .service import RemoteGrep

__all__ = [
    "Config",
    "Defaults",
    "load_config",
    "load_targets",
    "Dispatcher",
    "run_dispatch",
    "ConfigError",
    "DispatchSummary",
    "ErrorKind",
    "NodeError",
    "NodeResult",
    "NodeStatus",
    "Target",
    "summarize",
    "ExecutionReply",
    "ExecutionRequest",
    "ProtocolError",
    "GrepServer",
    "RemoteGrep",
]
