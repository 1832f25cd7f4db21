"""multish: Run one command on many SSH hosts, serially or in parallel."""

__version__ = "0.1.0"

from .config import ExecutionConfig, HeaderMode, Mode, SSHOptions, Transport, load_config
from .executor import AsyncSSHRunner, HostTask, RemoteCommandRunner, RunResult, StdinSource
from .formatter import OutputFormatter
from .interrupt import InterruptController, InterruptState
from .scheduler import ProcessTracker, Scheduler
from .terminal import TerminalLauncher

__all__ = [
    "ExecutionConfig",
    "HeaderMode",
    "Mode",
    "SSHOptions",
    "Transport",
    "load_config",
    "AsyncSSHRunner",
    "HostTask",
    "RemoteCommandRunner",
    "RunResult",
    "StdinSource",
    "OutputFormatter",
    "InterruptController",
    "InterruptState",
    "ProcessTracker",
    "Scheduler",
    "TerminalLauncher",
]
