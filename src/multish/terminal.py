"""Detached terminal windows, one per host."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
import subprocess
import sys
from typing import TYPE_CHECKING, TextIO

from .config import ExecutionConfig
from .errors import EnvironmentPreconditionError
from .executor import HostTask, RemoteCommandRunner, RunResult, StdinSource, normalize_exit_code

if TYPE_CHECKING:
    from .scheduler import ProcessTracker

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION = (1024, 768)
WINDOW_ORIGIN = (20, 20)
WINDOW_STEP = 30
SCREEN_MARGIN = 0.6
WINDOW_SIZE = "80x24"

_DIMENSIONS_RE = re.compile(r"dimensions:\s+(\d+)x(\d+)\s+pixels")


def check_display() -> None:
    """Fail early when there is no X display to open windows on."""
    if not os.environ.get("DISPLAY"):
        raise EnvironmentPreconditionError("Detached windows need a display but DISPLAY is not set")


def detect_resolution() -> tuple[int, int]:
    """Screen size in pixels from xdpyinfo, or a default when that fails."""
    try:
        output = subprocess.run(
            ["xdpyinfo"], capture_output=True, text=True, timeout=5, check=True
        ).stdout
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Display resolution query failed (%s), using default", e)
        return DEFAULT_RESOLUTION

    match = _DIMENSIONS_RE.search(output)
    if not match:
        logger.debug("No dimensions in xdpyinfo output, using default")
        return DEFAULT_RESOLUTION
    return int(match.group(1)), int(match.group(2))


def cascade_position(index: int, resolution: tuple[int, int]) -> tuple[int, int]:
    """Top-left corner of the index-th window, wrapping inside the usable area."""
    width, height = resolution
    max_x = max(int(width * SCREEN_MARGIN), 1)
    max_y = max(int(height * SCREEN_MARGIN), 1)
    x = (WINDOW_ORIGIN[0] + index * WINDOW_STEP) % max_x
    y = (WINDOW_ORIGIN[1] + index * WINDOW_STEP) % max_y
    return x, y


class TerminalLauncher:
    """Opens a terminal emulator window per host that runs ssh itself."""

    def __init__(
        self,
        config: ExecutionConfig,
        runner: RemoteCommandRunner,
        resolution: tuple[int, int] | None = None,
        out: TextIO | None = None,
    ):
        self.config = config
        self.runner = runner
        self.resolution = resolution or detect_resolution()
        self.out = out or sys.stdout

    def command_line(self, task: HostTask) -> list[str]:
        x, y = cascade_position(task.index, self.resolution)
        remote = shlex.join(self.runner.command_line(task))
        if task.stdin is StdinSource.FILE and task.script_path:
            remote += f" < {shlex.quote(str(task.script_path))}"
        return [
            self.config.terminal,
            "-T", task.host,
            "-geometry", f"{WINDOW_SIZE}+{x}+{y}",
            "-hold",
            "-e", "sh", "-c", remote,
        ]

    def describe(self, task: HostTask) -> str:
        return shlex.join(self.command_line(task))

    async def run(self, task: HostTask, tracker: ProcessTracker) -> RunResult:
        """Open the window and wait for the operator to close it."""
        if self.config.verbose:
            print(f"=== {task.host} ===", file=self.out, flush=True)

        argv = self.command_line(task)
        logger.debug("Opening window for %s: %s", task.host, shlex.join(argv))
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        tracker.add(proc)
        returncode = await proc.wait()
        tracker.discard(proc)
        return RunResult(host=task.host, exit_code=normalize_exit_code(returncode))
