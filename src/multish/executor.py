"""SSH execution of one host's command."""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import asyncssh

from .config import ExecutionConfig
from .errors import EXIT_INTERRUPTED

if TYPE_CHECKING:
    from .formatter import OutputFormatter
    from .scheduler import ProcessTracker

logger = logging.getLogger(__name__)

SCRIPT_COMMAND = "bash -s"
SSH_FAILURE = 255  # what the OpenSSH client exits with on connection errors
CHUNK_SIZE = 64 * 1024
LOCAL_FAILURE = 1


class StdinSource(Enum):
    """Where a remote command's stdin comes from."""

    NONE = "none"
    FILE = "file"
    TERMINAL = "terminal"


@dataclass
class HostTask:
    """One host's share of the run."""

    host: str
    command: str
    index: int = 0
    stdin: StdinSource = StdinSource.NONE
    script_path: Path | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None

    @property
    def wants_pty(self) -> bool:
        return self.stdin is StdinSource.TERMINAL


@dataclass
class RunResult:
    """Outcome of one host's command."""

    host: str
    exit_code: int

    @property
    def was_interrupted(self) -> bool:
        return self.exit_code == EXIT_INTERRUPTED

    @property
    def failed(self) -> bool:
        return self.exit_code != 0 and not self.was_interrupted


def normalize_exit_code(returncode: int | None) -> int:
    """Map death-by-signal (negative returncode) to the shell's 128+N convention."""
    if returncode is None:
        return SSH_FAILURE
    if returncode < 0:
        return 128 - returncode
    return returncode


async def pump(stream, formatter: OutputFormatter) -> None:
    """Copy a stream into its formatter chunk by chunk as data arrives."""
    while True:
        data = await stream.read(CHUNK_SIZE)
        if not data:
            break
        formatter.write(data)


class RemoteCommandRunner:
    """Runs a host's command through the OpenSSH client, one process per host."""

    def __init__(self, config: ExecutionConfig):
        self.config = config

    def command_line(self, task: HostTask) -> list[str]:
        """Build the ssh argv for a task."""
        ssh = self.config.ssh
        cmd = ["ssh", "-o", f"ConnectTimeout={self.config.connect_timeout}"]
        if ssh.user:
            cmd.extend(["-l", ssh.user])
        if ssh.port:
            cmd.extend(["-p", str(ssh.port)])
        if ssh.ssh_key:
            cmd.extend(["-i", str(ssh.ssh_key)])
        for option in ssh.options:
            cmd.extend(["-o", option])
        cmd.append("-t" if task.wants_pty else "-T")
        cmd.append(task.host)
        cmd.append(task.command)
        return cmd

    def describe(self, task: HostTask) -> str:
        """Shell-quoted command line, as shown by dry runs."""
        line = shlex.join(self.command_line(task))
        if task.stdin is StdinSource.FILE and task.script_path:
            line += f" < {shlex.quote(str(task.script_path))}"
        return line

    async def run(
        self,
        task: HostTask,
        stdout: OutputFormatter,
        stderr: OutputFormatter,
        tracker: ProcessTracker,
    ) -> RunResult:
        """Run the task, streaming its output into the two formatters."""
        argv = self.command_line(task)
        logger.debug("SSH command for %s: %s", task.host, shlex.join(argv))

        stdin_file = None
        if task.stdin is StdinSource.FILE:
            stdin_file = open(task.script_path, "rb")
            stdin = stdin_file
        elif task.stdin is StdinSource.TERMINAL:
            stdin = None
        else:
            stdin = asyncio.subprocess.DEVNULL

        t0 = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        finally:
            if stdin_file is not None:
                stdin_file.close()

        tracker.add(proc)
        try:
            await asyncio.gather(pump(proc.stdout, stdout), pump(proc.stderr, stderr))
            returncode = await proc.wait()
        except Exception:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            tracker.discard(proc)
            raise
        # Left tracked on cancellation so the abort path can still kill it.
        tracker.discard(proc)

        exit_code = normalize_exit_code(returncode)
        logger.debug(
            "%s finished with exit code %d (%.1fs)", task.host, exit_code, time.monotonic() - t0
        )
        return RunResult(host=task.host, exit_code=exit_code)


class _ChannelHandle:
    """Gives an asyncssh process the kill()/wait() shape of a local process."""

    def __init__(self, process: asyncssh.SSHClientProcess):
        self.process = process

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def kill(self) -> None:
        self.process.close()

    terminate = kill

    async def wait(self) -> int | None:
        await self.process.wait_closed()
        return self.process.returncode


class AsyncSSHRunner(RemoteCommandRunner):
    """Runs a host's command in-process over asyncssh."""

    def describe(self, task: HostTask) -> str:
        ssh = self.config.ssh
        target = f"{ssh.user}@{task.host}" if ssh.user else task.host
        if ssh.port:
            target += f":{ssh.port}"
        line = f"asyncssh {target} {shlex.quote(task.command)}"
        if task.stdin is StdinSource.FILE and task.script_path:
            line += f" < {shlex.quote(str(task.script_path))}"
        return line

    async def run(
        self,
        task: HostTask,
        stdout: OutputFormatter,
        stderr: OutputFormatter,
        tracker: ProcessTracker,
    ) -> RunResult:
        ssh = self.config.ssh
        logger.debug("Connecting to %s over asyncssh", task.host)

        connect_kwargs = {
            "connect_timeout": self.config.connect_timeout or None,
        }
        if ssh.user:
            connect_kwargs["username"] = ssh.user
        if ssh.port:
            connect_kwargs["port"] = ssh.port
        if ssh.ssh_key:
            connect_kwargs["client_keys"] = [str(ssh.ssh_key)]

        stdin = str(task.script_path) if task.stdin is StdinSource.FILE else asyncssh.DEVNULL

        t0 = time.monotonic()
        try:
            async with asyncssh.connect(task.host, **connect_kwargs) as conn:
                async with conn.create_process(
                    task.command, stdin=stdin, encoding=None
                ) as proc:
                    handle = _ChannelHandle(proc)
                    tracker.add(handle)
                    try:
                        await asyncio.gather(
                            pump(proc.stdout, stdout), pump(proc.stderr, stderr)
                        )
                        completed = await proc.wait()
                    except Exception:
                        tracker.discard(handle)
                        raise
                    tracker.discard(handle)
                    exit_code = normalize_exit_code(completed.returncode)
        except (asyncssh.Error, OSError) as e:
            stderr.write(f"ssh: {task.host}: {e}\n".encode())
            exit_code = SSH_FAILURE

        logger.debug(
            "%s finished with exit code %d (%.1fs)", task.host, exit_code, time.monotonic() - t0
        )
        return RunResult(host=task.host, exit_code=exit_code)
