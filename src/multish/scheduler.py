"""Dispatches one task per host, serially or with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from .config import ExecutionConfig, Mode
from .errors import EXIT_INTERRUPTED
from .executor import (
    LOCAL_FAILURE,
    SCRIPT_COMMAND,
    HostTask,
    RemoteCommandRunner,
    RunResult,
    StdinSource,
)
from .formatter import OutputFormatter

if TYPE_CHECKING:
    from .interrupt import InterruptController
    from .terminal import TerminalLauncher

logger = logging.getLogger(__name__)


class ProcessTracker:
    """Direct handles to every live transport process and terminal window."""

    def __init__(self):
        self._handles: list = []

    def __len__(self) -> int:
        return len(self._handles)

    def add(self, handle) -> None:
        self._handles.append(handle)

    def discard(self, handle) -> None:
        if handle in self._handles:
            self._handles.remove(handle)

    async def terminate_all(self, force: bool = True) -> None:
        """Stop every tracked handle and wait until each has exited.

        ``force=False`` sends SIGTERM instead of SIGKILL so an ssh client
        holding the local terminal in raw mode can restore it.
        """
        handles, self._handles = self._handles, []
        for handle in handles:
            if handle.returncode is None:
                try:
                    if force:
                        handle.kill()
                    else:
                        handle.terminate()
                except ProcessLookupError:
                    pass
        if handles:
            logger.debug("Waiting for %d killed processes", len(handles))
            await asyncio.gather(*(handle.wait() for handle in handles))


class Scheduler:
    """Launches hosts in input order and collects their results."""

    def __init__(
        self,
        config: ExecutionConfig,
        runner: RemoteCommandRunner,
        controller: InterruptController,
        launcher: TerminalLauncher | None = None,
        out: TextIO | None = None,
    ):
        # Header mode is settled once here, never per host.
        self.config = config.resolved()
        self.runner = runner
        self.controller = controller
        self.launcher = launcher
        self.out = out or sys.stdout
        self.tracker = ProcessTracker()
        self.launched: list[str] = []
        self._current: asyncio.Task | None = None
        self._host_interrupted = False

        if self.config.detached_windows and launcher is None:
            raise ValueError("detached windows need a terminal launcher")

    def build_tasks(
        self,
        hosts: list[str],
        command: str | None,
        script_path: Path | None = None,
    ) -> list[HostTask]:
        """Create one task per host, in input order."""
        if script_path is not None:
            stdin = StdinSource.FILE
        elif self.config.interactive or self.config.detached_windows:
            stdin = StdinSource.TERMINAL
        else:
            stdin = StdinSource.NONE

        tasks = []
        for index, host in enumerate(hosts):
            task = HostTask(
                host=host,
                command=command or SCRIPT_COMMAND,
                index=index,
                stdin=stdin,
                script_path=script_path,
            )
            if self.config.output_to_files:
                task.stdout_path = Path(f"{host}.stdout")
                task.stderr_path = Path(f"{host}.stderr")
            tasks.append(task)
        return tasks

    async def run(self, tasks: list[HostTask]) -> list[RunResult]:
        """Run every task according to the configured mode."""
        if self.config.dry_run:
            self._dry_run(tasks)
            return []

        self.controller.install()
        try:
            return await self.controller.guard(
                self._dispatch(tasks),
                self.tracker.terminate_all,
                on_interrupt=self.interrupt_current,
            )
        finally:
            self.controller.uninstall()

    def _dry_run(self, tasks: list[HostTask]) -> None:
        for task in tasks:
            if self.config.detached_windows:
                line = self.launcher.describe(task)
            else:
                line = self.runner.describe(task)
            print(line, file=self.out, flush=True)

    async def _dispatch(self, tasks: list[HostTask]) -> list[RunResult]:
        if self.config.mode is Mode.SERIAL and not self.config.detached_windows:
            return await self._run_serial(tasks)
        fanout = self.config.fanout if self.config.mode is Mode.PARALLEL else 1
        return await self._run_bounded(tasks, fanout)

    def interrupt_current(self) -> bool:
        """End the running serial host as interrupted; False if none is running."""
        if self._current is None or self._current.done():
            return False
        self._host_interrupted = True
        self._current.cancel()
        return True

    async def _run_serial(self, tasks: list[HostTask]) -> list[RunResult]:
        results = []
        for task in tasks:
            self._current = asyncio.create_task(self._execute(task))
            try:
                result = await self._current
            except asyncio.CancelledError:
                if not self._host_interrupted:
                    raise
                await self.tracker.terminate_all(force=False)
                result = RunResult(host=task.host, exit_code=EXIT_INTERRUPTED)
            finally:
                self._current = None
                self._host_interrupted = False
            results.append(result)
            # Raises RunAborted when the operator (or a missing terminal) says stop.
            self.controller.review(result)
        return results

    async def _run_bounded(self, tasks: list[HostTask], fanout: int) -> list[RunResult]:
        budget = asyncio.Semaphore(fanout)
        running = []

        try:
            for task in tasks:
                if budget.locked():
                    logger.debug("All %d slots busy, %s waits", fanout, task.host)
                await budget.acquire()
                job = asyncio.create_task(self._execute(task))
                job.add_done_callback(lambda _: budget.release())
                running.append(job)

            return list(await asyncio.gather(*running))
        except asyncio.CancelledError:
            # No job may outlive the dispatch loop and spawn after an abort.
            for job in running:
                job.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

    async def _execute(self, task: HostTask) -> RunResult:
        self.launched.append(task.host)
        logger.debug("Launching %s (host #%d)", task.host, task.index + 1)

        try:
            if self.config.detached_windows:
                return await self.launcher.run(task, self.tracker)
            return await self._run_host(task)
        except Exception as e:
            logger.error("%s: %s", task.host, e)
            return RunResult(host=task.host, exit_code=LOCAL_FAILURE)

    async def _run_host(self, task: HostTask) -> RunResult:
        with self._formatters(task) as (stdout, stderr):
            try:
                result = await self.runner.run(task, stdout, stderr, self.tracker)
            except Exception as e:
                logger.debug("%s failed locally", task.host, exc_info=True)
                stderr.write(f"multish: {e}\n".encode())
                result = RunResult(host=task.host, exit_code=LOCAL_FAILURE)
            if result.failed:
                stderr.write(f"exited with status {result.exit_code}\n".encode())
        return result

    @contextmanager
    def _formatters(self, task: HostTask) -> Iterator[tuple[OutputFormatter, OutputFormatter]]:
        mode = self.config.header_mode
        with ExitStack() as stack:
            if task.stdout_path is not None:
                out_sink = stack.enter_context(open(task.stdout_path, "wb"))
            else:
                out_sink = sys.stdout.buffer
            if task.stderr_path is not None:
                err_sink = stack.enter_context(open(task.stderr_path, "wb"))
            else:
                err_sink = sys.stderr.buffer

            stdout = stack.enter_context(OutputFormatter(task.host, mode, out_sink))
            stderr = stack.enter_context(
                OutputFormatter(task.host, mode, err_sink, eager_header=False)
            )
            yield stdout, stderr
