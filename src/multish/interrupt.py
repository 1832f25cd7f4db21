"""Operator interrupt handling."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from typing import Any, TextIO

from .errors import RunAborted
from .executor import RunResult

logger = logging.getLogger(__name__)

PROMPT = "Continue with remaining hosts? [y/n] "


class InterruptState(Enum):
    """Where the controller is in handling an interrupt."""

    RUNNING = "running"
    INTERRUPT_PENDING = "interrupt_pending"
    ABORTING = "aborting"
    DONE = "done"


class InterruptController:
    """Decides between continuing and aborting when the operator interrupts.

    In serial mode the interrupt ends the current host, which is then
    reported with exit code 130, and the operator is asked whether to carry
    on. In global mode (parallel or detached windows) there is no single host
    to ask about, so the first SIGINT kills every tracked process and ends the
    run.
    """

    def __init__(
        self,
        global_abort: bool,
        prompt: Callable[[str], str] | None = None,
        stdin: TextIO | None = None,
        stderr: TextIO | None = None,
    ):
        self.global_abort = global_abort
        self.stdin = stdin or sys.stdin
        self.stderr = stderr or sys.stderr
        self.prompt = prompt or self._ask
        self.state = InterruptState.RUNNING
        self._task: asyncio.Future | None = None
        self._on_interrupt: Callable[[], bool] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def install(self) -> None:
        """Take over SIGINT on the running event loop."""
        self._loop = asyncio.get_running_loop()
        self._loop.add_signal_handler(signal.SIGINT, self.on_signal)

    def uninstall(self) -> None:
        if self._loop is not None:
            self._loop.remove_signal_handler(signal.SIGINT)
            self._loop = None

    def on_signal(self) -> None:
        """SIGINT arrived."""
        if not self.global_abort:
            self.state = InterruptState.INTERRUPT_PENDING
            if self._on_interrupt is not None and self._on_interrupt():
                logger.debug("Interrupt received, stopping the current host")
                return
        if self.state is InterruptState.ABORTING:
            return
        logger.debug("Interrupt received, aborting all hosts")
        self.state = InterruptState.ABORTING
        if self._task is not None:
            self._task.cancel()

    async def guard(
        self,
        dispatch: Coroutine[Any, Any, Any],
        on_abort: Callable[[], Awaitable[None]],
        on_interrupt: Callable[[], bool] | None = None,
    ) -> Any:
        """Run the dispatch loop, turning an abort into RunAborted.

        ``on_interrupt`` stops the current serial host and returns False when
        no host is running, in which case the whole run is aborted instead.
        """
        self._on_interrupt = on_interrupt
        self._task = asyncio.ensure_future(dispatch)
        try:
            result = await self._task
        except asyncio.CancelledError:
            if self.state is not InterruptState.ABORTING:
                raise
            await on_abort()
            raise RunAborted("Interrupted, all hosts killed") from None
        finally:
            self._task = None
            self._on_interrupt = None
        self.state = InterruptState.DONE
        return result

    def _ask(self, question: str) -> str:
        print(question, end="", file=self.stderr, flush=True)
        answer = self.stdin.readline()
        if not answer:
            raise EOFError
        return answer

    def is_interactive(self) -> bool:
        return _isatty(self.stdin) and _isatty(self.stderr)

    def review(self, result: RunResult) -> None:
        """Check a finished serial host; raise RunAborted to stop the run."""
        if not result.was_interrupted:
            self.state = InterruptState.RUNNING
            return

        self.state = InterruptState.INTERRUPT_PENDING
        if not self.is_interactive():
            self.state = InterruptState.ABORTING
            raise RunAborted(f"Interrupted on {result.host}", host=result.host)

        print(f"\n{result.host} was interrupted.", file=self.stderr, flush=True)
        while True:
            try:
                answer = self.prompt(PROMPT).strip()
            except EOFError:
                answer = "n"
            if answer[:1] in ("y", "Y"):
                self.state = InterruptState.RUNNING
                return
            if answer[:1] in ("n", "N"):
                self.state = InterruptState.ABORTING
                raise RunAborted(f"Aborted after {result.host}", host=result.host)


def _isatty(stream) -> bool:
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False
