"""Shared fakes for scheduler tests."""

import asyncio

import pytest

from multish.config import ExecutionConfig
from multish.errors import RunAborted
from multish.executor import HostTask, RunResult


class FakeRunner:
    """Stands in for RemoteCommandRunner without spawning ssh."""

    def __init__(self, exit_codes=None, delays=None, output=b"hi\n"):
        self.exit_codes = exit_codes or {}
        self.delays = delays or {}
        self.output = output
        self.started: list[str] = []
        self.finished: list[str] = []
        self.active = 0
        self.max_active = 0

    def describe(self, task: HostTask) -> str:
        return f"ssh {task.host} {task.command}"

    async def run(self, task, stdout, stderr, tracker) -> RunResult:
        self.started.append(task.host)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delays.get(task.host, 0.01))
            stdout.write(self.output)
        finally:
            self.active -= 1
        self.finished.append(task.host)
        return RunResult(host=task.host, exit_code=self.exit_codes.get(task.host, 0))


class FakeController:
    """Records reviewed results; never touches signals."""

    def __init__(self, abort_on=None):
        self.abort_on = abort_on
        self.reviewed: list[str] = []
        self.installed = False

    def install(self):
        self.installed = True

    def uninstall(self):
        self.installed = False

    async def guard(self, dispatch, on_abort, on_interrupt=None):
        return await dispatch

    def review(self, result):
        self.reviewed.append(result.host)
        if result.was_interrupted and self.abort_on == result.host:
            raise RunAborted(host=result.host)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_controller():
    return FakeController()


@pytest.fixture
def parallel_config():
    return ExecutionConfig(fanout=2)


@pytest.fixture
def make_runner():
    return FakeRunner


@pytest.fixture
def make_controller():
    return FakeController
