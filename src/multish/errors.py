"""Exceptions raised by multish, each mapped to a process exit code."""

from __future__ import annotations

EXIT_OK = 0
EXIT_ENVIRONMENT = 1
EXIT_USAGE = 65
EXIT_INTERRUPTED = 130


class MultishError(Exception):
    """Base class for errors that end the run with a specific exit code."""

    exit_code = EXIT_ENVIRONMENT


class UsageError(MultishError):
    """Bad arguments or configuration, reported before any host is processed."""

    exit_code = EXIT_USAGE


class EnvironmentPreconditionError(MultishError):
    """The local environment cannot support the requested run."""

    exit_code = EXIT_ENVIRONMENT


class RunAborted(MultishError):
    """The run was interrupted and the remaining hosts abandoned."""

    exit_code = EXIT_INTERRUPTED

    def __init__(self, message: str = "Interrupted", host: str | None = None):
        super().__init__(message)
        self.host = host
