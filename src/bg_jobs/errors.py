"""Error types of the background job subsystem.

Spawn-time failures are raised synchronously and never leave a job in the
registry. Failures of the child process itself are not errors here: they
are reported through the exit code and the captured error text.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "JobError",
    "SpawnError",
    "SpawnErrorKind",
    "WaitFailed",
]


class SpawnErrorKind(Enum):
    """Why a spawn request was rejected."""

    BAD_WORKING_DIR = "bad_working_dir"
    EXEC_FAILED = "exec_failed"


class JobError(Exception):
    """Base class for job subsystem errors."""


class SpawnError(JobError):
    """A process could not be started.

    Attributes:
        kind: Failure category
        command: Command text that was requested
        working_dir: Working directory that was requested (may be None)
    """

    def __init__(
        self,
        kind: SpawnErrorKind,
        command: str,
        working_dir: str | None = None,
        detail: str = "",
    ) -> None:
        self.kind = kind
        self.command = command
        self.working_dir = working_dir
        self.detail = detail

        if kind is SpawnErrorKind.BAD_WORKING_DIR:
            message = f"Working directory is not a directory: {working_dir!r}"
        else:
            message = f"Failed to start {command!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class WaitFailed(JobError):
    """The process disappeared before its exit status could be collected."""

    def __init__(self, pid: int | None, detail: str = "") -> None:
        self.pid = pid
        self.detail = detail
        message = f"Failed to collect exit status of pid={pid}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
