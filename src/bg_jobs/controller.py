"""Job controller: waiting, lifetime and composite operations.

This module provides:
- Blocking and cancellable waits that finalize the job exactly once
- incref/decref and exit callback registration
- wait_for_all() for shutdown paths
- run_external() for fire-and-forget commands
- run_and_collect_errors() for "run, wait, report stderr on failure"
- Async adapters running the blocking calls on a worker thread

Key design points:
- Waits use timed waits on the process, so cancellation is noticed within
  one poll interval and completion is noticed immediately
- Cancelling a wait abandons it; the process keeps running and is reaped
  later by JobRegistry.reap_completed()
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TextIO

from anyio import to_thread

from .cancellation import NO_CANCELLATION, CancellationToken
from .config import Config, get_config
from .errors import JobError, SpawnError, WaitFailed
from .job import LOST_EXIT_CODE, ExitCallback, Job, JobFlags
from .registry import JobRegistry
from .runtime.spawner import ShellMode, Spawner

__all__ = [
    "ErrorSink",
    "JobController",
    "JobResult",
    "ResultStatus",
]

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, str], None]


class ResultStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class JobResult:
    """Outcome of run_and_collect_errors().

    Attributes:
        status: Success, failure or cancelled wait
        exit_code: Exit code (None if the process did not start or the
            wait was cancelled)
        errors: Captured error text (failure detail)
    """

    status: ResultStatus
    exit_code: Optional[int] = None
    errors: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS


def _log_error(title: str, message: str) -> None:
    logger.warning(f"{title}: {message.rstrip()}")


class JobController:
    """Waits on jobs and manages their lifetime.

    Example:
        registry = JobRegistry()
        controller = JobController(registry)

        job = controller.spawner.spawn("exit 3")
        controller.set_exit_callback(job, on_exit, ctx)
        assert controller.wait(job) == 3
        controller.decref(job)
    """

    def __init__(
        self,
        registry: JobRegistry,
        spawner: Optional[Spawner] = None,
        config: Optional[Config] = None,
        on_error: Optional[ErrorSink] = None,
    ) -> None:
        """Create a controller.

        Args:
            registry: Registry the jobs live in
            spawner: Spawner to use (defaults to one bound to `registry`)
            config: Configuration (defaults to the global one)
            on_error: Sink for error reports of fire-and-forget jobs,
                called as on_error(title, message); logs a warning by default
        """
        self.registry = registry
        self.config = config if config is not None else get_config()
        self.spawner = spawner if spawner is not None else Spawner(registry, self.config)
        self.on_error: ErrorSink = on_error if on_error is not None else _log_error

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def wait(self, job: Job) -> int:
        """Block until the job has exited and return its exit code.

        Finalizes the job if nobody has yet. Repeated calls return the same
        exit code. Once the job has exited, captured output is given up to
        ``config.capture_timeout`` seconds to drain.

        Raises:
            WaitFailed: If the process vanished before its status was collected
        """
        self._wait_until_finished(job, NO_CANCELLATION)
        self._drain_capture(job)

        wait_error = job.wait_error
        if wait_error is not None:
            raise WaitFailed(job.pid, wait_error)

        exit_code = job.exit_code
        if exit_code is None:
            raise JobError(f"Job {job.id} finished without an exit code")
        return exit_code

    def wait_cancellable(self, job: Job, token: CancellationToken) -> Optional[int]:
        """Like wait(), but give up once `token` is cancelled.

        Returns:
            Exit code, or None if the wait was abandoned (process left running)

        Raises:
            WaitFailed: If the process vanished before its status was collected
        """
        if not self._wait_until_finished(job, token):
            logger.info(f"Stopped waiting for job {job.id} (pid={job.pid})")
            return None
        return self.wait(job)

    def wait_for_job(self, job: Job) -> int:
        """wait() that reports a lost exit status as -1 instead of raising."""
        try:
            return self.wait(job)
        except WaitFailed as e:
            logger.warning(str(e))
            return LOST_EXIT_CODE

    def wait_for_all(self) -> None:
        """Block until no registered job is running.

        Jobs spawned while waiting are picked up by the next scan.
        """
        while True:
            pending = [
                job
                for job in self.registry.jobs()
                if not job.finished and not job.finalizing_on_current_thread()
            ]
            if not pending:
                return
            logger.debug(f"Waiting for {len(pending)} job(s)")
            for job in pending:
                self._wait_until_finished(job, NO_CANCELLATION)

    def _wait_until_finished(self, job: Job, token: CancellationToken) -> bool:
        """Wait for the job's finalize sequence, running it if needed.

        Returns:
            True once the job has exited, False if `token` got cancelled
        """
        if job.finalizing_on_current_thread():
            # Called from the job's own exit callback; the exit code is set.
            return True

        interval = None if token is NO_CANCELLATION else self.config.poll_interval

        while not job.finished:
            if token.is_cancelled:
                return False

            try:
                exit_code = job.wait_exit(interval)
            except OSError as e:
                logger.warning(f"Lost exit status of job {job.id} (pid={job.pid}): {e}")
                job.finalize(LOST_EXIT_CODE, wait_error=str(e))
                continue

            if exit_code is None:
                continue
            if not job.finalize(exit_code):
                # Another thread is finalizing; wait for it to finish.
                job.wait_finished(interval)

        return True

    def _drain_capture(self, job: Job) -> None:
        capture = job.capture
        if capture is None or not capture.running or capture.abandoned:
            return
        if not capture.join(self.config.capture_timeout):
            # A grandchild may still hold the pipes; later waits skip the join.
            capture.abandoned = True
            logger.debug(f"Capture of job {job.id} still open after exit")

    # ------------------------------------------------------------------
    # Lifetime and callbacks
    # ------------------------------------------------------------------

    def incref(self, job: Job) -> None:
        job.incref()

    def decref(self, job: Job) -> bool:
        """Drop a reference; see Job.decref()."""
        return job.decref()

    def set_exit_callback(self, job: Job, callback: ExitCallback, context: Any = None) -> None:
        """Register the job's exit callback (last registration wins).

        The callback runs on whichever thread finalizes the job, which is not
        necessarily the UI thread.
        """
        job.set_exit_callback(callback, context)

    # ------------------------------------------------------------------
    # Composite operations
    # ------------------------------------------------------------------

    def run_external(
        self,
        command: str,
        *,
        keep_in_fg: bool = False,
        skip_errors: bool = True,
        shell_mode: ShellMode = ShellMode.USER,
        supply_input: bool = False,
        working_dir: Optional[str] = None,
    ) -> Optional[TextIO]:
        """Start a command and hand it over to the registry.

        The caller holds no reference to the job. Unless `skip_errors` is
        set, error text captured from the command is reported through
        ``on_error`` once its streams are drained.

        Returns:
            The job's input stream when `supply_input` is set, else None

        Raises:
            SpawnError: If the command could not be started
        """
        flags = JobFlags.NONE
        if keep_in_fg:
            flags |= JobFlags.KEEP_IN_FG
        if supply_input:
            flags |= JobFlags.SUPPLY_INPUT

        job = self.spawner.spawn(
            command,
            flags,
            description=command,
            working_dir=working_dir,
            shell_mode=shell_mode,
        )
        if not skip_errors:
            job.set_exit_callback(self._report_errors_when_drained)

        input_stream = job.input
        job.decref()
        return input_stream

    def _report_errors_when_drained(self, job: Job, _context: Any) -> None:
        def report() -> None:
            errors = job.errors
            if errors:
                self.on_error(f"Background process error ({job.description})", errors)

        if job.capture is not None:
            job.capture.add_done_callback(report)
        else:
            report()

    def run_and_collect_errors(
        self,
        command: str,
        token: CancellationToken = NO_CANCELLATION,
        *,
        shell_mode: ShellMode = ShellMode.APP,
        working_dir: Optional[str] = None,
    ) -> JobResult:
        """Run a command, wait for it and report its error text on failure.

        A command fails when it exits with a non-zero code and wrote to its
        error stream. Cancelling `token` abandons the wait without killing
        the process.
        """
        try:
            job = self.spawner.spawn(
                command,
                JobFlags.NONE,
                description=command,
                working_dir=working_dir,
                shell_mode=shell_mode,
            )
        except SpawnError as e:
            return JobResult(ResultStatus.FAILED, errors=str(e))

        try:
            if not self._wait_until_finished(job, token):
                logger.info(f"Cancelled waiting for {command!r} (pid={job.pid})")
                return JobResult(ResultStatus.CANCELLED, errors=job.errors)

            self._drain_capture(job)
            exit_code = job.exit_code
            errors = job.errors

            if job.wait_error is not None:
                return JobResult(ResultStatus.FAILED, exit_code, job.wait_error)
            if exit_code != 0 and errors:
                return JobResult(ResultStatus.FAILED, exit_code, errors)
            return JobResult(ResultStatus.SUCCESS, exit_code, errors)
        finally:
            job.decref()

    # ------------------------------------------------------------------
    # Async adapters
    # ------------------------------------------------------------------

    async def wait_async(self, job: Job) -> int:
        """wait() on a worker thread, for async callers."""
        return await to_thread.run_sync(self.wait, job)

    async def run_and_collect_errors_async(
        self,
        command: str,
        token: CancellationToken = NO_CANCELLATION,
        *,
        shell_mode: ShellMode = ShellMode.APP,
        working_dir: Optional[str] = None,
    ) -> JobResult:
        """run_and_collect_errors() on a worker thread, for async callers."""
        call = functools.partial(
            self.run_and_collect_errors,
            command,
            token,
            shell_mode=shell_mode,
            working_dir=working_dir,
        )
        return await to_thread.run_sync(call)
