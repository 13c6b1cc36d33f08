"""Job entity: one external process (or in-process operation) and its state.

This module provides:
- JobState: monotonic lifecycle Starting -> Running -> Exited -> Reaped
- JobFlags: spawn-time I/O wiring flags
- Job: reference-counted handle with captured output and error text

Key design points:
- All mutable fields are guarded by the job's own lock
- The finalize sequence runs exactly once per job, whichever thread
  (explicit waiter or periodic reaper) observes the exit first
- Handles are released only when the job is Reaped and unreferenced
"""

from __future__ import annotations

import itertools
import logging
import subprocess
import threading
from datetime import datetime
from enum import Enum, Flag, IntEnum, auto
from typing import TYPE_CHECKING, Any, Callable, Optional, TextIO

if TYPE_CHECKING:
    from .registry import JobRegistry
    from .runtime.capture import OutputBuffer, StreamCapture
    from .tasks import BgOp

__all__ = [
    "ExitCallback",
    "Job",
    "JobFlags",
    "JobKind",
    "JobState",
]

logger = logging.getLogger(__name__)

# Exit code recorded when the exit status could not be collected
LOST_EXIT_CODE = -1

ExitCallback = Callable[["Job", Any], None]

_job_ids = itertools.count(1)


class JobState(IntEnum):
    """Job lifecycle; transitions only move forward."""

    STARTING = 0
    RUNNING = 1
    EXITED = 2
    REAPED = 3


class JobFlags(Flag):
    """How the process's standard streams are wired."""

    NONE = 0
    CAPTURE_OUT = auto()
    SUPPLY_INPUT = auto()
    KEEP_IN_FG = auto()


class JobKind(Enum):
    COMMAND = "command"
    OPERATION = "operation"


class Job:
    """Handle of one background job.

    A job starts with one reference, owned by whoever created it. Every
    holder calls ``decref()`` when done; the job leaves its registry once it
    is Reaped and no references remain.

    Attributes:
        id: Registry-unique job number
        kind: External command or in-process operation
        command: Originating command text
        description: Human-readable description
        working_dir: Working directory used at spawn time (None = inherited)
        flags: Spawn flags (immutable)
        input: Writable text stream when SUPPLY_INPUT was requested
        capture: Stream capture helpers (None for operations)
        bg_op: Progress object of an operation job
        important: Whether abandoning this job on quit needs confirmation
        created_at: Creation time
    """

    def __init__(
        self,
        *,
        command: str,
        description: str = "",
        working_dir: Optional[str] = None,
        flags: JobFlags = JobFlags.NONE,
        kind: JobKind = JobKind.COMMAND,
        process: Optional[subprocess.Popen] = None,
        important: bool = False,
    ) -> None:
        self.id = next(_job_ids)
        self.kind = kind
        self.command = command
        self.description = description or command
        self.working_dir = working_dir
        self.flags = flags
        self.important = important
        self.created_at = datetime.now()

        self.input: Optional[TextIO] = None
        self.capture: Optional[StreamCapture] = None
        self.bg_op: Optional[BgOp] = None

        self._process = process
        self._task_done = threading.Event()
        self._task_exit_code = 0

        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._state = JobState.STARTING
        self._exit_code: Optional[int] = None
        self._errors = ""
        self._refcount = 1
        self._finalizing = False
        self._finalizer: Optional[int] = None
        self._released = False
        self._wait_error: Optional[str] = None
        self._exit_cb: Optional[ExitCallback] = None
        self._exit_ctx: Any = None
        self._exit_cb_fired = False
        self._registry: Optional[JobRegistry] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def state(self) -> JobState:
        with self._lock:
            return self._state

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code, or None while the job has not exited."""
        with self._lock:
            return self._exit_code

    @property
    def errors(self) -> str:
        """Snapshot of the error accumulator."""
        with self._lock:
            return self._errors

    @property
    def refcount(self) -> int:
        with self._lock:
            return self._refcount

    @property
    def finished(self) -> bool:
        """Whether the finalize sequence has completed."""
        return self._finished.is_set()

    @property
    def wait_error(self) -> Optional[str]:
        """Why the exit status was lost, if it was."""
        with self._lock:
            return self._wait_error

    @property
    def output(self) -> Optional[OutputBuffer]:
        return self.capture.output if self.capture is not None else None

    def read_output_lines(self, timeout: Optional[float] = None) -> list[str]:
        """Captured stdout lines, waiting for end of stream up to timeout."""
        output = self.output
        if output is None:
            return []
        return output.read_lines(timeout)

    # ------------------------------------------------------------------
    # Mutators used by capture threads and callers
    # ------------------------------------------------------------------

    def append_errors(self, text: str) -> None:
        """Append captured error text."""
        if not text:
            return
        with self._lock:
            self._errors += text

    def close_input(self) -> None:
        """Signal end of input to the process (idempotent)."""
        with self._lock:
            stream = self.input
            self.input = None
        if stream is None:
            return
        try:
            stream.close()
        except OSError as e:
            # The reader went away first (EPIPE); nothing left to deliver.
            logger.debug(f"Closing input of job {self.id} failed: {e}")

    def set_exit_callback(self, callback: ExitCallback, context: Any = None) -> None:
        """Register the exit callback, replacing any previous one.

        The callback fires once, on whichever thread finalizes the job. If the
        job already finished without having fired a callback, the new one is
        invoked right away on the calling thread.
        """
        with self._lock:
            self._exit_cb = callback
            self._exit_ctx = context
            exited = self._state >= JobState.EXITED

        if exited:
            self._fire_exit_callback()

    def incref(self) -> None:
        with self._lock:
            if self._released:
                logger.warning(f"incref on released job {self.id}")
            self._refcount += 1

    def decref(self) -> bool:
        """Drop one reference.

        Returns:
            Whether this call released the job and removed it from its registry
        """
        with self._lock:
            if self._refcount <= 0:
                logger.warning(f"decref on job {self.id} without references")
                return False
            self._refcount -= 1
            remove = self._refcount == 0 and self._state is JobState.REAPED

        if remove:
            self._discard()
        return remove

    # ------------------------------------------------------------------
    # Process observation
    # ------------------------------------------------------------------

    def poll(self) -> Optional[int]:
        """Non-blocking check for exit.

        Returns:
            Exit code if the process (or operation) has ended, else None

        Raises:
            OSError: If the exit status cannot be collected
        """
        if self._process is not None:
            return self._process.poll()
        if self._task_done.is_set():
            return self._task_exit_code
        return None

    def wait_exit(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the process (or operation) ends or timeout elapses.

        Returns:
            Exit code, or None on timeout

        Raises:
            OSError: If the exit status cannot be collected
        """
        if self._process is not None:
            try:
                return self._process.wait(timeout)
            except subprocess.TimeoutExpired:
                return None
        if self._task_done.wait(timeout):
            return self._task_exit_code
        return None

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        """Block until the finalize sequence has completed.

        Returns False at once when called from the thread running the
        sequence (i.e. from inside the exit callback).
        """
        if self.finalizing_on_current_thread():
            return False
        return self._finished.wait(timeout)

    def finalizing_on_current_thread(self) -> bool:
        """Whether the calling thread is running this job's finalize sequence."""
        with self._lock:
            return self._finalizer == threading.get_ident()

    # ------------------------------------------------------------------
    # Lifecycle (registry / controller side)
    # ------------------------------------------------------------------

    def finalize(self, exit_code: int, wait_error: Optional[str] = None) -> bool:
        """Run the finalize sequence if nobody has yet.

        record exit code -> Exited -> exit callback -> Reaped -> registry
        count update -> release if unreferenced.

        Returns:
            Whether this call performed the sequence
        """
        with self._lock:
            if self._finalizing or self._state >= JobState.EXITED:
                return False
            self._finalizing = True
            self._finalizer = threading.get_ident()
            self._exit_code = exit_code
            self._wait_error = wait_error
            self._state = JobState.EXITED

        logger.debug(f"Job {self.id} (pid={self.pid}) exited with code {exit_code}")

        self._fire_exit_callback()

        with self._lock:
            self._state = JobState.REAPED
            self._finalizing = False
            self._finalizer = None
            remove = self._refcount == 0
            registry = self._registry

        if registry is not None:
            registry.job_finished(self)
        self._finished.set()

        if remove:
            self._discard()
        return True

    def attach(self, registry: JobRegistry) -> None:
        """Bind to a registry and move from Starting to Running."""
        with self._lock:
            self._registry = registry
            if self._state is JobState.STARTING:
                self._state = JobState.RUNNING

    def release(self) -> None:
        """Close OS handles still owned by the job (idempotent).

        Capture pipes are closed by their reader threads at end of stream.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
        self.close_input()
        logger.debug(f"Released job {self.id}")

    def _discard(self) -> None:
        self.release()
        with self._lock:
            registry = self._registry
        if registry is not None:
            registry.unregister(self)

    def _fire_exit_callback(self) -> None:
        with self._lock:
            if self._exit_cb_fired or self._exit_cb is None:
                return
            self._exit_cb_fired = True
            callback, context = self._exit_cb, self._exit_ctx

        try:
            callback(self, context)
        except Exception as e:
            logger.warning(f"Error in exit callback of job {self.id}: {e}")

    def complete_task(self, exit_code: int) -> None:
        self._task_exit_code = exit_code
        self._task_done.set()

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, pid={self.pid}, "
            f"state={self.state.name}, "
            f"exit_code={self.exit_code}, "
            f"description={self.description!r})"
        )
