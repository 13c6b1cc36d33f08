"""In-process background operations.

Long-running work such as copying or moving files runs on a worker thread
but is tracked like any other job: it counts toward the running-job total,
goes through the same finalize sequence and fires the same exit callback.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from .cancellation import CancellationToken
from .job import Job, JobKind
from .registry import JobRegistry

__all__ = ["BgOp", "TaskFunc", "execute"]

logger = logging.getLogger(__name__)

TaskFunc = Callable[["BgOp"], None]


class BgOp:
    """Progress and cancellation state shared with a running task.

    Attributes:
        total: Number of steps the task expects (0 = unknown)
        token: Cancellation token the task should poll
    """

    def __init__(self, descr: str = "", total: int = 0) -> None:
        self._lock = threading.Lock()
        self._descr = descr
        self._done = 0
        self.total = total
        self.token = CancellationToken()

    @property
    def descr(self) -> str:
        with self._lock:
            return self._descr

    @property
    def done(self) -> int:
        with self._lock:
            return self._done

    @property
    def progress(self) -> int:
        """Completion percentage, or -1 when the total is unknown."""
        with self._lock:
            if self.total <= 0:
                return -1
            return min(100, self._done * 100 // self.total)

    @property
    def cancelled(self) -> bool:
        return self.token.is_cancelled

    def cancel(self) -> None:
        self.token.cancel()

    def set_descr(self, descr: str) -> None:
        with self._lock:
            self._descr = descr

    def advance(self, steps: int = 1) -> None:
        with self._lock:
            self._done += steps

    def __repr__(self) -> str:
        return f"BgOp(descr={self.descr!r}, done={self.done}, total={self.total})"


def execute(
    registry: JobRegistry,
    description: str,
    task: TaskFunc,
    *,
    op_descr: str = "",
    total: int = 0,
    important: bool = False,
) -> Job:
    """Run `task(bg_op)` on a worker thread as a registered job.

    The job's exit code is 0 when the task returns and 1 when it raises; the
    exception text is stored as the job's error text. The returned job
    carries one reference owned by the caller.

    Args:
        registry: Registry to track the job in
        description: Job description
        task: Callable receiving the BgOp
        op_descr: Initial progress description (defaults to description)
        total: Expected number of steps
        important: Whether quitting should warn about this job

    Returns:
        The running job
    """
    bg_op = BgOp(op_descr or description, total)
    job = Job(
        command=description,
        description=description,
        kind=JobKind.OPERATION,
        important=important,
    )
    job.bg_op = bg_op

    worker = threading.Thread(
        target=_run_task,
        args=(job, task, bg_op),
        name=f"bg-jobs-op-{job.id}",
        daemon=True,
    )
    registry.register(job)
    worker.start()

    logger.debug(f"Started background operation: {job}")
    return job


def _run_task(job: Job, task: TaskFunc, bg_op: BgOp) -> None:
    exit_code = 0
    try:
        task(bg_op)
    except Exception as e:
        logger.warning(f"Background operation {job.description!r} failed: {e}")
        job.append_errors(f"{type(e).__name__}: {e}")
        exit_code = 1
    finally:
        job.complete_task(exit_code)
