"""后台作业注册表。

提供进程级别的作业登记与回收，包括：
- JobRegistry: 活动作业的登记、注销、枚举
- 周期性非阻塞回收（reap_completed）
- 运行中作业的聚合计数（委托给 JobStats）

通常每个进程一个实例，在启动时创建、退出时调用 shutdown()。
测试中可以创建多个互相独立的实例。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from .job import LOST_EXIT_CODE, Job, JobKind, JobState
from .status import JobStats

__all__ = ["JobRegistry"]

logger = logging.getLogger(__name__)


class JobRegistry:
    """活动作业的注册表。

    管理所有尚未被释放的作业，提供：
    - 作业登记和注销
    - 非阻塞回收已结束的作业
    - 运行中作业计数与重绘标志

    线程安全：作业集合由注册表锁保护；作业自身状态由作业锁保护。
    枚举和回收都在快照上进行，回调不会在注册表锁内执行。

    Example:
        ```python
        registry = JobRegistry()
        spawner = Spawner(registry)

        job = spawner.spawn("make", JobFlags.CAPTURE_OUT)
        job.decref()  # 交给注册表管理

        # UI 每个 tick
        registry.reap_completed()
        if registry.stats.fetch_redraw():
            print(f"Jobs: {registry.running_count}")

        # 进程退出时
        registry.shutdown()
        ```
    """

    def __init__(self, stats: Optional[JobStats] = None) -> None:
        """初始化注册表。

        Args:
            stats: 计数对象（默认新建），可与 UI 共享
        """
        self.stats = stats if stats is not None else JobStats()
        self._lock = threading.RLock()
        self._jobs: Dict[int, Job] = {}

    def register(self, job: Job) -> None:
        """登记新作业并将其置为 Running。

        Args:
            job: 新创建的作业

        Raises:
            ValueError: 如果作业已登记
        """
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already registered")
            self._jobs[job.id] = job
            job.attach(self)

        logger.debug(f"Registered job: {job}")
        self.stats.adjust(+1)

    def unregister(self, job: Job) -> bool:
        """注销作业（幂等）。

        Args:
            job: 作业

        Returns:
            是否成功注销（作业存在则返回 True）
        """
        with self._lock:
            removed = self._jobs.pop(job.id, None)

        if removed is None:
            return False
        logger.debug(f"Unregistered job: {removed}")
        return True

    def job_finished(self, job: Job) -> None:
        """作业完成结束流程时调用，更新运行计数。"""
        if job in self:
            self.stats.adjust(-1)

    def get(self, job_id: int) -> Optional[Job]:
        """按编号获取作业，不存在则返回 None。"""
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> list[Job]:
        """列出所有登记的作业（按创建顺序）。"""
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.id)

    def for_each(self, visitor: Callable[[Job], None]) -> None:
        """对每个登记的作业调用 visitor（在快照上迭代）。"""
        for job in self.jobs():
            visitor(job)

    def reap_completed(self) -> int:
        """回收已经结束但尚未完成结束流程的作业。

        不会阻塞：只用非阻塞方式检查进程状态。可以与 JobController.wait()
        并发调用，每个作业的结束流程只会执行一次。

        Returns:
            本次调用完成结束流程的作业数量
        """
        reaped = 0
        for job in self.jobs():
            if job.state is not JobState.RUNNING:
                continue

            try:
                exit_code = job.poll()
            except OSError as e:
                logger.warning(f"Lost exit status of job {job.id} (pid={job.pid}): {e}")
                if job.finalize(LOST_EXIT_CODE, wait_error=str(e)):
                    reaped += 1
                continue

            if exit_code is not None and job.finalize(exit_code):
                reaped += 1

        if reaped > 0:
            logger.debug(f"Reaped {reaped} job(s)")
        return reaped

    @property
    def running_count(self) -> int:
        """运行中（尚未完成结束流程）的作业数量。"""
        return self.stats.running_count

    def has_running(self) -> bool:
        """是否存在运行中的作业。"""
        return any(not job.finished for job in self.jobs())

    def has_important_running(self) -> bool:
        """是否存在运行中的重要作业（退出前需要确认）。"""
        return any(job.important and not job.finished for job in self.jobs())

    def cancel_operations(self) -> int:
        """请求取消所有运行中的后台操作。

        只设置操作的取消令牌；外部进程不受影响。

        Returns:
            发起取消的操作数量
        """
        cancelled = 0
        for job in self.jobs():
            if job.kind is JobKind.OPERATION and job.bg_op is not None and not job.finished:
                if not job.bg_op.cancelled:
                    job.bg_op.cancel()
                    logger.info(f"Cancelled operation: {job}")
                    cancelled += 1
        return cancelled

    def shutdown(self) -> int:
        """释放所有作业的句柄并清空注册表。

        不会终止任何进程。

        Returns:
            清理的作业数量
        """
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()

        still_running = 0
        for job in jobs:
            if not job.finished:
                still_running += 1
            job.release()

        if still_running:
            self.stats.adjust(-still_running)
            logger.info(f"Registry shut down with {still_running} job(s) still running")
        logger.debug(f"Released {len(jobs)} job(s) on shutdown")
        return len(jobs)

    def __len__(self) -> int:
        """返回注册表中的作业数量。"""
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job: object) -> bool:
        """检查作业是否在注册表中。"""
        if not isinstance(job, Job):
            return False
        with self._lock:
            return self._jobs.get(job.id) is job

    def __repr__(self) -> str:
        return f"JobRegistry(jobs={len(self)}, running={self.running_count})"
