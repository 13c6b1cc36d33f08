"""Job 实体测试。

测试作业的基本语义（不启动外部进程）：
- 状态单调推进
- 结束流程只执行一次
- 引用计数与释放
- 退出回调恰好触发一次
"""

from __future__ import annotations

import threading

import pytest

from bg_jobs.job import Job, JobKind, JobState
from bg_jobs.registry import JobRegistry


def _operation_job(registry: JobRegistry | None = None) -> Job:
    job = Job(command="op", kind=JobKind.OPERATION)
    if registry is not None:
        registry.register(job)
    return job


class TestJobBasics:
    """Job 基本属性测试。"""

    def test_initial_state(self):
        """新作业处于 Starting，引用计数为 1。"""
        job = Job(command="true")
        assert job.state is JobState.STARTING
        assert job.refcount == 1
        assert job.exit_code is None
        assert job.errors == ""
        assert job.pid is None

    def test_description_defaults_to_command(self):
        """未提供描述时使用命令文本。"""
        assert Job(command="ls -l").description == "ls -l"
        assert Job(command="ls -l", description="listing").description == "listing"

    def test_ids_are_unique(self):
        """作业编号唯一。"""
        assert Job(command="a").id != Job(command="b").id

    def test_register_moves_to_running(self, registry: JobRegistry):
        """登记后进入 Running。"""
        job = _operation_job(registry)
        assert job.state is JobState.RUNNING

    def test_append_errors(self):
        """错误文本按顺序累积。"""
        job = Job(command="x")
        job.append_errors("one ")
        job.append_errors("")
        job.append_errors("two")
        assert job.errors == "one two"

    def test_read_output_without_capture(self):
        """没有捕获时读取输出返回空列表。"""
        assert Job(command="x").read_output_lines() == []

    def test_close_input_is_idempotent(self):
        """没有输入流时关闭输入是无操作。"""
        job = Job(command="x")
        job.close_input()
        job.close_input()
        assert job.input is None


class TestFinalize:
    """结束流程测试。"""

    def test_finalize_records_exit_and_reaps(self, registry: JobRegistry):
        """结束流程记录退出码并进入 Reaped。"""
        job = _operation_job(registry)
        assert job.finalize(7) is True
        assert job.exit_code == 7
        assert job.state is JobState.REAPED
        assert job.finished is True

    def test_finalize_only_once(self, registry: JobRegistry):
        """第二次结束流程不生效。"""
        job = _operation_job(registry)
        assert job.finalize(1) is True
        assert job.finalize(2) is False
        assert job.exit_code == 1

    def test_concurrent_finalize_runs_once(self, registry: JobRegistry):
        """多线程并发结束，回调只触发一次。"""
        job = _operation_job(registry)
        calls: list[int] = []
        job.set_exit_callback(lambda j, ctx: calls.append(j.exit_code))

        barrier = threading.Barrier(8)
        results: list[bool] = []

        def worker() -> None:
            barrier.wait()
            results.append(job.finalize(0))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert calls == [0]
        assert registry.running_count == 0

    def test_callback_sees_exit_code_before_count_drops(self, registry: JobRegistry):
        """回调执行时退出码已记录，运行计数尚未减少。"""
        job = _operation_job(registry)
        seen: dict[str, object] = {}

        def on_exit(j: Job, ctx: object) -> None:
            seen["exit_code"] = j.exit_code
            seen["state"] = j.state
            seen["running"] = registry.running_count
            seen["ctx"] = ctx

        job.set_exit_callback(on_exit, "context")
        job.finalize(3)

        assert seen == {
            "exit_code": 3,
            "state": JobState.EXITED,
            "running": 1,
            "ctx": "context",
        }

    def test_last_callback_wins(self, registry: JobRegistry):
        """重复注册回调时以最后一次为准。"""
        job = _operation_job(registry)
        calls: list[str] = []
        job.set_exit_callback(lambda j, ctx: calls.append("first"))
        job.set_exit_callback(lambda j, ctx: calls.append("second"))
        job.finalize(0)
        assert calls == ["second"]

    def test_late_callback_fires_once(self, registry: JobRegistry):
        """结束后才注册的回调立即触发，且只触发一次。"""
        job = _operation_job(registry)
        job.finalize(0)

        calls: list[str] = []
        job.set_exit_callback(lambda j, ctx: calls.append("late"))
        job.set_exit_callback(lambda j, ctx: calls.append("later"))
        assert calls == ["late"]

    def test_callback_errors_are_swallowed(self, registry: JobRegistry):
        """回调异常不影响结束流程。"""
        job = _operation_job(registry)

        def boom(j: Job, ctx: object) -> None:
            raise RuntimeError("boom")

        job.set_exit_callback(boom)
        assert job.finalize(0) is True
        assert job.state is JobState.REAPED

    def test_wait_finished_inside_callback_returns(self, registry: JobRegistry):
        """回调内等待自身结束流程不会阻塞。"""
        job = _operation_job(registry)
        seen: list[bool] = []
        job.set_exit_callback(lambda j, ctx: seen.append(j.wait_finished()))

        worker = threading.Thread(target=job.finalize, args=(0,))
        worker.start()
        worker.join(5)

        assert not worker.is_alive()
        assert seen == [False]
        assert job.wait_finished(0) is True

    def test_finalizing_thread_is_tracked(self, registry: JobRegistry):
        """只有执行结束流程的线程在回调期间被识别。"""
        job = _operation_job(registry)
        inside: list[bool] = []
        job.set_exit_callback(lambda j, ctx: inside.append(j.finalizing_on_current_thread()))

        assert job.finalizing_on_current_thread() is False
        job.finalize(0)

        assert inside == [True]
        assert job.finalizing_on_current_thread() is False


class TestRefcount:
    """引用计数测试。"""

    def test_decref_on_running_job_keeps_it(self, registry: JobRegistry):
        """运行中的作业引用计数归零也不会被移除。"""
        job = _operation_job(registry)
        assert job.decref() is False
        assert job in registry

        job.finalize(0)
        assert job not in registry

    def test_decref_after_reap_removes(self, registry: JobRegistry):
        """Reaped 作业引用计数归零时被移除。"""
        job = _operation_job(registry)
        job.finalize(0)
        assert job in registry

        assert job.decref() is True
        assert job not in registry

    def test_incref_keeps_job_alive(self, registry: JobRegistry):
        """额外引用让作业在结束后仍可读取。"""
        job = _operation_job(registry)
        job.incref()
        job.finalize(5)

        assert job.decref() is False
        assert job in registry
        assert job.exit_code == 5

        assert job.decref() is True
        assert job not in registry
        assert job.exit_code == 5

    def test_double_decref_does_not_crash(self, registry: JobRegistry):
        """重复 decref 不会崩溃，计数不会变为负数。"""
        job = _operation_job(registry)
        job.finalize(0)
        assert job.decref() is True
        assert job.decref() is False
        assert job.refcount == 0

    @pytest.mark.parametrize("extra_refs", [0, 1, 3])
    def test_release_happens_once(self, registry: JobRegistry, extra_refs: int):
        """多个持有者依次释放时只移除一次。"""
        job = _operation_job(registry)
        for _ in range(extra_refs):
            job.incref()
        job.finalize(0)

        removed = [job.decref() for _ in range(extra_refs + 1)]
        assert removed.count(True) == 1
        assert removed[-1] is True
