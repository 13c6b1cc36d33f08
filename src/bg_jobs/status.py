"""运行中作业计数与重绘标志。

JobStats 保存注册表维护的聚合计数（处于 Running 状态的作业数量），
并在计数变化时设置"需要重绘"标志，供 UI 循环决定是否刷新状态指示器。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

__all__ = ["JobStats"]

logger = logging.getLogger(__name__)


class JobStats:
    """聚合作业计数。

    线程安全：计数和重绘标志由内部锁保护，观察者回调在锁外调用。

    Example:
        ```python
        stats = JobStats()
        stats.add_observer(lambda count: ui_vars.set("jobcount", count))

        # UI 每个 tick
        if stats.fetch_redraw():
            repaint_status_bar()
        ```
    """

    def __init__(self) -> None:
        """初始化计数为 0，不需要重绘。"""
        self._lock = threading.Lock()
        self._running = 0
        self._redraw_pending = False
        self._observers: list[Callable[[int], None]] = []

    @property
    def running_count(self) -> int:
        """当前运行中的作业数量。"""
        with self._lock:
            return self._running

    @property
    def redraw_pending(self) -> bool:
        """是否需要重绘（不消费标志）。"""
        with self._lock:
            return self._redraw_pending

    def fetch_redraw(self) -> bool:
        """读取并清除重绘标志。

        Returns:
            调用前是否需要重绘
        """
        with self._lock:
            pending = self._redraw_pending
            self._redraw_pending = False
            return pending

    def adjust(self, delta: int) -> int:
        """调整计数。

        计数变化时设置重绘标志并通知观察者；delta 为 0 时什么也不做。

        Args:
            delta: 计数变化量

        Returns:
            调整后的计数
        """
        if delta == 0:
            return self.running_count

        with self._lock:
            self._running = max(0, self._running + delta)
            self._redraw_pending = True
            count = self._running
            observers = list(self._observers)

        logger.debug(f"Running job count changed to {count}")
        for observer in observers:
            try:
                observer(count)
            except Exception as e:
                logger.warning(f"Error in jobcount observer: {e}")
        return count

    def add_observer(self, observer: Callable[[int], None]) -> None:
        """添加计数变化观察者。

        观察者在改变计数的线程上被调用，不一定是 UI 线程。

        Args:
            observer: 接收新计数的回调
        """
        with self._lock:
            self._observers.append(observer)

    def remove_observer(self, observer: Callable[[int], None]) -> None:
        """移除计数变化观察者（不存在时忽略）。"""
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def __repr__(self) -> str:
        return (
            f"JobStats(running={self.running_count}, "
            f"redraw_pending={self.redraw_pending})"
        )
