"""信号管理模块。

实现信号隔离策略，将 OS 信号转换为等待级别的操作：
- SIGINT: 放弃正在进行的等待（而不是直接退出进程，也不杀死子进程）
- SIGTERM: 优雅退出（放弃所有等待 + 请求关闭）

支持的配置：
- BGJ_SIGINT_MODE: cancel | exit | cancel_then_exit
- BGJ_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间

信号处理器只能在主线程中安装。
"""

from __future__ import annotations

import contextlib
import logging
import signal
import sys
import threading
import time
from typing import Any, Callable, Iterator, Optional

from .cancellation import CancellationToken
from .config import SigintMode, get_config

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    管理 SIGINT 和 SIGTERM 信号的处理，实现信号隔离策略：
    - 将 SIGINT 转换为"取消活动等待"操作
    - 将 SIGTERM 转换为"优雅退出"操作

    Example:
        ```python
        signal_manager = SignalManager()
        signal_manager.start()
        try:
            token = CancellationToken()
            with signal_manager.track(token):
                exit_code = controller.wait_cancellable(job, token)
        finally:
            signal_manager.stop()
        ```

    Attributes:
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击退出窗口时间（秒）
    """

    def __init__(
        self,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 关闭时的回调函数
        """
        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._lock = threading.Lock()
        self._tokens: list[CancellationToken] = []
        self._last_sigint_time = float("-inf")
        self._shutdown_requested: bool = False
        self._force_exit: bool = False  # 双击 SIGINT 触发的强制退出标志
        self._original_handlers: dict[int, Any] = {}
        self._running: bool = False

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    def start(self) -> None:
        """安装 SIGINT / SIGTERM 处理器（必须在主线程调用）。"""
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._running = True
        self._original_handlers[signal.SIGINT] = signal.signal(
            signal.SIGINT, self._on_signal
        )
        if sys.platform != "win32":
            self._original_handlers[signal.SIGTERM] = signal.signal(
                signal.SIGTERM, self._on_signal
            )

        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"double_tap_window={self.double_tap_window}s)"
        )

    def stop(self) -> None:
        """恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False
        for signum, handler in self._original_handlers.items():
            try:
                signal.signal(signum, handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring handler for signal {signum}: {e}")
        self._original_handlers.clear()

        logger.debug("Signal handlers removed")

    @contextlib.contextmanager
    def track(self, token: CancellationToken) -> Iterator[CancellationToken]:
        """在 with 块内登记一个等待令牌，SIGINT 时会被取消。"""
        with self._lock:
            self._tokens.append(token)
        try:
            yield token
        finally:
            with self._lock:
                if token in self._tokens:
                    self._tokens.remove(token)

    def has_active_waits(self) -> bool:
        """是否存在未取消的等待。"""
        with self._lock:
            return any(not token.is_cancelled for token in self._tokens)

    def cancel_all(self) -> int:
        """取消所有登记的等待。

        Returns:
            本次取消的令牌数量
        """
        with self._lock:
            tokens = [token for token in self._tokens if not token.is_cancelled]
        for token in tokens:
            token.cancel()
        if tokens:
            logger.info(f"Cancelled {len(tokens)} active wait(s)")
        return len(tokens)

    def _on_signal(self, signum: int, frame: Any) -> None:
        if signum == signal.SIGINT:
            self._handle_sigint()
        else:
            self._handle_sigterm()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 已请求关闭且在双击窗口内再次收到：强制退出
        - EXIT 模式，或没有活动等待：请求关闭
        - 其余情况放弃所有等待（子进程继续运行）；CANCEL_THEN_EXIT 模式下
          同时标记已请求关闭，窗口内的下一次 SIGINT 即强制退出
        """
        now = time.monotonic()
        double_tap = (
            self._shutdown_requested
            and now - self._last_sigint_time < self.double_tap_window
        )
        self._last_sigint_time = now

        if double_tap:
            logger.warning("Second SIGINT within window, forcing exit")
            self._force_shutdown()
            return

        mode = self.sigint_mode.value
        if self.sigint_mode is SigintMode.EXIT or not self.has_active_waits():
            logger.info(f"SIGINT received (mode={mode}), requesting shutdown")
            self._request_shutdown()
            return

        count = self.cancel_all()
        if self.sigint_mode is SigintMode.CANCEL_THEN_EXIT:
            logger.info(
                f"SIGINT received (mode={mode}), abandoned {count} wait(s). "
                f"Press Ctrl+C again within {self.double_tap_window}s to exit."
            )
            self._shutdown_requested = True
        else:
            logger.info(f"SIGINT received (mode={mode}), abandoned {count} wait(s)")

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：放弃所有等待并请求关闭。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        self.cancel_all()
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

    def _force_shutdown(self) -> None:
        """强制退出。

        只设置 force_exit 标志，实际的进程退出由调用方执行（见 app.main）。
        """
        self._force_exit = True
        self.cancel_all()
        self._request_shutdown()
