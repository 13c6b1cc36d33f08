"""SignalManager 模块测试。

测试信号管理器的基本功能：
- 信号处理策略（放弃等待而不是杀死子进程）
- 配置支持
- 双击退出
"""

from __future__ import annotations

import os
import signal
import sys
from unittest import mock

import pytest

from bg_jobs.cancellation import CancellationToken
from bg_jobs.config import SigintMode, reload_config
from bg_jobs.signal_manager import SignalManager


class TestSignalManagerInit:
    """SignalManager 初始化测试。"""

    def test_init_with_defaults(self):
        """使用默认配置初始化。"""
        with mock.patch.dict(os.environ, {}, clear=False):
            # 确保没有相关环境变量
            os.environ.pop("BGJ_SIGINT_MODE", None)
            os.environ.pop("BGJ_SIGINT_DOUBLE_TAP_WINDOW", None)

            # 重新加载配置
            reload_config()

            manager = SignalManager()

            assert manager.sigint_mode == SigintMode.CANCEL
            assert manager.double_tap_window == 1.0
        reload_config()

    def test_init_with_custom_values(self):
        """使用自定义值初始化。"""
        manager = SignalManager(
            sigint_mode=SigintMode.EXIT,
            double_tap_window=2.0,
        )

        assert manager.sigint_mode == SigintMode.EXIT
        assert manager.double_tap_window == 2.0


class TestTrack:
    """等待令牌登记测试。"""

    def test_track_registers_and_removes(self):
        """with 块内登记，退出后移除。"""
        manager = SignalManager()
        token = CancellationToken()

        assert manager.has_active_waits() is False
        with manager.track(token) as tracked:
            assert tracked is token
            assert manager.has_active_waits() is True
        assert manager.has_active_waits() is False

    def test_cancelled_token_is_not_active(self):
        """已取消的令牌不算活动等待。"""
        manager = SignalManager()
        token = CancellationToken()
        with manager.track(token):
            token.cancel()
            assert manager.has_active_waits() is False
            assert manager.cancel_all() == 0


class TestSignalManagerSigintCancel:
    """SignalManager SIGINT CANCEL 模式测试。"""

    def test_sigint_with_active_waits_cancels_all(self):
        """有活动等待时 SIGINT 放弃所有等待。"""
        manager = SignalManager(sigint_mode=SigintMode.CANCEL)
        first, second = CancellationToken(), CancellationToken()

        with manager.track(first), manager.track(second):
            # 模拟 SIGINT
            manager._handle_sigint()

            # 验证等待被放弃
            assert first.is_cancelled is True
            assert second.is_cancelled is True

        # 验证没有请求关闭
        assert manager.is_shutdown_requested is False

    def test_sigint_without_active_waits_shuts_down(self):
        """没有活动等待时 SIGINT 请求关闭。"""
        manager = SignalManager(sigint_mode=SigintMode.CANCEL)

        # 模拟 SIGINT
        manager._handle_sigint()

        # 验证请求关闭
        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is False


class TestSignalManagerSigintExit:
    """SignalManager SIGINT EXIT 模式测试。"""

    def test_sigint_always_shuts_down(self):
        """EXIT 模式下 SIGINT 始终请求关闭。"""
        manager = SignalManager(sigint_mode=SigintMode.EXIT)
        token = CancellationToken()

        with manager.track(token):
            # 模拟 SIGINT
            manager._handle_sigint()

        # 验证请求关闭（即使有活动等待）
        assert manager.is_shutdown_requested is True

        # 验证等待没有被放弃
        assert token.is_cancelled is False


class TestSignalManagerSigintCancelThenExit:
    """SignalManager SIGINT CANCEL_THEN_EXIT 模式测试。"""

    def test_sigint_first_cancels_second_exits(self):
        """CANCEL_THEN_EXIT 模式：第一次放弃等待，第二次退出。"""
        manager = SignalManager(
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=1.0,
        )
        token = CancellationToken()

        with manager.track(token):
            # 第一次 SIGINT
            manager._handle_sigint()

            # 验证等待被放弃
            assert token.is_cancelled is True

            # 验证标记为已请求关闭，但尚未强制退出
            assert manager.is_shutdown_requested is True
            assert manager.is_force_exit is False

            # 第二次 SIGINT（在窗口内）
            manager._handle_sigint()

        assert manager.is_force_exit is True

    def test_sigint_without_active_waits_shuts_down(self):
        """CANCEL_THEN_EXIT 模式：没有活动等待时直接关闭。"""
        manager = SignalManager(sigint_mode=SigintMode.CANCEL_THEN_EXIT)

        # 模拟 SIGINT
        manager._handle_sigint()

        # 验证请求关闭
        assert manager.is_shutdown_requested is True


class TestSignalManagerDoubleTap:
    """SignalManager 双击退出测试。"""

    def test_double_tap_forces_exit(self):
        """双击 SIGINT 设置强制退出标志。

        不直接调用 sys.exit(130)，而是设置 is_force_exit 标志，
        让调用方在清理完成后再退出。
        """
        manager = SignalManager(
            sigint_mode=SigintMode.CANCEL_THEN_EXIT,
            double_tap_window=1.0,
        )

        # 设置状态：已请求关闭
        manager._shutdown_requested = True

        # 第一次 SIGINT
        manager._handle_sigint()

        # 第二次 SIGINT（在窗口内）- 应该设置强制退出标志
        manager._handle_sigint()

        # 验证强制退出标志被设置
        assert manager.is_force_exit is True
        assert manager.is_shutdown_requested is True

    def test_slow_second_tap_does_not_force(self):
        """超出窗口的第二次 SIGINT 不会强制退出。"""
        manager = SignalManager(
            sigint_mode=SigintMode.CANCEL,
            double_tap_window=0.1,
        )

        manager._handle_sigint()
        manager._last_sigint_time -= 10
        manager._handle_sigint()

        assert manager.is_shutdown_requested is True
        assert manager.is_force_exit is False


class TestSignalManagerSigterm:
    """SignalManager SIGTERM 测试。"""

    def test_sigterm_cancels_all_and_shuts_down(self):
        """SIGTERM 放弃所有等待并关闭。"""
        manager = SignalManager()
        token = CancellationToken()

        with manager.track(token):
            # 模拟 SIGTERM
            manager._handle_sigterm()

        # 验证等待被放弃
        assert token.is_cancelled is True

        # 验证请求关闭
        assert manager.is_shutdown_requested is True

    def test_on_signal_dispatch(self):
        """_on_signal 按信号编号分发。"""
        manager = SignalManager()
        with mock.patch.object(manager, "_handle_sigint") as on_int, \
                mock.patch.object(manager, "_handle_sigterm") as on_term:
            manager._on_signal(signal.SIGINT, None)
            manager._on_signal(signal.SIGTERM, None)

        on_int.assert_called_once_with()
        on_term.assert_called_once_with()


class TestSignalManagerCallbacks:
    """SignalManager 回调测试。"""

    def test_on_shutdown_callback(self):
        """关闭时调用回调。"""
        callback = mock.MagicMock()

        manager = SignalManager(
            sigint_mode=SigintMode.EXIT,
            on_shutdown=callback,
        )

        # 模拟 SIGINT（EXIT 模式直接关闭）
        manager._handle_sigint()

        # 验证回调被调用
        callback.assert_called_once()

    def test_on_shutdown_callback_errors_are_swallowed(self):
        """回调异常不影响关闭。"""
        manager = SignalManager(
            sigint_mode=SigintMode.EXIT,
            on_shutdown=mock.MagicMock(side_effect=RuntimeError("boom")),
        )

        manager._handle_sigint()

        assert manager.is_shutdown_requested is True


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal handling")
class TestSignalManagerStartStop:
    """SignalManager 启动/停止测试（仅 POSIX）。"""

    def test_start_and_stop(self):
        """启动和停止信号管理器，恢复原始处理器。"""
        original_int = signal.getsignal(signal.SIGINT)
        original_term = signal.getsignal(signal.SIGTERM)
        manager = SignalManager()

        # 启动
        manager.start()
        try:
            assert manager._running is True
            assert signal.getsignal(signal.SIGINT) == manager._on_signal
            assert signal.getsignal(signal.SIGTERM) == manager._on_signal
        finally:
            # 停止
            manager.stop()

        assert manager._running is False
        assert signal.getsignal(signal.SIGINT) == original_int
        assert signal.getsignal(signal.SIGTERM) == original_term

    def test_stop_without_start(self):
        """未启动时停止是无操作。"""
        manager = SignalManager()
        manager.stop()
        assert manager._running is False

    def test_real_sigint_abandons_wait(self):
        """真实 SIGINT 放弃登记的等待。"""
        manager = SignalManager(sigint_mode=SigintMode.CANCEL)
        token = CancellationToken()

        manager.start()
        try:
            with manager.track(token):
                os.kill(os.getpid(), signal.SIGINT)
                assert token.wait(timeout=5) is True
        finally:
            manager.stop()

        assert manager.is_shutdown_requested is False
