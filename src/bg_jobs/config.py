"""BGJ 环境变量配置管理。

环境变量:
    BGJ_SHELL: 用户 shell（ShellMode.USER 使用）
        - 未设置时使用 $SHELL，再退回 /bin/sh
        - Windows 上退回 %COMSPEC% / cmd.exe

    BGJ_POLL_INTERVAL: 等待循环中检查取消令牌的间隔（秒）
        - 默认 0.05 秒，限制在 0.001-1.0 范围

    BGJ_CAPTURE_TIMEOUT: 进程退出后等待输出读取线程排空管道的时间（秒）
        - 默认 2.0 秒，限制在 0-60 范围

    BGJ_ENCODING: 捕获输出和输入流的文本编码
        - 默认 utf-8

    BGJ_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    BGJ_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 放弃正在进行的等待（无等待则退出）(默认)
        - exit = 直接退出
        - cancel_then_exit = 先放弃等待，第二次才退出

    BGJ_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import codecs
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = [
    "Config",
    "SigintMode",
    "APP_SHELL",
    "load_config",
    "get_config",
    "reload_config",
]

IS_WINDOWS = sys.platform == "win32"

# 应用自带的固定 shell（ShellMode.APP）
APP_SHELL = "cmd.exe" if IS_WINDOWS else "/bin/sh"

DEFAULT_POLL_INTERVAL = 0.05
DEFAULT_CAPTURE_TIMEOUT = 2.0
DEFAULT_ENCODING = "utf-8"


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 放弃正在进行的等待（没有等待则退出）
    - EXIT: 直接退出
    - CANCEL_THEN_EXIT: 先放弃等待，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    low: float,
    high: float,
) -> float:
    """解析浮点数环境变量并限制在 [low, high] 范围内。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(low, min(number, high))


def _parse_encoding(value: str | None) -> str:
    """解析编码名称，未知编码退回 utf-8。"""
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        return codecs.lookup(value.strip()).name
    except LookupError:
        return DEFAULT_ENCODING


def _resolve_user_shell(value: str | None) -> str:
    """确定用户 shell。

    优先级: BGJ_SHELL > SHELL (COMSPEC on Windows) > 应用 shell
    """
    if value and value.strip():
        return value.strip()
    fallback = os.environ.get("COMSPEC" if IS_WINDOWS else "SHELL")
    if fallback and fallback.strip():
        return fallback.strip()
    return APP_SHELL


def _parse_sigint_mode(value: str | None) -> SigintMode:
    """解析 SIGINT 模式环境变量。"""
    if not value:
        return SigintMode.CANCEL
    return SigintMode.from_string(value)


def _generate_log_file_path() -> str:
    """生成临时目录下的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "bg-jobs"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"bgj_debug_{timestamp}.log"
    return str(log_file.resolve())


@dataclass
class Config:
    """BGJ 配置。

    Attributes:
        user_shell: ShellMode.USER 使用的 shell
        poll_interval: 等待循环检查取消令牌的间隔（秒）
        capture_timeout: 进程退出后等待读取线程排空的时间（秒）
        encoding: 捕获流与输入流的编码
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    user_shell: str = APP_SHELL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    capture_timeout: float = DEFAULT_CAPTURE_TIMEOUT
    encoding: str = DEFAULT_ENCODING
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(user_shell={self.user_shell}, "
            f"poll_interval={self.poll_interval}, "
            f"capture_timeout={self.capture_timeout}, "
            f"encoding={self.encoding}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("BGJ_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        user_shell=_resolve_user_shell(os.environ.get("BGJ_SHELL")),
        poll_interval=_parse_float(
            os.environ.get("BGJ_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL, 0.001, 1.0
        ),
        capture_timeout=_parse_float(
            os.environ.get("BGJ_CAPTURE_TIMEOUT"), DEFAULT_CAPTURE_TIMEOUT, 0.0, 60.0
        ),
        encoding=_parse_encoding(os.environ.get("BGJ_ENCODING")),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("BGJ_SIGINT_MODE")),
        sigint_double_tap_window=_parse_float(
            os.environ.get("BGJ_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
