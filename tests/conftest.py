"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from bg_jobs.config import Config  # noqa: E402
from bg_jobs.controller import JobController  # noqa: E402
from bg_jobs.registry import JobRegistry  # noqa: E402
from bg_jobs.runtime.spawner import Spawner  # noqa: E402


@pytest.fixture
def config() -> Config:
    """测试用配置：固定 /bin/sh，较短的轮询间隔。"""
    return Config(
        user_shell="/bin/sh",
        poll_interval=0.01,
        capture_timeout=5.0,
    )


@pytest.fixture
def registry() -> Iterator[JobRegistry]:
    """独立的作业注册表，测试结束时释放。"""
    registry = JobRegistry()
    yield registry
    registry.shutdown()


@pytest.fixture
def spawner(registry: JobRegistry, config: Config) -> Spawner:
    """绑定到测试注册表的 Spawner。"""
    return Spawner(registry, config)


@pytest.fixture
def controller(registry: JobRegistry, spawner: Spawner, config: Config) -> JobController:
    """绑定到测试注册表的 JobController。"""
    return JobController(registry, spawner, config)
