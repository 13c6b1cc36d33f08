"""bg-jobs 命令行入口。

包含日志配置和两个子命令：
- run: 以后台作业方式运行命令，捕获输出并返回其退出码
- check: 运行命令，失败时输出其错误流内容

Ctrl+C 只放弃等待，不会杀死子进程。
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .cancellation import CancellationToken
from .config import Config, get_config
from .controller import JobController, ResultStatus
from .errors import SpawnError, SpawnErrorKind, WaitFailed
from .job import JobFlags
from .registry import JobRegistry
from .runtime.spawner import ShellMode, Spawner
from .signal_manager import SignalManager

__all__ = ["main", "build_parser", "configure_logging"]

logger = logging.getLogger(__name__)

# 128 + SIGINT(2)
EXIT_CANCELLED = 130
EXIT_BAD_WORKING_DIR = 2
EXIT_EXEC_FAILED = 127


def configure_logging(config: Config) -> None:
    """配置日志输出。

    默认输出到 stderr (INFO)；BGJ_LOG_DEBUG 模式输出到临时文件 (DEBUG)。
    """
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s [%(threadName)s]: %(message)s"
            )
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 bg_jobs 命名空间启用详细日志
    logging.getLogger("bg_jobs").setLevel(log_level)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    parser = argparse.ArgumentParser(
        prog="bg-jobs",
        description="Run shell commands as supervised background jobs.",
    )
    subparsers = parser.add_subparsers(dest="command_name", required=True)

    for name, help_text in (
        ("run", "run a command, print its output and exit with its code"),
        ("check", "run a command and print its error output if it fails"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--cwd", default=None, help="working directory")
        sub.add_argument(
            "--shell",
            choices=[mode.value for mode in ShellMode],
            default=ShellMode.USER.value if name == "run" else ShellMode.APP.value,
            help="user's configured shell or the application shell",
        )
        sub.add_argument("cmd", help="command text passed to the shell")

    return parser


def _spawn_error_exit_code(error: SpawnError) -> int:
    if error.kind is SpawnErrorKind.BAD_WORKING_DIR:
        return EXIT_BAD_WORKING_DIR
    return EXIT_EXEC_FAILED


def _run(controller: JobController, args: argparse.Namespace, token: CancellationToken) -> int:
    try:
        job = controller.spawner.spawn(
            args.cmd,
            JobFlags.CAPTURE_OUT,
            working_dir=args.cwd,
            shell_mode=ShellMode(args.shell),
        )
    except SpawnError as e:
        print(f"bg-jobs: {e}", file=sys.stderr)
        return _spawn_error_exit_code(e)

    try:
        try:
            exit_code = controller.wait_cancellable(job, token)
        except WaitFailed as e:
            print(f"bg-jobs: {e}", file=sys.stderr)
            return 1

        if exit_code is None:
            print(f"bg-jobs: stopped waiting, pid {job.pid} left running", file=sys.stderr)
            return EXIT_CANCELLED

        for line in job.read_output_lines(timeout=0):
            print(line)
        if job.errors:
            sys.stderr.write(job.errors)
        return exit_code
    finally:
        job.decref()


def _check(controller: JobController, args: argparse.Namespace, token: CancellationToken) -> int:
    result = controller.run_and_collect_errors(
        args.cmd,
        token,
        shell_mode=ShellMode(args.shell),
        working_dir=args.cwd,
    )

    if result.status is ResultStatus.CANCELLED:
        print("bg-jobs: stopped waiting, command left running", file=sys.stderr)
        return EXIT_CANCELLED
    if result.status is ResultStatus.FAILED:
        print(result.errors.rstrip(), file=sys.stderr)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """主入口点。"""
    args = build_parser().parse_args(argv)

    config = get_config()
    configure_logging(config)
    logger.debug(f"Starting bg-jobs: {config}")

    registry = JobRegistry()
    controller = JobController(registry, Spawner(registry, config), config)
    token = CancellationToken()
    signal_manager = SignalManager(on_shutdown=token.cancel)

    signal_manager.start()
    try:
        with signal_manager.track(token):
            if args.command_name == "run":
                exit_code = _run(controller, args, token)
            else:
                exit_code = _check(controller, args, token)
    finally:
        signal_manager.stop()
        # 双击 Ctrl+C：跳过作业清理，立即退出
        if not signal_manager.is_force_exit:
            registry.reap_completed()
            registry.shutdown()

    if signal_manager.is_force_exit:
        logger.warning(f"Force exit requested, terminating with exit code {EXIT_CANCELLED}")
        return EXIT_CANCELLED
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
