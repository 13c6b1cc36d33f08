"""Process spawner for background jobs.

This module provides:
- Working directory validation before anything is started
- Shell resolution (user's configured shell vs application shell)
- Process creation with stdin/stdout/stderr wired per JobFlags
- Registration of the resulting Job and start of its capture threads

Key design points:
- POSIX: start_new_session=True detaches the job from the terminal's
  process group unless KEEP_IN_FG is requested
- Windows: CREATE_NEW_PROCESS_GROUP for the same purpose
- stderr is always piped (it feeds the job's error text); stdout only with
  CAPTURE_OUT, otherwise it is discarded
- Nothing is registered when spawning fails
"""

from __future__ import annotations

import io
import logging
import os
import subprocess
import sys
from enum import Enum
from typing import Any, Optional

from ..config import APP_SHELL, Config, get_config
from ..errors import SpawnError, SpawnErrorKind
from ..job import Job, JobFlags, JobKind
from ..registry import JobRegistry
from .capture import StreamCapture

__all__ = [
    "ShellMode",
    "Spawner",
    "build_shell_argv",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ShellMode(Enum):
    """Which shell runs the command text."""

    USER = "user"
    APP = "app"


def build_shell_argv(shell: str, command: str) -> list[str]:
    """Build argv that makes `shell` run `command`.

    A command starting with a dash would be read by the shell as an option
    after ``-c``. A leading space keeps it a command string while the shell
    still looks the word up in the search path.

    Args:
        shell: Shell executable
        command: Command text

    Returns:
        Argument vector for subprocess
    """
    if IS_WINDOWS:
        return [shell, "/C", command]

    if command.startswith("-"):
        command = " " + command
    return [shell, "-c", command]


class Spawner:
    """Creates jobs for external commands.

    Example:
        registry = JobRegistry()
        spawner = Spawner(registry)

        job = spawner.spawn(
            "grep -rn TODO .",
            JobFlags.CAPTURE_OUT,
            description="grep TODO",
            working_dir="/project",
        )
        try:
            controller.wait(job)
            for line in job.read_output_lines():
                print(line)
        finally:
            job.decref()
    """

    def __init__(self, registry: JobRegistry, config: Optional[Config] = None) -> None:
        self.registry = registry
        self.config = config if config is not None else get_config()

    def resolve_shell(self, mode: ShellMode) -> str:
        """Return the shell executable for the given mode."""
        if mode is ShellMode.USER:
            return self.config.user_shell
        return APP_SHELL

    def spawn(
        self,
        command: str,
        flags: JobFlags = JobFlags.NONE,
        description: Optional[str] = None,
        working_dir: Optional[str] = None,
        shell_mode: ShellMode = ShellMode.USER,
    ) -> Job:
        """Start `command` as a registered background job.

        The returned job carries one reference owned by the caller.

        Args:
            command: Command text passed to the shell
            flags: Stream wiring flags
            description: Human-readable description (defaults to the command)
            working_dir: Directory to run in (None/empty = inherit)
            shell_mode: Which shell runs the command

        Returns:
            The running job

        Raises:
            SpawnError: BAD_WORKING_DIR or EXEC_FAILED; no job is registered
        """
        if working_dir and not os.path.isdir(working_dir):
            logger.debug(f"Refusing to spawn {command!r}: bad working dir {working_dir!r}")
            raise SpawnError(SpawnErrorKind.BAD_WORKING_DIR, command, working_dir)

        argv = build_shell_argv(self.resolve_shell(shell_mode), command)
        kwargs = self._build_subprocess_kwargs(flags, working_dir)

        try:
            process = subprocess.Popen(argv, **kwargs)
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to start {argv!r}: {e}")
            raise SpawnError(
                SpawnErrorKind.EXEC_FAILED, command, working_dir, detail=str(e)
            ) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={argv[0]} cwd={working_dir or os.getcwd()}"
        )

        job = Job(
            command=command,
            description=description or command,
            working_dir=working_dir or None,
            flags=flags,
            kind=JobKind.COMMAND,
            process=process,
        )

        try:
            if JobFlags.SUPPLY_INPUT in flags and process.stdin is not None:
                job.input = io.TextIOWrapper(
                    process.stdin,
                    encoding=self.config.encoding,
                    line_buffering=True,
                )
            job.capture = StreamCapture(
                stdout=process.stdout if JobFlags.CAPTURE_OUT in flags else None,
                stderr=process.stderr,
                on_error=job.append_errors,
                encoding=self.config.encoding,
                name=f"pid{process.pid}",
            )
            self.registry.register(job)
        except BaseException:
            self._close_pipes(process)
            self._kill_unregistered(process)
            raise

        job.capture.start()
        return job

    def _build_subprocess_kwargs(
        self,
        flags: JobFlags,
        working_dir: Optional[str],
    ) -> dict[str, Any]:
        """Build stream wiring and platform-specific isolation kwargs."""
        kwargs: dict[str, Any] = {
            "stdin": subprocess.PIPE if JobFlags.SUPPLY_INPUT in flags else subprocess.DEVNULL,
            "stdout": subprocess.PIPE if JobFlags.CAPTURE_OUT in flags else subprocess.DEVNULL,
            "stderr": subprocess.PIPE,
            "cwd": working_dir or None,
        }

        if JobFlags.KEEP_IN_FG not in flags:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    def _close_pipes(process: subprocess.Popen) -> None:
        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as e:
                logger.debug(f"Error closing pipe of pid {process.pid}: {e}")

    @staticmethod
    def _kill_unregistered(process: subprocess.Popen) -> None:
        # Nobody else will ever wait on this process.
        try:
            process.kill()
            process.wait()
        except OSError as e:
            logger.debug(f"Error killing unregistered pid {process.pid}: {e}")
