"""Runtime module for process spawning and stream capture.

This module starts external commands as background jobs and drains their
output on auxiliary threads.
"""

from __future__ import annotations

from .capture import OutputBuffer, StreamCapture, split_lines
from .spawner import ShellMode, Spawner, build_shell_argv

__all__ = [
    "OutputBuffer",
    "ShellMode",
    "Spawner",
    "StreamCapture",
    "build_shell_argv",
    "split_lines",
]
