"""Stream capture for spawned processes.

This module provides:
- OutputBuffer: append-only text buffer with line-oriented retrieval
- StreamCapture: reader threads that drain stdout/stderr pipes

Key design points:
- Each pipe is drained by its own daemon thread until EOF
- Reader threads block on the pipe only, never on a job lock
- The thread that drains a pipe is the one that closes it
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from typing import IO, Callable

__all__ = [
    "OutputBuffer",
    "StreamCapture",
    "split_lines",
]

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


def split_lines(text: str) -> list[str]:
    """Split text on line terminators.

    A trailing segment without a terminator is kept verbatim. A carriage
    return right before a newline is dropped.

    Args:
        text: Captured text

    Returns:
        List of lines without terminators
    """
    if not text:
        return []

    *complete, tail = text.split("\n")
    lines = [line[:-1] if line.endswith("\r") else line for line in complete]
    # Unterminated tail is kept exactly as produced.
    if tail:
        lines.append(tail)
    return lines


class OutputBuffer:
    """Append-only text buffer filled by a capture thread.

    Reads never consume data: every call sees everything produced so far.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._lock = threading.Lock()
        self._chunks: list[str] = []
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._closed = threading.Event()

    def feed(self, data: bytes) -> None:
        """Append raw bytes (decoded incrementally)."""
        with self._lock:
            text = self._decoder.decode(data)
            if text:
                self._chunks.append(text)

    def close(self) -> None:
        """Mark end of stream and flush any partial character."""
        with self._lock:
            if self._closed.is_set():
                return
            text = self._decoder.decode(b"", final=True)
            if text:
                self._chunks.append(text)
            self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until end of stream or until timeout elapses."""
        return self._closed.wait(timeout)

    def text(self) -> str:
        """Return everything captured so far."""
        with self._lock:
            if len(self._chunks) > 1:
                self._chunks = ["".join(self._chunks)]
            return self._chunks[0] if self._chunks else ""

    def lines(self) -> list[str]:
        """Return currently available lines without blocking.

        An empty list is a valid answer while the process is still running.
        """
        return split_lines(self.text())

    def read_lines(self, timeout: float | None = None) -> list[str]:
        """Wait for end of stream (or timeout), then return all lines."""
        self.wait_closed(timeout)
        return self.lines()

    def __repr__(self) -> str:
        return f"OutputBuffer(size={len(self.text())}, closed={self.closed})"


class StreamCapture:
    """Drains a process's stdout and stderr on auxiliary threads.

    stdout goes into an OutputBuffer; stderr chunks are decoded and handed to
    ``on_error`` (normally ``Job.append_errors``, which takes the job lock).

    Example:
        capture = StreamCapture(
            stdout=process.stdout,
            stderr=process.stderr,
            on_error=job.append_errors,
            name=f"pid{process.pid}",
        )
        capture.start()
        lines = capture.output.read_lines()
    """

    def __init__(
        self,
        stdout: IO[bytes] | None,
        stderr: IO[bytes] | None,
        on_error: Callable[[str], None] | None = None,
        encoding: str = "utf-8",
        name: str = "job",
    ) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._on_error = on_error
        self._encoding = encoding
        self._name = name
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._active = 0
        self._done_callbacks: list[Callable[[], None]] = []
        # Set by waiters once a bounded join has timed out.
        self.abandoned = False

        self.output: OutputBuffer | None = (
            OutputBuffer(encoding) if stdout is not None else None
        )

    def start(self) -> None:
        """Start one reader thread per attached pipe."""
        if self._threads:
            return

        if self._stdout is not None and self.output is not None:
            self._threads.append(
                threading.Thread(
                    target=self._drain_stdout,
                    args=(self._stdout, self.output),
                    name=f"bg-jobs-{self._name}-stdout",
                    daemon=True,
                )
            )
        if self._stderr is not None:
            self._threads.append(
                threading.Thread(
                    target=self._drain_stderr,
                    args=(self._stderr,),
                    name=f"bg-jobs-{self._name}-stderr",
                    daemon=True,
                )
            )

        with self._lock:
            self._active = len(self._threads)
        for thread in self._threads:
            thread.start()

        logger.debug(f"Started {len(self._threads)} capture thread(s) for {self._name}")

    @property
    def running(self) -> bool:
        with self._lock:
            return self._active > 0

    def add_done_callback(self, callback: Callable[[], None]) -> None:
        """Call `callback` once every reader thread has reached EOF.

        Runs immediately on the calling thread if capture has already
        finished (or never started), otherwise on the last reader thread.
        """
        with self._lock:
            if self._active > 0:
                self._done_callbacks.append(callback)
                return
        _run_done_callback(callback, self._name)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for reader threads to reach EOF.

        Args:
            timeout: Overall time limit in seconds (None = no limit)

        Returns:
            Whether all reader threads have finished
        """
        if timeout is None:
            for thread in self._threads:
                thread.join()
            return True

        deadline = time.monotonic() + timeout
        for thread in self._threads:
            remaining = max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not self.running

    def _drain_stdout(self, pipe: IO[bytes], buffer: OutputBuffer) -> None:
        try:
            with pipe:
                while True:
                    chunk = _read_chunk(pipe)
                    if not chunk:
                        break
                    buffer.feed(chunk)
        except (OSError, ValueError) as e:
            # Pipe closed under us during teardown.
            logger.debug(f"stdout capture of {self._name} stopped: {e}")
        finally:
            buffer.close()
            self._reader_finished()

    def _drain_stderr(self, pipe: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        try:
            with pipe:
                while True:
                    chunk = _read_chunk(pipe)
                    if not chunk:
                        break
                    self._emit_error(decoder.decode(chunk))
        except (OSError, ValueError) as e:
            logger.debug(f"stderr capture of {self._name} stopped: {e}")
        finally:
            self._emit_error(decoder.decode(b"", final=True))
            self._reader_finished()

    def _emit_error(self, text: str) -> None:
        if text and self._on_error is not None:
            self._on_error(text)

    def _reader_finished(self) -> None:
        with self._lock:
            self._active -= 1
            if self._active > 0:
                return
            callbacks = self._done_callbacks
            self._done_callbacks = []
        for callback in callbacks:
            _run_done_callback(callback, self._name)


def _run_done_callback(callback: Callable[[], None], name: str) -> None:
    try:
        callback()
    except Exception as e:
        logger.warning(f"Error in capture done callback of {name}: {e}")


def _read_chunk(pipe: IO[bytes]) -> bytes:
    # read1 returns as soon as some data is available.
    read1 = getattr(pipe, "read1", None)
    if read1 is not None:
        return read1(READ_CHUNK_SIZE)
    return pipe.read(READ_CHUNK_SIZE)
