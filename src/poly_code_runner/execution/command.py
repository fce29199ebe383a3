from __future__ import annotations

import contextlib
import os
import signal
import subprocess
import threading
import time
from typing import IO, Mapping, Sequence

import structlog

from ..errors import CommandFailed, CommandSpawnError, CommandTimedOut
from .types import CommandOutput

logger = structlog.get_logger()

DEFAULT_MAX_OUTPUT_BYTES = 1024 * 1024
_READ_CHUNK_BYTES = 64 * 1024
_JOIN_GRACE_SECONDS = 2.0


class _BoundedBuffer:
    """Byte accumulator that keeps at most `limit` bytes and flags the overflow.

    Example:
        ```python
        buf = _BoundedBuffer(limit=4)
        buf.feed(b"hello")
        assert buf.text() == "hell" and buf.truncated
        ```
    """

    def __init__(self, limit: int) -> None:
        """Create an empty buffer with a fixed byte budget.

        Example:
            ```python
            buf = _BoundedBuffer(limit=1024)
            ```
        """
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    def feed(self, data: bytes) -> None:
        """Append as much of `data` as the budget allows.

        Example:
            ```python
            buf.feed(b"partial output")
            ```
        """
        room = self._limit - self._size
        if room > 0:
            kept = data[:room]
            self._chunks.append(kept)
            self._size += len(kept)
        if len(data) > room:
            self.truncated = True

    def text(self) -> str:
        """Decode the collected bytes as UTF-8, replacing invalid sequences.

        Example:
            ```python
            stdout = buf.text()
            ```
        """
        return b"".join(self._chunks).decode("utf-8", errors="replace")


def _drain(stream: IO[bytes], sink: _BoundedBuffer) -> None:
    """Read a pipe until EOF into a bounded buffer.

    Example:
        ```python
        _drain(proc.stdout, _BoundedBuffer(1024))
        ```
    """
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not chunk:
                break
            sink.feed(chunk)
    finally:
        stream.close()


def _feed_stdin(stream: IO[bytes], data: str) -> None:
    """Write all of `data` to the child's stdin and close it.

    A child that exits without reading its input closes the pipe first;
    that is not an error for the caller.

    Example:
        ```python
        _feed_stdin(proc.stdin, "3 4\\n")
        ```
    """
    with contextlib.suppress(BrokenPipeError):
        try:
            stream.write(data.encode("utf-8"))
            stream.flush()
        finally:
            stream.close()


def _kill(proc: subprocess.Popen[bytes]) -> None:
    """Kill the child and, on POSIX, every process in its session.

    Example:
        ```python
        _kill(proc)
        ```
    """
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
        return
    proc.kill()


def _reap_group(proc: subprocess.Popen[bytes]) -> None:
    """Kill whatever the exited child left running in its session.

    Example:
        ```python
        _reap_group(proc)
        ```
    """
    if os.name == "posix":
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)


def _join(threads: list[threading.Thread], command: str) -> None:
    """Wait briefly for I/O threads after the child has exited.

    Example:
        ```python
        _join(threads, "node")
        ```
    """
    deadline = time.monotonic() + _JOIN_GRACE_SECONDS
    for thread in threads:
        thread.join(max(0.0, deadline - time.monotonic()))
        if thread.is_alive():
            # Typically a grandchild still holding the pipe open.
            logger.warning("command_io_still_open", command=command, thread=thread.name)


def run_command(
    command: str,
    args: Sequence[str] = (),
    *,
    timeout_ms: int,
    stdin: str | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CommandOutput:
    """Run one subprocess under a wall-clock timeout and collect its output.

    Raises `CommandSpawnError` when the binary cannot be started,
    `CommandTimedOut` when the deadline fires first (the process is killed
    and no success is reported), and `CommandFailed` for a non-zero exit.
    Output collected before a failure is kept on the exception.

    Example:
        ```python
        out = run_command("python", ["-c", "print(input())"], timeout_ms=5000, stdin="hi")
        ```
    """
    argv = [command, *args]
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            start_new_session=os.name == "posix",
        )
    except OSError as exc:
        raise CommandSpawnError(command, exc.strerror or str(exc)) from exc

    out_buf = _BoundedBuffer(max_output_bytes)
    err_buf = _BoundedBuffer(max_output_bytes)
    assert proc.stdout is not None and proc.stderr is not None
    threads = [
        threading.Thread(target=_drain, args=(proc.stdout, out_buf), name="stdout", daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err_buf), name="stderr", daemon=True),
    ]
    if stdin is not None:
        assert proc.stdin is not None
        threads.append(
            threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin), name="stdin", daemon=True)
        )
    for thread in threads:
        thread.start()

    try:
        returncode = proc.wait(timeout=timeout_ms / 1000)
    except subprocess.TimeoutExpired:
        _kill(proc)
        proc.wait()
        _join(threads, command)
        logger.warning("command_timed_out", command=command, timeout_ms=timeout_ms)
        raise CommandTimedOut(timeout_ms, out_buf.text(), err_buf.text()) from None

    _reap_group(proc)
    _join(threads, command)
    duration_ms = int((time.monotonic() - started) * 1000)
    stdout, stderr = out_buf.text(), err_buf.text()
    truncated = out_buf.truncated or err_buf.truncated
    if truncated:
        logger.warning("command_output_truncated", command=command, limit_bytes=max_output_bytes)
    if returncode != 0:
        raise CommandFailed(returncode, stdout, stderr)
    return CommandOutput(
        stdout=stdout,
        stderr=stderr,
        returncode=returncode,
        duration_ms=duration_ms,
        truncated=truncated,
    )
