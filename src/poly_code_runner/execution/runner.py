from __future__ import annotations

from typing import Protocol, Sequence

from .command import DEFAULT_MAX_OUTPUT_BYTES, run_command
from .types import CommandOutput


class CommandRunner(Protocol):
    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout_ms: int,
        stdin: str | None = None,
        cwd: str | None = None,
    ) -> CommandOutput:
        """Run one process to completion and return its output.

        Example:
            ```python
            out = runner.run("node", ["main.js"], timeout_ms=5000)
            ```
        """
        ...


class SubprocessRunner:
    """Command Runner backed by real host subprocesses.

    Example:
        ```python
        runner = SubprocessRunner(max_output_bytes=256 * 1024)
        ```
    """

    def __init__(self, *, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        """Store the per-stream output cap applied to every run.

        Example:
            ```python
            runner = SubprocessRunner()
            ```
        """
        self._max_output_bytes = max_output_bytes

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        timeout_ms: int,
        stdin: str | None = None,
        cwd: str | None = None,
    ) -> CommandOutput:
        """Run `command` with `args` via `run_command`.

        Example:
            ```python
            out = SubprocessRunner().run("ruby", ["main.rb"], timeout_ms=5000)
            ```
        """
        return run_command(
            command,
            args,
            timeout_ms=timeout_ms,
            stdin=stdin,
            cwd=cwd,
            max_output_bytes=self._max_output_bytes,
        )
