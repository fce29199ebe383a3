from __future__ import annotations


class RunnerError(Exception):
    """Base class for failures surfaced by the execution service.

    Example:
        ```python
        raise RunnerError("something went wrong")
        ```
    """


class RequestValidationError(RunnerError):
    """Malformed execution request.

    Example:
        ```python
        raise RequestValidationError(["timeout: must be >= 1000"])
        ```
    """

    def __init__(self, details: list[str]) -> None:
        """Store one message per invalid field.

        Example:
            ```python
            err = RequestValidationError(["code: required"])
            ```
        """
        super().__init__("; ".join(details) or "Invalid request")
        self.details = details


class EnvironmentNotFound(RunnerError):
    """Referenced Python environment does not exist.

    Example:
        ```python
        raise EnvironmentNotFound("4f1c")
        ```
    """

    def __init__(self, env_id: str) -> None:
        """Record the missing environment id.

        Example:
            ```python
            err = EnvironmentNotFound("4f1c")
            ```
        """
        super().__init__(f"Python environment not found: {env_id}")
        self.env_id = env_id


class EnvironmentNotReady(RunnerError):
    """Environment exists but cannot serve executions yet.

    Example:
        ```python
        raise EnvironmentNotReady("4f1c", "Environment is still being installed.")
        ```
    """

    def __init__(self, env_id: str, details: str) -> None:
        """Record the environment id and a retry-oriented explanation.

        Example:
            ```python
            err = EnvironmentNotReady("4f1c", "Please try again later.")
            ```
        """
        super().__init__(details)
        self.env_id = env_id
        self.details = details


class SystemPythonUnavailable(RunnerError):
    """No system Python interpreter answered the version probe.

    Example:
        ```python
        raise SystemPythonUnavailable("python: command not found")
        ```
    """


class CommandError(RunnerError):
    """Base class for Command Runner failures.

    Example:
        ```python
        raise CommandError("boom")
        ```
    """


class CommandTimedOut(CommandError):
    """Process was killed because it exceeded its wall-clock budget.

    Example:
        ```python
        raise CommandTimedOut(5000)
        ```
    """

    def __init__(self, timeout_ms: int, stdout: str = "", stderr: str = "") -> None:
        """Record the budget and whatever output arrived before the kill.

        Example:
            ```python
            err = CommandTimedOut(5000, stdout="partial")
            ```
        """
        super().__init__(f"Execution timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.stdout = stdout
        self.stderr = stderr


class CommandFailed(CommandError):
    """Process exited with a non-zero status.

    Example:
        ```python
        raise CommandFailed(1, stdout="", stderr="Traceback ...")
        ```
    """

    def __init__(self, returncode: int, stdout: str = "", stderr: str = "") -> None:
        """Record the exit status and the output collected before exit.

        Example:
            ```python
            err = CommandFailed(2, stderr="error: expected ';'")
            ```
        """
        message = f"Process exited with code {returncode}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CommandSpawnError(CommandError):
    """Process could not be started at all.

    Example:
        ```python
        raise CommandSpawnError("g++", "No such file or directory")
        ```
    """

    def __init__(self, command: str, reason: str) -> None:
        """Record the command that failed to start and why.

        Example:
            ```python
            err = CommandSpawnError("rustc", "Permission denied")
            ```
        """
        super().__init__(f"Failed to start '{command}': {reason}")
        self.command = command
        self.reason = reason
