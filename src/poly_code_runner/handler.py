from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import structlog
from pydantic import ValidationError

from .errors import (
    CommandFailed,
    CommandSpawnError,
    CommandTimedOut,
    EnvironmentNotFound,
    EnvironmentNotReady,
    RequestValidationError,
    SystemPythonUnavailable,
)
from .execution.orchestrator import ExecutionOrchestrator
from .execution.types import ExecutionRequest, ExecutionResult, Language
from .schemas import ExecuteRequest, format_validation_errors
from .settings import RunnerSettings

logger = structlog.get_logger()


@dataclass(slots=True)
class HandlerResponse:
    """HTTP-agnostic response produced by `ExecutionHandler.handle`.

    Example:
        ```python
        resp = HandlerResponse(status_code=200, body={"success": True})
        ```
    """

    status_code: int
    body: dict[str, Any]

    @property
    def ok(self) -> bool:
        """True for a successful execution.

        Example:
            ```python
            if resp.ok: ...
            ```
        """
        return bool(self.body.get("success"))


def _failure(status_code: int, error: str, details: Any = None, **extra: Any) -> HandlerResponse:
    """Build a `{success: false, error, details?}` response.

    Example:
        ```python
        resp = _failure(404, "Python environment not found")
        ```
    """
    body: dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return HandlerResponse(status_code=status_code, body=body)


def _success(result: ExecutionResult) -> HandlerResponse:
    """Build the success body for an execution result.

    Example:
        ```python
        resp = _success(result)
        ```
    """
    body: dict[str, Any] = {
        "success": True,
        "output": result.stdout,
        "stderr": result.stderr,
        "executionTime": result.execution_time_ms,
    }
    if result.environment is not None:
        body["environment"] = result.environment.to_dict()
    if result.truncated:
        body["truncated"] = True
    return HandlerResponse(status_code=200, body=body)


class ExecutionHandler:
    """Top-level entry point for execute requests.

    Validates the payload, drives the orchestrator, and converts every
    failure into a `{success: false, ...}` response. Nothing raises past
    `handle`.

    Example:
        ```python
        handler = ExecutionHandler(orchestrator, settings)
        resp = handler.handle({"code": "print('hi')", "language": "python"})
        ```
    """

    def __init__(self, orchestrator: ExecutionOrchestrator, settings: RunnerSettings) -> None:
        """Bind the orchestrator and the validation limits.

        Example:
            ```python
            handler = ExecutionHandler(orchestrator, RunnerSettings())
            ```
        """
        self._orchestrator = orchestrator
        self._settings = settings

    def parse(self, payload: Any) -> ExecutionRequest:
        """Validate a raw payload into an `ExecutionRequest`.

        Example:
            ```python
            req = handler.parse({"code": "puts 1", "language": "ruby"})
            ```
        """
        if not isinstance(payload, Mapping):
            raise RequestValidationError(["body: request body must be a JSON object"])
        try:
            model = ExecuteRequest.model_validate(
                dict(payload),
                context={
                    "max_code_chars": self._settings.max_code_chars,
                    "min_timeout_ms": self._settings.min_timeout_ms,
                    "max_timeout_ms": self._settings.max_timeout_ms,
                },
            )
        except ValidationError as exc:
            raise RequestValidationError(format_validation_errors(exc.errors())) from exc
        language = Language(model.language)
        return ExecutionRequest(
            code=model.code,
            language=language,
            stdin=model.stdin,
            timeout_ms=model.timeout,
            environment_ref=model.environment_ref if language is Language.PYTHON else None,
        )

    def handle(self, payload: Any) -> HandlerResponse:
        """Validate, execute, and map the outcome to a response.

        Example:
            ```python
            resp = handler.handle({"code": "print('hi')", "language": "python", "timeout": 5000})
            ```
        """
        try:
            request = self.parse(payload)
        except RequestValidationError as exc:
            return _failure(400, "Invalid request", exc.details)
        return self.execute(request)

    def execute(self, request: ExecutionRequest) -> HandlerResponse:
        """Run an already-validated request and map the outcome to a response.

        Example:
            ```python
            resp = handler.execute(ExecutionRequest("puts 1", Language.RUBY))
            ```
        """
        log = logger.bind(language=request.language.value, environment_ref=request.environment_ref)
        try:
            result = self._orchestrator.execute(request)
        except EnvironmentNotFound:
            return _failure(404, "Python environment not found")
        except EnvironmentNotReady as exc:
            return _failure(400, "Python environment not ready", exc.details)
        except SystemPythonUnavailable:
            return _failure(
                500,
                "System Python is not available",
                "Please install Python or select a virtual environment",
            )
        except CommandTimedOut as exc:
            return _failure(
                500,
                "Execution timed out",
                str(exc),
                timeout=exc.timeout_ms,
                output=exc.stdout,
                stderr=exc.stderr,
            )
        except CommandFailed as exc:
            return _failure(
                500,
                "Execution failed",
                str(exc),
                output=exc.stdout,
                stderr=exc.stderr,
                exitCode=exc.returncode,
            )
        except CommandSpawnError as exc:
            return _failure(500, "Execution failed to start", str(exc))
        except Exception as exc:
            log.exception("execution_crashed")
            return _failure(500, "Failed to execute code", str(exc))
        return _success(result)
