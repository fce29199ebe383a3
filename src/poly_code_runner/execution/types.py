from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Language(str, Enum):
    """Languages accepted by the execute endpoint.

    Example:
        ```python
        lang = Language("python")
        ```
    """

    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    JAVA = "java"
    CSHARP = "csharp"
    CPP = "cpp"
    RUBY = "ruby"
    PHP = "php"
    SWIFT = "swift"
    GO = "go"
    RUST = "rust"


@dataclass(slots=True)
class ExecutionRequest:
    """Validated request handed to the orchestrator.

    Example:
        ```python
        req = ExecutionRequest(code="print('hi')", language=Language.PYTHON, timeout_ms=5000)
        ```
    """

    code: str
    language: Language
    stdin: str | None = None
    timeout_ms: int | None = None
    environment_ref: str | None = None


@dataclass(slots=True)
class CommandOutput:
    """Output of one successfully completed subprocess.

    Example:
        ```python
        out = CommandOutput(stdout="hi\\n", stderr="", returncode=0, duration_ms=12)
        ```
    """

    stdout: str
    stderr: str
    returncode: int
    duration_ms: int
    truncated: bool = False


@dataclass(slots=True)
class EnvironmentInfo:
    """Which interpreter or environment served a Python request.

    Example:
        ```python
        info = EnvironmentInfo(python=True, virtual_env=False)
        ```
    """

    python: bool
    virtual_env: bool
    id: str | None = None
    name: str | None = None
    packages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape used in execute responses.

        Example:
            ```python
            payload = EnvironmentInfo(python=True, virtual_env=False).to_dict()
            ```
        """
        payload: dict[str, Any] = {"python": self.python, "virtualEnv": self.virtual_env}
        if self.virtual_env:
            payload.update({"id": self.id, "name": self.name, "packages": list(self.packages)})
        return payload


@dataclass(slots=True)
class ExecutionResult:
    """Normalized result returned by the orchestrator.

    Example:
        ```python
        result = ExecutionResult(success=True, stdout="hi\\n", stderr="", execution_time_ms=40)
        ```
    """

    success: bool
    stdout: str
    stderr: str
    execution_time_ms: int
    environment: EnvironmentInfo | None = None
    truncated: bool = False
