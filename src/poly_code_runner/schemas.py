from __future__ import annotations

from typing import Any, Iterable, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationInfo,
    field_validator,
)
from pydantic_core import PydanticCustomError

from .execution.types import Language
from .settings import DEFAULT_MAX_CODE_CHARS, DEFAULT_MAX_TIMEOUT_MS, DEFAULT_MIN_TIMEOUT_MS


class ExecuteRequest(BaseModel):
    """Wire shape of `POST /api/execute`.

    Limits come from the validation context so they follow settings:
    `max_code_chars`, `min_timeout_ms`, `max_timeout_ms`.

    Example:
        ```python
        req = ExecuteRequest.model_validate(
            {"code": "print(1)", "language": "python", "timeout": 5000},
            context={"max_code_chars": 100_000},
        )
        ```
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: StrictStr
    language: Language
    stdin: StrictStr | None = None
    timeout: StrictInt | None = None
    environment_ref: StrictStr | None = Field(
        default=None,
        validation_alias=AliasChoices("environmentRef", "pythonEnvironmentId", "environment_ref"),
    )

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str, info: ValidationInfo) -> str:
        """Require non-empty code under the configured size ceiling.

        Example:
            ```python
            ExecuteRequest._check_code("print(1)", info)
            ```
        """
        if not value:
            raise PydanticCustomError("code_required", "Code is required")
        limit = (info.context or {}).get("max_code_chars", DEFAULT_MAX_CODE_CHARS)
        if len(value) > limit:
            raise PydanticCustomError(
                "code_too_large", "Code must be at most {limit} characters", {"limit": limit}
            )
        return value

    @field_validator("language", mode="before")
    @classmethod
    def _check_language(cls, value: Any) -> Any:
        """Reject unknown languages with a stable message.

        Example:
            ```python
            ExecuteRequest._check_language("python")
            ```
        """
        if not value:
            raise PydanticCustomError("language_required", "Programming language is required")
        candidate = value.value if isinstance(value, Language) else value
        if not isinstance(candidate, str) or candidate not in {lang.value for lang in Language}:
            raise PydanticCustomError("language_unsupported", "Unsupported programming language")
        return candidate

    @field_validator("timeout")
    @classmethod
    def _check_timeout(cls, value: int | None, info: ValidationInfo) -> int | None:
        """Bound the caller-supplied timeout.

        Example:
            ```python
            ExecuteRequest._check_timeout(5000, info)
            ```
        """
        if value is None:
            return value
        context = info.context or {}
        low = context.get("min_timeout_ms", DEFAULT_MIN_TIMEOUT_MS)
        high = context.get("max_timeout_ms", DEFAULT_MAX_TIMEOUT_MS)
        if not low <= value <= high:
            raise PydanticCustomError(
                "timeout_range",
                "Timeout must be between {low} and {high} milliseconds",
                {"low": low, "high": high},
            )
        return value


class EnvironmentCreate(BaseModel):
    """Body of `POST /api/python-environments`.

    Example:
        ```python
        body = EnvironmentCreate(name="e1", packages=["requests"])
        ```
    """

    name: str = Field(min_length=1)
    description: str | None = None
    packages: list[StrictStr] = Field(default_factory=list)


class EnvironmentUpdate(BaseModel):
    """Body of `PUT /api/python-environments/{id}`; omitted fields stay unchanged.

    Example:
        ```python
        body = EnvironmentUpdate(packages=["httpx"])
        ```
    """

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    packages: list[StrictStr] | None = None


def format_validation_errors(errors: Iterable[Mapping[str, Any]]) -> list[str]:
    """Flatten pydantic error dicts into `field: message` strings.

    Example:
        ```python
        details = format_validation_errors(exc.errors())
        ```
    """
    details: list[str] = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ())) or "body"
        details.append(f"{location}: {error.get('msg', 'invalid value')}")
    return details
