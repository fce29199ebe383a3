from __future__ import annotations

import shutil
from dataclasses import dataclass

from ..settings import RunnerSettings
from .languages import profile_for, supported_languages
from .types import Language


@dataclass(frozen=True, slots=True)
class ToolchainStatus:
    """Whether the host can run one language.

    Example:
        ```python
        status = ToolchainStatus(Language.GO, ("go",), True, "/usr/bin/go")
        ```
    """

    language: Language
    commands: tuple[str, ...]
    available: bool
    path: str | None
    timeout_ms: int

    def to_dict(self) -> dict[str, object]:
        """Return the JSON shape served by `GET /api/languages`.

        Example:
            ```python
            payload = status.to_dict()
            ```
        """
        return {
            "language": self.language.value,
            "commands": list(self.commands),
            "available": self.available,
            "path": self.path,
            "defaultTimeout": self.timeout_ms,
        }


def toolchain_status(language: Language, settings: RunnerSettings) -> ToolchainStatus:
    """Look up every binary `language` needs on PATH.

    Example:
        ```python
        status = toolchain_status(Language.JAVA, RunnerSettings())
        ```
    """
    profile = profile_for(
        language,
        python_command=settings.python_command,
        timeout_overrides=settings.language_timeouts,
    )
    commands = tuple(c for c in (profile.command, profile.run_command) if c)
    resolved = [shutil.which(c) for c in commands]
    return ToolchainStatus(
        language=language,
        commands=commands,
        available=all(resolved),
        path=resolved[0],
        timeout_ms=profile.timeout_ms,
    )


def probe_toolchains(settings: RunnerSettings) -> list[ToolchainStatus]:
    """Report toolchain availability for every supported language.

    Example:
        ```python
        missing = [s.language for s in probe_toolchains(settings) if not s.available]
        ```
    """
    return [toolchain_status(language, settings) for language in supported_languages()]
