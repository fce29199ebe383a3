from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping

from .types import Language

COMPILED_ARTIFACT_NAME = "temp_executable"
FALLBACK_ENTRY_POINT = "Main"
_PUBLIC_CLASS_PATTERN = re.compile(r"public\s+(?:(?:final|abstract|static)\s+)*class\s+([A-Za-z_$][\w$]*)")


class Strategy(str, Enum):
    """How a language's source is turned into a running process.

    Example:
        ```python
        Strategy.COMPILE.value == "compile"
        ```
    """

    INTERPRET = "interpret"
    COMPILE = "compile"
    INFERRED_ENTRY_POINT = "inferred_entry_point"
    PROJECT = "project"


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    """Toolchain binding for one supported language.

    `command`/`args` drive the interpreter (or compiler) invocation; the
    staged source path is appended after `args`.

    Example:
        ```python
        profile = LanguageProfile(Language.RUBY, "rb", "ruby", (), 5000, Strategy.INTERPRET)
        ```
    """

    language: Language
    extension: str
    command: str
    args: tuple[str, ...]
    timeout_ms: int
    strategy: Strategy
    run_command: str | None = None


_PROFILES: dict[Language, LanguageProfile] = {
    profile.language: profile
    for profile in (
        LanguageProfile(
            Language.JAVASCRIPT, "js", "node", ("--max-old-space-size=100",), 5000, Strategy.INTERPRET
        ),
        LanguageProfile(Language.TYPESCRIPT, "ts", "ts-node", (), 5000, Strategy.INTERPRET),
        LanguageProfile(Language.PYTHON, "py", "python", ("-u",), 5000, Strategy.INTERPRET),
        LanguageProfile(
            Language.JAVA, "java", "javac", (), 10000, Strategy.INFERRED_ENTRY_POINT, run_command="java"
        ),
        LanguageProfile(Language.CSHARP, "cs", "dotnet", ("run",), 8000, Strategy.PROJECT),
        LanguageProfile(Language.CPP, "cpp", "g++", (), 8000, Strategy.COMPILE),
        LanguageProfile(Language.RUBY, "rb", "ruby", (), 5000, Strategy.INTERPRET),
        LanguageProfile(Language.PHP, "php", "php", (), 5000, Strategy.INTERPRET),
        LanguageProfile(Language.SWIFT, "swift", "swift", (), 8000, Strategy.INTERPRET),
        LanguageProfile(Language.GO, "go", "go", ("run",), 5000, Strategy.INTERPRET),
        LanguageProfile(Language.RUST, "rs", "rustc", (), 8000, Strategy.COMPILE),
    )
}


def supported_languages() -> list[Language]:
    """Return every language with a registered profile.

    Example:
        ```python
        names = [lang.value for lang in supported_languages()]
        ```
    """
    return list(_PROFILES)


def profile_for(
    language: Language,
    *,
    python_command: str | None = None,
    timeout_overrides: Mapping[str, int] | None = None,
) -> LanguageProfile:
    """Return the profile for `language` with host-specific overrides applied.

    Example:
        ```python
        profile = profile_for(Language.PYTHON, python_command="python3")
        ```
    """
    profile = _PROFILES[language]
    if language is Language.PYTHON and python_command:
        profile = replace(profile, command=python_command)
    if timeout_overrides and language.value in timeout_overrides:
        profile = replace(profile, timeout_ms=int(timeout_overrides[language.value]))
    return profile


def infer_entry_point(code: str) -> str:
    """Guess the Java class name the compiler will require for `code`.

    Best-effort textual match on the first `public class` declaration,
    falling back to `Main`. This is not a parser: a declaration inside a
    comment or string wins if it comes first, and a wrong guess makes the
    run step look for a class that was never compiled.

    Example:
        ```python
        infer_entry_point("public class Hello { }")  # "Hello"
        ```
    """
    match = _PUBLIC_CLASS_PATTERN.search(code)
    return match.group(1) if match else FALLBACK_ENTRY_POINT


def csproj_text(target_framework: str) -> str:
    """Render the minimal project descriptor used for C# runs.

    Example:
        ```python
        text = csproj_text("net8.0")
        ```
    """
    return (
        '<Project Sdk="Microsoft.NET.Sdk">\n'
        "  <PropertyGroup>\n"
        "    <OutputType>Exe</OutputType>\n"
        f"    <TargetFramework>{target_framework}</TargetFramework>\n"
        "    <ImplicitUsings>enable</ImplicitUsings>\n"
        "    <Nullable>disable</Nullable>\n"
        "  </PropertyGroup>\n"
        "</Project>\n"
    )
