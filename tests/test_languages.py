from __future__ import annotations

import pytest

from poly_code_runner.execution import Language, Strategy, infer_entry_point, profile_for, supported_languages
from poly_code_runner.execution.languages import csproj_text


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        ("public class Hello { public static void main(String[] a) {} }", "Hello"),
        ("public final class Solver {}", "Solver"),
        ("import java.util.*;\n\npublic   class\n  Tabbed {}", "Tabbed"),
        ("class Hidden {}", "Main"),
        ("", "Main"),
        ("public class First {}\npublic class Second {}", "First"),
    ],
)
def test_infer_entry_point(code: str, expected: str) -> None:
    assert infer_entry_point(code) == expected


def test_every_language_has_a_profile() -> None:
    assert {lang.value for lang in supported_languages()} == {
        "javascript",
        "typescript",
        "python",
        "java",
        "csharp",
        "cpp",
        "ruby",
        "php",
        "swift",
        "go",
        "rust",
    }


@pytest.mark.parametrize(
    ("language", "timeout_ms", "command"),
    [
        (Language.JAVASCRIPT, 5000, "node"),
        (Language.TYPESCRIPT, 5000, "ts-node"),
        (Language.PYTHON, 5000, "python"),
        (Language.JAVA, 10000, "javac"),
        (Language.CSHARP, 8000, "dotnet"),
        (Language.CPP, 8000, "g++"),
        (Language.RUBY, 5000, "ruby"),
        (Language.PHP, 5000, "php"),
        (Language.SWIFT, 8000, "swift"),
        (Language.GO, 5000, "go"),
        (Language.RUST, 8000, "rustc"),
    ],
)
def test_default_profiles(language: Language, timeout_ms: int, command: str) -> None:
    profile = profile_for(language)
    assert profile.timeout_ms == timeout_ms
    assert profile.command == command


def test_compiled_languages_use_compile_strategy() -> None:
    assert profile_for(Language.CPP).strategy is Strategy.COMPILE
    assert profile_for(Language.RUST).strategy is Strategy.COMPILE
    assert profile_for(Language.JAVA).strategy is Strategy.INFERRED_ENTRY_POINT
    assert profile_for(Language.CSHARP).strategy is Strategy.PROJECT
    assert profile_for(Language.GO).args == ("run",)
    assert profile_for(Language.JAVASCRIPT).args == ("--max-old-space-size=100",)


def test_profile_overrides() -> None:
    python = profile_for(Language.PYTHON, python_command="python3.12")
    assert python.command == "python3.12"
    assert python.args == ("-u",)
    java = profile_for(Language.JAVA, timeout_overrides={"java": 15000})
    assert java.timeout_ms == 15000
    assert profile_for(Language.JAVA).timeout_ms == 10000


def test_csproj_targets_framework() -> None:
    text = csproj_text("net9.0")
    assert "<TargetFramework>net9.0</TargetFramework>" in text
    assert "<OutputType>Exe</OutputType>" in text
