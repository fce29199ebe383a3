from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

import pytest

from poly_code_runner import RunnerSettings
from poly_code_runner.environments import (
    EnvironmentManager,
    EnvironmentService,
    InMemoryEnvironmentStore,
)
from poly_code_runner.errors import CommandFailed
from poly_code_runner.execution.types import CommandOutput


@dataclass
class Call:
    command: str
    args: list[str]
    timeout_ms: int
    stdin: str | None
    cwd: str | None


class FakeRunner:
    """Records every command and answers through an optional script function."""

    def __init__(self, script: Callable[[str, list[str]], object] | None = None) -> None:
        self.calls: list[Call] = []
        self.script = script

    def run(self, command, args=(), *, timeout_ms, stdin=None, cwd=None) -> CommandOutput:
        args = list(args)
        self.calls.append(Call(command, args, timeout_ms, stdin, cwd))
        result = self.script(command, args) if self.script else None
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, CommandOutput):
            return result
        return CommandOutput(stdout="", stderr="", returncode=0, duration_ms=1)

    def commands(self) -> list[list[str]]:
        return [[c.command, *c.args] for c in self.calls]


def venv_script(
    fail_packages: set[str] | None = None, freeze: str = "requests==2.32.3\n"
) -> Callable[[str, list[str]], object]:
    """Pretend to be `python -m venv` plus pip against a fake interpreter."""
    fail_packages = fail_packages or set()

    def script(command: str, args: list[str]) -> object:
        if args[:2] == ["-m", "venv"] or (command == "uv" and args[:1] == ["venv"]):
            python = EnvironmentManager.python_path(args[-1])
            python.parent.mkdir(parents=True, exist_ok=True)
            python.write_text("#!/bin/sh\n", encoding="utf-8")
            return None
        if "install" in args:
            spec = args[args.index("install") + 1]
            if spec in fail_packages:
                return CommandFailed(1, "", f"ERROR: No matching distribution found for {spec}")
            return None
        if "freeze" in args:
            return CommandOutput(stdout=freeze, stderr="", returncode=0, duration_ms=1)
        return None

    return script


@pytest.fixture
def settings(tmp_path: Path) -> RunnerSettings:
    return RunnerSettings(
        env_dir=str(tmp_path / "envs"),
        store_path=str(tmp_path / "environments.json"),
        work_dir=str(tmp_path / "work"),
        python_command=sys.executable,
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner(venv_script())


@pytest.fixture
def manager(settings: RunnerSettings, fake_runner: FakeRunner) -> EnvironmentManager:
    return EnvironmentManager.from_settings(settings, runner=fake_runner)


@pytest.fixture
def service(manager: EnvironmentManager) -> Iterator[EnvironmentService]:
    svc = EnvironmentService(InMemoryEnvironmentStore(), manager, max_workers=2)
    yield svc
    svc.shutdown(wait_for_jobs=True)
