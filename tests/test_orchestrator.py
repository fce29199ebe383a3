from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from poly_code_runner import ExecutionOrchestrator, RunnerSettings
from poly_code_runner.environments import Environment, EnvironmentService, InstallState
from poly_code_runner.errors import (
    CommandFailed,
    CommandTimedOut,
    EnvironmentNotFound,
    EnvironmentNotReady,
    SystemPythonUnavailable,
)
from poly_code_runner.execution import ExecutionRequest, Language
from poly_code_runner.execution import orchestrator as orchestrator_module
from poly_code_runner.execution.types import CommandOutput

from conftest import FakeRunner

posix_only = pytest.mark.skipif(os.name != "posix", reason="symlinked interpreter needs POSIX")


def _workspace_entries(settings: RunnerSettings) -> list[Path]:
    root = Path(settings.work_dir)
    return list(root.iterdir()) if root.exists() else []


def test_system_python_runs_snippet(settings: RunnerSettings) -> None:
    orchestrator = ExecutionOrchestrator(settings)
    result = orchestrator.execute(ExecutionRequest("print('hi')", Language.PYTHON))
    assert result.success is True
    assert result.stdout == "hi\n"
    assert result.environment is not None
    assert result.environment.to_dict() == {"python": True, "virtualEnv": False}
    assert _workspace_entries(settings) == []


def test_system_python_receives_stdin(settings: RunnerSettings) -> None:
    orchestrator = ExecutionOrchestrator(settings)
    result = orchestrator.execute(
        ExecutionRequest("print(input()[::-1])", Language.PYTHON, stdin="abc", timeout_ms=5000)
    )
    assert result.stdout == "cba\n"


def test_missing_system_python(settings: RunnerSettings) -> None:
    orchestrator = ExecutionOrchestrator(replace(settings, python_command="no-such-python-pcr"))
    with pytest.raises(SystemPythonUnavailable):
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON))


def test_timeout_cleans_workspace(settings: RunnerSettings) -> None:
    orchestrator = ExecutionOrchestrator(settings)
    with pytest.raises(CommandTimedOut):
        orchestrator.execute(ExecutionRequest("while True: pass", Language.PYTHON, timeout_ms=1000))
    assert _workspace_entries(settings) == []


def test_interpreted_language_invocation(settings: RunnerSettings) -> None:
    runner = FakeRunner(lambda c, a: CommandOutput("1\n", "", 0, 3))
    orchestrator = ExecutionOrchestrator(settings, runner=runner)
    result = orchestrator.execute(ExecutionRequest("console.log(1)", Language.JAVASCRIPT, stdin="x"))
    assert result.stdout == "1\n"
    assert result.environment is None
    (call,) = runner.calls
    assert call.command == "node"
    assert call.args[0] == "--max-old-space-size=100"
    assert call.args[1].endswith("main.js")
    assert call.timeout_ms == 5000
    assert call.stdin == "x"


def test_go_uses_run_subcommand(settings: RunnerSettings) -> None:
    runner = FakeRunner()
    ExecutionOrchestrator(settings, runner=runner).execute(
        ExecutionRequest("package main", Language.GO, timeout_ms=2000)
    )
    (call,) = runner.calls
    assert call.command == "go"
    assert call.args[0] == "run"
    assert call.args[1].endswith("main.go")
    assert call.timeout_ms == 2000


def test_cpp_compiles_then_runs_fixed_artifact(settings: RunnerSettings) -> None:
    seen: list[bool] = []

    def script(command: str, args: list[str]) -> object:
        if command == "g++":
            seen.append(Path(args[0]).read_text(encoding="utf-8") == "int main(){}")
        return None

    runner = FakeRunner(script)
    ExecutionOrchestrator(settings, runner=runner).execute(
        ExecutionRequest("int main(){}", Language.CPP, stdin="5")
    )
    compile_call, run_call = runner.calls
    assert compile_call.command == "g++"
    assert compile_call.args[1] == "-o"
    assert Path(compile_call.args[2]).name.startswith("temp_executable")
    assert compile_call.stdin is None
    assert run_call.command == compile_call.args[2]
    assert run_call.stdin == "5"
    assert compile_call.timeout_ms == run_call.timeout_ms == 8000
    assert seen == [True]


def test_compile_failure_stops_before_run(settings: RunnerSettings) -> None:
    runner = FakeRunner(
        lambda c, a: CommandFailed(1, "", "main.rs: error") if c == "rustc" else None
    )
    with pytest.raises(CommandFailed) as exc_info:
        ExecutionOrchestrator(settings, runner=runner).execute(
            ExecutionRequest("fn main() {", Language.RUST)
        )
    assert "main.rs: error" in exc_info.value.stderr
    assert [c.command for c in runner.calls] == ["rustc"]
    assert _workspace_entries(settings) == []


def test_java_uses_inferred_class(settings: RunnerSettings) -> None:
    runner = FakeRunner()
    code = "public class Greeter { public static void main(String[] a) {} }"
    ExecutionOrchestrator(settings, runner=runner).execute(ExecutionRequest(code, Language.JAVA))
    compile_call, run_call = runner.calls
    assert compile_call.command == "javac"
    assert Path(compile_call.args[-1]).name == "Greeter.java"
    assert run_call.command == "java"
    assert run_call.args == ["-cp", str(Path(compile_call.args[-1]).parent), "Greeter"]
    assert run_call.timeout_ms == 10000


def test_csharp_builds_synthesized_project(settings: RunnerSettings) -> None:
    staged: dict[str, bool] = {}

    def script(command: str, args: list[str]) -> object:
        project = Path(args[-1])
        staged["csproj"] = project.exists()
        staged["program"] = (project.parent / "Program.cs").exists()
        return None

    runner = FakeRunner(script)
    ExecutionOrchestrator(settings, runner=runner).execute(
        ExecutionRequest("class P { static void Main() {} }", Language.CSHARP)
    )
    (call,) = runner.calls
    assert call.command == "dotnet"
    assert call.args[:2] == ["run", "--project"]
    assert call.args[2].endswith("project.csproj")
    assert staged == {"csproj": True, "program": True}


def test_cleanup_failure_is_logged_not_raised(
    settings: RunnerSettings, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _boom(path: object) -> None:
        raise OSError("device busy")

    monkeypatch.setattr(orchestrator_module.shutil, "rmtree", _boom)
    orchestrator = ExecutionOrchestrator(settings, runner=FakeRunner())
    with capture_logs() as logs:
        result = orchestrator.execute(ExecutionRequest("puts 1", Language.RUBY))
    assert result.success is True
    assert any(entry["event"] == "workspace_cleanup_failed" for entry in logs)


def _installed_env(service: EnvironmentService, *, link_python: bool = True) -> Environment:
    env = service.store.create(Environment(name="venv-a", packages=["requests"]))
    path = service.manager.install_path(env.id)
    python = service.manager.python_path(path)
    python.parent.mkdir(parents=True)
    if link_python:
        os.symlink(sys.executable, python)
    return service.store.update(env.id, install_state=InstallState.INSTALLED, install_path=str(path))


@posix_only
def test_environment_ref_runs_in_environment(
    settings: RunnerSettings, service: EnvironmentService
) -> None:
    env = _installed_env(service)
    orchestrator = ExecutionOrchestrator(settings, environments=service)
    result = orchestrator.execute(
        ExecutionRequest("print('from venv')", Language.PYTHON, environment_ref=env.id)
    )
    assert result.stdout == "from venv\n"
    assert result.environment is not None
    assert result.environment.to_dict() == {
        "python": True,
        "virtualEnv": True,
        "id": env.id,
        "name": "venv-a",
        "packages": ["requests"],
    }
    assert service.get(env.id).last_used is not None


def test_unknown_environment_ref(settings: RunnerSettings, service: EnvironmentService) -> None:
    orchestrator = ExecutionOrchestrator(settings, runner=FakeRunner(), environments=service)
    with pytest.raises(EnvironmentNotFound):
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref="nope"))


def test_environment_still_installing(settings: RunnerSettings, service: EnvironmentService) -> None:
    env = service.store.create(Environment(name="pending"))
    runner = FakeRunner()
    orchestrator = ExecutionOrchestrator(settings, runner=runner, environments=service)
    with pytest.raises(EnvironmentNotReady) as exc_info:
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref=env.id))
    assert "still being installed" in exc_info.value.details
    assert runner.calls == []


def test_failed_environment_reports_error(settings: RunnerSettings, service: EnvironmentService) -> None:
    env = service.store.create(
        Environment(name="broken", install_state=InstallState.FAILED, install_error="venv exploded")
    )
    orchestrator = ExecutionOrchestrator(settings, runner=FakeRunner(), environments=service)
    with pytest.raises(EnvironmentNotReady) as exc_info:
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref=env.id))
    assert "venv exploded" in exc_info.value.details


def test_vanished_environment_is_marked_not_installed(
    settings: RunnerSettings, service: EnvironmentService
) -> None:
    env = service.store.create(
        Environment(
            name="gone",
            install_state=InstallState.INSTALLED,
            install_path=str(Path(settings.env_dir) / "env_gone"),
        )
    )
    runner = FakeRunner()
    orchestrator = ExecutionOrchestrator(settings, runner=runner, environments=service)
    with pytest.raises(EnvironmentNotReady) as exc_info:
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref=env.id))
    assert f"/api/python-environments/{env.id}/install" in exc_info.value.details
    stored = service.get(env.id)
    assert stored.install_state is InstallState.NOT_INSTALLED
    assert stored.install_error == "Virtual environment path not found"
    assert runner.calls == []

    with pytest.raises(EnvironmentNotReady) as retry:
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref=env.id))
    assert retry.value.details.startswith("Virtual environment path not found. Reinstall it")
    assert f"/api/python-environments/{env.id}/install" in retry.value.details


def test_environment_without_interpreter(settings: RunnerSettings, service: EnvironmentService) -> None:
    env = _installed_env(service, link_python=False)
    orchestrator = ExecutionOrchestrator(settings, runner=FakeRunner(), environments=service)
    with pytest.raises(EnvironmentNotReady):
        orchestrator.execute(ExecutionRequest("print(1)", Language.PYTHON, environment_ref=env.id))
    assert service.get(env.id).install_error == "Python executable not found in virtual environment"
