from __future__ import annotations

from pathlib import Path

import pytest

from poly_code_runner.environments import EnvironmentManager
from poly_code_runner.environments.manager import validate_package_spec
from poly_code_runner.errors import CommandSpawnError

from conftest import FakeRunner, venv_script


def _manager(tmp_path: Path, runner: FakeRunner, venv_manager: str = "python") -> EnvironmentManager:
    return EnvironmentManager(
        env_dir=str(tmp_path / "envs"),
        python_command="python3",
        venv_manager=venv_manager,
        runner=runner,
    )


def test_install_path_is_deterministic(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeRunner())
    assert manager.install_path("abc") == tmp_path / "envs" / "env_abc"
    assert manager.install_path("abc") == manager.install_path("abc")


@pytest.mark.parametrize("bad_id", ["", ".", "..", "a/b", "a\\b"])
def test_install_path_rejects_unsafe_ids(tmp_path: Path, bad_id: str) -> None:
    with pytest.raises(ValueError):
        _manager(tmp_path, FakeRunner()).install_path(bad_id)


def test_manager_requires_env_dir() -> None:
    with pytest.raises(ValueError, match="env_dir"):
        EnvironmentManager(env_dir="  ")


def test_create_runs_bootstrap_then_packages(tmp_path: Path) -> None:
    runner = FakeRunner(venv_script())
    manager = _manager(tmp_path, runner)
    report = manager.create("e1", ["requests", "rich"])

    path = manager.install_path("e1")
    python = str(manager.python_path(path))
    assert report.success is True
    assert report.install_path == str(path)
    assert runner.commands() == [
        ["python3", "-m", "venv", str(path)],
        [python, "-m", "pip", "install", "--upgrade", "pip"],
        [python, "-m", "pip", "install", "requests"],
        [python, "-m", "pip", "install", "rich"],
        [python, "-m", "pip", "freeze"],
    ]
    assert runner.calls[0].timeout_ms == 60000
    assert runner.calls[1].timeout_ms == 120000
    assert runner.calls[2].timeout_ms == 180000
    assert runner.calls[4].timeout_ms == 30000
    assert report.installed == ["requests==2.32.3"]
    assert report.log_lines() == [
        "Pip upgrade: Success",
        "Installed requests: Success",
        "Installed rich: Success",
        "Installed packages: requests==2.32.3",
    ]


def test_package_failure_does_not_fail_environment(tmp_path: Path) -> None:
    runner = FakeRunner(venv_script(fail_packages={"nonexistent-pkg"}))
    report = _manager(tmp_path, runner).create("e1", ["nonexistent-pkg", "requests"])
    assert report.success is True
    assert report.failed_packages == ["nonexistent-pkg"]
    assert any("Failed to install package nonexistent-pkg" in line for line in report.log_lines())
    assert any("Installed requests: Success" == line for line in report.log_lines())


def test_unsafe_package_spec_is_skipped(tmp_path: Path) -> None:
    runner = FakeRunner(venv_script())
    report = _manager(tmp_path, runner).create("e1", ["--index-url=http://evil"])
    assert report.success is True
    assert report.failed_packages == ["--index-url=http://evil"]
    assert not any("--index-url=http://evil" in cmd for cmd in runner.commands())


def test_venv_failure_fails_environment(tmp_path: Path) -> None:
    runner = FakeRunner(lambda c, a: CommandSpawnError(c, "No such file or directory"))
    report = _manager(tmp_path, runner).create("e1", ["requests"])
    assert report.success is False
    assert report.error is not None
    assert report.error.startswith("Failed to create Python virtual environment")
    assert len(runner.calls) == 1


def test_missing_interpreter_after_bootstrap(tmp_path: Path) -> None:
    runner = FakeRunner()
    report = _manager(tmp_path, runner).create("e1", [])
    assert report.success is False
    assert "Python executable not found" in (report.error or "")


def test_create_replaces_stale_directory(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeRunner(venv_script()))
    stale = manager.install_path("e1")
    stale.mkdir(parents=True)
    (stale / "leftover.txt").write_text("old", encoding="utf-8")
    report = manager.create("e1", [])
    assert report.success is True
    assert not (stale / "leftover.txt").exists()
    assert manager.check_installation(report.install_path) is None


def test_uv_manager_commands(tmp_path: Path) -> None:
    runner = FakeRunner(venv_script())
    manager = _manager(tmp_path, runner, venv_manager="uv")
    report = manager.create("e1", ["requests"])
    path = manager.install_path("e1")
    python = str(manager.python_path(path))
    assert runner.commands() == [
        ["uv", "venv", str(path)],
        ["uv", "pip", "install", "requests", "--python", python],
        ["uv", "pip", "freeze", "--python", python],
    ]
    assert "Pip upgrade: Success" not in report.log_lines()


def test_delete_is_idempotent(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeRunner(venv_script()))
    report = manager.create("e1", [])
    assert manager.delete(report.install_path, env_id="e1") is True
    assert not Path(report.install_path).exists()
    assert manager.delete(report.install_path, env_id="e1") is True
    assert manager.delete(None) is True


def test_check_installation_messages(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeRunner())
    assert manager.check_installation(None) == "Virtual environment path is missing"
    missing = tmp_path / "envs" / "env_x"
    assert manager.check_installation(str(missing)) == "Virtual environment path not found"
    missing.mkdir(parents=True)
    assert (
        manager.check_installation(str(missing))
        == "Python executable not found in virtual environment"
    )


def test_ensure_base_dir(tmp_path: Path) -> None:
    manager = _manager(tmp_path, FakeRunner())
    manager.ensure_base_dir()
    assert (tmp_path / "envs").is_dir()


@pytest.mark.parametrize(
    ("spec", "ok"),
    [
        ("requests", True),
        ("numpy>=1.26,<2", True),
        ("uvicorn[standard]==0.30.0", True),
        ("", False),
        ("-r requirements.txt", False),
        ("requests; rm -rf /", False),
        ("pkg$(whoami)", False),
    ],
)
def test_validate_package_spec(spec: str, ok: bool) -> None:
    assert (validate_package_spec(spec) is None) is ok
