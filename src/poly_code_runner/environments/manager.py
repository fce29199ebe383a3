from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import structlog

from ..errors import CommandError
from ..execution.runner import CommandRunner, SubprocessRunner
from ..settings import RunnerSettings
from .locks import KeyedLocks

logger = structlog.get_logger()

_UNSAFE_SPEC_CHARS = re.compile(r"[;&|`$<>!(){}\[\]\\]")
_COMPARISON_OPS = re.compile(r"(===|==|!=|~=|<=|>=|<|>)")


def validate_package_spec(spec: str) -> str | None:
    """Return why `spec` is unsafe to hand to pip, or None when it is usable.

    Version comparisons (`numpy>=1.26,<2`) are allowed; option-like specs
    and shell metacharacters are not.

    Example:
        ```python
        validate_package_spec("requests==2.32.3")  # None
        validate_package_spec("--index-url=http://evil")  # "..."
        ```
    """
    cleaned = spec.strip()
    if not cleaned:
        return "Empty package specifier"
    if cleaned.startswith("-"):
        return f"Package specifier must not start with '-': {cleaned}"
    extras = re.sub(r"^([A-Za-z0-9._-]+)\[[A-Za-z0-9._,\s-]+\]", r"\1", cleaned)
    if _UNSAFE_SPEC_CHARS.search(_COMPARISON_OPS.sub("", extras)):
        return f"Package specifier contains unsupported characters: {cleaned}"
    return None


@dataclass(slots=True)
class PackageResult:
    """Outcome of installing one requested package.

    Example:
        ```python
        res = PackageResult(spec="requests", ok=True, message="Installed requests: Success")
        ```
    """

    spec: str
    ok: bool
    message: str


@dataclass(slots=True)
class InstallReport:
    """Result of `EnvironmentManager.create`.

    `success` reflects the bootstrap (directory + interpreter) only;
    individual package failures are listed in `package_results`.

    Example:
        ```python
        report = InstallReport(success=True, install_path="/envs/env_1")
        ```
    """

    success: bool
    install_path: str
    error: str | None = None
    package_results: list[PackageResult] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)

    @property
    def failed_packages(self) -> list[str]:
        """Specs that did not install.

        Example:
            ```python
            missing = report.failed_packages
            ```
        """
        return [r.spec for r in self.package_results if not r.ok]

    def log_lines(self) -> list[str]:
        """Flatten the report into diagnostic lines for the environment record.

        Example:
            ```python
            env_log = report.log_lines()
            ```
        """
        lines = list(self.notes)
        lines.extend(r.message for r in self.package_results)
        if self.installed:
            lines.append(f"Installed packages: {', '.join(self.installed)}")
        return lines


class EnvironmentManager:
    """Create, verify, and remove per-environment virtualenv installations.

    The base directory is injected; `install_path` is a pure function of
    the environment id so retries always target the same directory.
    `create`/`delete` for the same id are serialized.

    Example:
        ```python
        manager = EnvironmentManager(env_dir="/srv/python-envs", python_command="python3")
        report = manager.create("4f1c", ["requests"])
        ```
    """

    def __init__(
        self,
        *,
        env_dir: str,
        python_command: str = "python",
        venv_manager: str = "python",
        runner: CommandRunner | None = None,
        venv_timeout_ms: int = 60000,
        pip_upgrade_timeout_ms: int = 120000,
        package_install_timeout_ms: int = 180000,
        package_list_timeout_ms: int = 30000,
    ) -> None:
        """Initialize a manager rooted at `env_dir`.

        Example:
            ```python
            manager = EnvironmentManager(env_dir="/tmp/envs", venv_manager="uv")
            ```
        """
        cleaned = env_dir.strip()
        if not cleaned:
            raise ValueError("EnvironmentManager requires a non-empty 'env_dir'")
        if venv_manager not in {"python", "uv"}:
            raise ValueError("venv_manager must be either 'python' or 'uv'")
        self._env_dir = Path(cleaned).expanduser()
        self._python_command = python_command
        self._venv_manager = venv_manager
        self._runner: CommandRunner = runner or SubprocessRunner()
        self._venv_timeout_ms = venv_timeout_ms
        self._pip_upgrade_timeout_ms = pip_upgrade_timeout_ms
        self._package_install_timeout_ms = package_install_timeout_ms
        self._package_list_timeout_ms = package_list_timeout_ms
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls, settings: RunnerSettings, *, runner: CommandRunner | None = None
    ) -> "EnvironmentManager":
        """Build a manager from service settings.

        Example:
            ```python
            manager = EnvironmentManager.from_settings(RunnerSettings())
            ```
        """
        return cls(
            env_dir=settings.env_dir,
            python_command=settings.python_command,
            venv_manager=settings.venv_manager,
            runner=runner,
            venv_timeout_ms=settings.venv_timeout_ms,
            pip_upgrade_timeout_ms=settings.pip_upgrade_timeout_ms,
            package_install_timeout_ms=settings.package_install_timeout_ms,
            package_list_timeout_ms=settings.package_list_timeout_ms,
        )

    @property
    def env_dir(self) -> Path:
        """Base directory holding all environment installs.

        Example:
            ```python
            root = manager.env_dir
            ```
        """
        return self._env_dir

    def ensure_base_dir(self) -> None:
        """Create the base directory if it does not exist.

        Example:
            ```python
            manager.ensure_base_dir()
            ```
        """
        if not self._env_dir.exists():
            self._env_dir.mkdir(parents=True, exist_ok=True)
            logger.info("environment_base_dir_created", path=str(self._env_dir))

    def install_path(self, env_id: str) -> Path:
        """Return the deterministic install directory for `env_id`.

        Example:
            ```python
            path = manager.install_path("4f1c")  # <env_dir>/env_4f1c
            ```
        """
        if not env_id or "/" in env_id or "\\" in env_id or env_id in {".", ".."}:
            raise ValueError(f"Invalid environment id: {env_id!r}")
        return self._env_dir / f"env_{env_id}"

    @staticmethod
    def python_path(install_path: str | Path) -> Path:
        """Return the interpreter binary inside an install directory.

        Example:
            ```python
            py = EnvironmentManager.python_path("/envs/env_4f1c")
            ```
        """
        root = Path(install_path)
        if os.name == "nt":
            return root / "Scripts" / "python.exe"
        return root / "bin" / "python"

    def check_installation(self, install_path: str | None) -> str | None:
        """Return what is wrong with an install directory, or None if usable.

        Example:
            ```python
            problem = manager.check_installation(env.install_path)
            ```
        """
        if not install_path:
            return "Virtual environment path is missing"
        if not Path(install_path).exists():
            return "Virtual environment path not found"
        if not self.python_path(install_path).exists():
            return "Python executable not found in virtual environment"
        return None

    def create(self, env_id: str, packages: Sequence[str]) -> InstallReport:
        """Build a fresh environment for `env_id` and install `packages` one by one.

        Example:
            ```python
            report = manager.create("4f1c", ["requests", "rich"])
            ```
        """
        path = self.install_path(env_id)
        with self._locks.hold(env_id):
            return self._create_locked(env_id, path, list(packages))

    def delete(self, install_path: str | Path | None, *, env_id: str | None = None) -> bool:
        """Remove an install directory; absent paths are a no-op.

        Never raises: failures are logged and reported as False.

        Example:
            ```python
            manager.delete("/envs/env_4f1c", env_id="4f1c")
            ```
        """
        if not install_path:
            return True
        if env_id is None:
            return self._delete_path(Path(install_path))
        with self._locks.hold(env_id):
            return self._delete_path(Path(install_path))

    def _delete_path(self, path: Path) -> bool:
        """Recursively remove `path`, logging instead of raising.

        Example:
            ```python
            manager._delete_path(Path("/envs/env_4f1c"))
            ```
        """
        try:
            if path.exists():
                logger.info("environment_dir_deleting", path=str(path))
                shutil.rmtree(path)
            return True
        except OSError as exc:
            logger.error("environment_dir_delete_failed", path=str(path), error=str(exc))
            return False

    def _create_locked(self, env_id: str, path: Path, packages: list[str]) -> InstallReport:
        """Run the install steps; the caller holds the per-id lock.

        Example:
            ```python
            report = manager._create_locked("4f1c", path, ["requests"])
            ```
        """
        log = logger.bind(env_id=env_id, path=str(path))
        log.info("environment_install_started", packages=packages)
        try:
            self._reset_directory(path)
            self._create_venv(path)
        except (OSError, CommandError) as exc:
            error = f"Failed to create Python virtual environment: {exc}"
            log.error("environment_bootstrap_failed", error=str(exc))
            return InstallReport(success=False, install_path=str(path), error=error)

        python = self.python_path(path)
        if not python.exists():
            error = f"Python executable not found at {python} after environment creation"
            log.error("environment_bootstrap_failed", error=error)
            return InstallReport(success=False, install_path=str(path), error=error)

        report = InstallReport(success=True, install_path=str(path))
        if self._venv_manager == "python":
            report.notes.append(self._upgrade_pip(python, log))
        for spec in packages:
            report.package_results.append(self._install_package(python, spec, log))
        report.installed = self._list_installed(python, log)
        log.info(
            "environment_install_finished",
            failed_packages=report.failed_packages,
            installed_count=len(report.installed),
        )
        return report

    def _reset_directory(self, path: Path) -> None:
        """Ensure `path` is an empty directory, removing a stale install.

        Example:
            ```python
            manager._reset_directory(Path("/envs/env_4f1c"))
            ```
        """
        if path.exists():
            logger.info("environment_dir_stale", path=str(path))
            shutil.rmtree(path)
        path.mkdir(parents=True)

    def _create_venv(self, path: Path) -> None:
        """Initialize an isolated interpreter installation at `path`.

        Example:
            ```python
            manager._create_venv(Path("/envs/env_4f1c"))
            ```
        """
        if self._venv_manager == "uv":
            self._runner.run("uv", ["venv", str(path)], timeout_ms=self._venv_timeout_ms)
            return
        self._runner.run(
            self._python_command, ["-m", "venv", str(path)], timeout_ms=self._venv_timeout_ms
        )

    def _pip(self, python: Path, args: list[str], timeout_ms: int) -> str:
        """Run a pip subcommand against the environment and return stdout.

        Example:
            ```python
            out = manager._pip(py, ["freeze"], timeout_ms=30000)
            ```
        """
        if self._venv_manager == "uv":
            output = self._runner.run(
                "uv", ["pip", *args, "--python", str(python)], timeout_ms=timeout_ms
            )
        else:
            output = self._runner.run(str(python), ["-m", "pip", *args], timeout_ms=timeout_ms)
        return output.stdout

    def _upgrade_pip(self, python: Path, log: structlog.BoundLogger) -> str:
        """Best-effort pip self-upgrade; failures never abort the install.

        Example:
            ```python
            note = manager._upgrade_pip(py, logger)
            ```
        """
        try:
            self._pip(python, ["install", "--upgrade", "pip"], self._pip_upgrade_timeout_ms)
        except CommandError as exc:
            log.warning("pip_upgrade_failed", error=str(exc))
            return f"Failed to upgrade pip: {exc}"
        return "Pip upgrade: Success"

    def _install_package(self, python: Path, spec: str, log: structlog.BoundLogger) -> PackageResult:
        """Install one package, turning any failure into a PackageResult.

        Example:
            ```python
            res = manager._install_package(py, "requests", logger)
            ```
        """
        cleaned = spec.strip()
        problem = validate_package_spec(cleaned)
        if problem is not None:
            log.warning("package_rejected", spec=spec, reason=problem)
            return PackageResult(spec=spec, ok=False, message=f"Skipped {spec!r}: {problem}")
        try:
            self._pip(python, ["install", cleaned], self._package_install_timeout_ms)
        except CommandError as exc:
            log.error("package_install_failed", spec=cleaned, error=str(exc))
            return PackageResult(
                spec=cleaned, ok=False, message=f"Failed to install package {cleaned}: {exc}"
            )
        log.info("package_installed", spec=cleaned)
        return PackageResult(spec=cleaned, ok=True, message=f"Installed {cleaned}: Success")

    def _list_installed(self, python: Path, log: structlog.BoundLogger) -> list[str]:
        """Return `pip freeze` lines for diagnostics; empty on failure.

        Example:
            ```python
            frozen = manager._list_installed(py, logger)
            ```
        """
        try:
            stdout = self._pip(python, ["freeze"], self._package_list_timeout_ms)
        except CommandError as exc:
            log.warning("package_list_failed", error=str(exc))
            return []
        return [line.strip() for line in stdout.splitlines() if line.strip()]
