from __future__ import annotations

import os
import shutil
import tempfile
import time
from dataclasses import replace
from pathlib import Path

import structlog

from ..environments.models import Environment, InstallState
from ..environments.service import EnvironmentService
from ..errors import CommandError, EnvironmentNotFound, EnvironmentNotReady, SystemPythonUnavailable
from ..settings import RunnerSettings
from .languages import (
    COMPILED_ARTIFACT_NAME,
    LanguageProfile,
    Strategy,
    csproj_text,
    infer_entry_point,
    profile_for,
)
from .runner import CommandRunner, SubprocessRunner
from .types import CommandOutput, EnvironmentInfo, ExecutionRequest, ExecutionResult, Language

logger = structlog.get_logger()


class ExecutionOrchestrator:
    """Drive one execution request through stage, compile, run, and cleanup.

    Failures surface as `RunnerError` subclasses; mapping them to
    responses is the request handler's job.

    Example:
        ```python
        orchestrator = ExecutionOrchestrator(RunnerSettings(), environments=service)
        result = orchestrator.execute(ExecutionRequest("print('hi')", Language.PYTHON))
        ```
    """

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        runner: CommandRunner | None = None,
        environments: EnvironmentService | None = None,
    ) -> None:
        """Bind settings, the Command Runner, and the environment service.

        Example:
            ```python
            orchestrator = ExecutionOrchestrator(settings, runner=SubprocessRunner())
            ```
        """
        self._settings = settings
        self._runner: CommandRunner = runner or SubprocessRunner(
            max_output_bytes=settings.max_output_bytes
        )
        self._environments = environments

    def profile(self, language: Language) -> LanguageProfile:
        """Return the host-adjusted profile for `language`.

        Example:
            ```python
            timeout = orchestrator.profile(Language.JAVA).timeout_ms
            ```
        """
        return profile_for(
            language,
            python_command=self._settings.python_command,
            timeout_overrides=self._settings.language_timeouts,
        )

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute `request` and return its captured output.

        Example:
            ```python
            result = orchestrator.execute(
                ExecutionRequest("console.log(1)", Language.JAVASCRIPT, timeout_ms=3000)
            )
            ```
        """
        profile = self.profile(request.language)
        timeout_ms = request.timeout_ms or profile.timeout_ms
        started = time.perf_counter()
        info: EnvironmentInfo | None = None
        if request.language is Language.PYTHON:
            if request.environment_ref:
                env, python = self._resolve_environment(request.environment_ref)
                profile = replace(profile, command=str(python))
                info = EnvironmentInfo(
                    python=True,
                    virtual_env=True,
                    id=env.id,
                    name=env.name,
                    packages=list(env.packages),
                )
            else:
                self._probe_system_python(profile.command)
                info = EnvironmentInfo(python=True, virtual_env=False)

        log = logger.bind(language=request.language.value, timeout_ms=timeout_ms)
        workspace = self._stage_workspace()
        log.info("execution_started", workspace=str(workspace))
        try:
            output = self._dispatch(profile, request, workspace, timeout_ms)
        finally:
            self._cleanup(workspace)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        log.info("execution_finished", execution_time_ms=elapsed_ms)
        return ExecutionResult(
            success=True,
            stdout=output.stdout,
            stderr=output.stderr,
            execution_time_ms=elapsed_ms,
            environment=info,
            truncated=output.truncated,
        )

    def _dispatch(
        self,
        profile: LanguageProfile,
        request: ExecutionRequest,
        workspace: Path,
        timeout_ms: int,
    ) -> CommandOutput:
        """Route to the invocation strategy bound to the language.

        Example:
            ```python
            out = orchestrator._dispatch(profile, request, workspace, 5000)
            ```
        """
        if profile.strategy is Strategy.COMPILE:
            return self._compile_and_run(profile, request, workspace, timeout_ms)
        if profile.strategy is Strategy.INFERRED_ENTRY_POINT:
            return self._compile_inferred(profile, request, workspace, timeout_ms)
        if profile.strategy is Strategy.PROJECT:
            return self._build_project(profile, request, workspace, timeout_ms)
        return self._interpret(profile, request, workspace, timeout_ms)

    def _interpret(
        self,
        profile: LanguageProfile,
        request: ExecutionRequest,
        workspace: Path,
        timeout_ms: int,
    ) -> CommandOutput:
        """Write the source to a temp file and hand it to the interpreter.

        Example:
            ```python
            out = orchestrator._interpret(profile, request, workspace, 5000)
            ```
        """
        source = _write_source(workspace / f"main.{profile.extension}", request.code)
        return self._runner.run(
            profile.command,
            [*profile.args, str(source)],
            timeout_ms=timeout_ms,
            stdin=request.stdin,
            cwd=str(workspace),
        )

    def _compile_and_run(
        self,
        profile: LanguageProfile,
        request: ExecutionRequest,
        workspace: Path,
        timeout_ms: int,
    ) -> CommandOutput:
        """Compile to a fixed-name executable, then run it.

        Compilation and execution each get the full request timeout.

        Example:
            ```python
            out = orchestrator._compile_and_run(profile, request, workspace, 8000)
            ```
        """
        source = _write_source(workspace / f"main.{profile.extension}", request.code)
        executable = workspace / (COMPILED_ARTIFACT_NAME + (".exe" if os.name == "nt" else ""))
        self._runner.run(
            profile.command,
            [*profile.args, str(source), "-o", str(executable)],
            timeout_ms=timeout_ms,
            cwd=str(workspace),
        )
        return self._runner.run(
            str(executable), [], timeout_ms=timeout_ms, stdin=request.stdin, cwd=str(workspace)
        )

    def _compile_inferred(
        self,
        profile: LanguageProfile,
        request: ExecutionRequest,
        workspace: Path,
        timeout_ms: int,
    ) -> CommandOutput:
        """Name the source after its inferred class, compile, and run that class.

        Example:
            ```python
            out = orchestrator._compile_inferred(profile, request, workspace, 10000)
            ```
        """
        entry_point = infer_entry_point(request.code)
        source = _write_source(workspace / f"{entry_point}.{profile.extension}", request.code)
        logger.debug("entry_point_inferred", entry_point=entry_point)
        self._runner.run(
            profile.command, [*profile.args, str(source)], timeout_ms=timeout_ms, cwd=str(workspace)
        )
        return self._runner.run(
            profile.run_command or "java",
            ["-cp", str(workspace), entry_point],
            timeout_ms=timeout_ms,
            stdin=request.stdin,
            cwd=str(workspace),
        )

    def _build_project(
        self,
        profile: LanguageProfile,
        request: ExecutionRequest,
        workspace: Path,
        timeout_ms: int,
    ) -> CommandOutput:
        """Synthesize a minimal project around the source and build-and-run it.

        Example:
            ```python
            out = orchestrator._build_project(profile, request, workspace, 8000)
            ```
        """
        project_dir = workspace / "project"
        project_dir.mkdir()
        _write_source(project_dir / f"Program.{profile.extension}", request.code)
        project_file = _write_source(
            project_dir / "project.csproj", csproj_text(self._settings.dotnet_target_framework)
        )
        return self._runner.run(
            profile.command,
            [*profile.args, "--project", str(project_file)],
            timeout_ms=timeout_ms,
            stdin=request.stdin,
            cwd=str(project_dir),
        )

    def _probe_system_python(self, command: str) -> None:
        """Fail fast when no system interpreter answers `--version`.

        Example:
            ```python
            orchestrator._probe_system_python("python")
            ```
        """
        try:
            self._runner.run(
                command, ["--version"], timeout_ms=self._settings.python_probe_timeout_ms
            )
        except CommandError as exc:
            logger.warning("system_python_unavailable", command=command, error=str(exc))
            raise SystemPythonUnavailable(str(exc)) from exc

    def _resolve_environment(self, env_ref: str) -> tuple[Environment, Path]:
        """Look up a durable environment and confirm it can serve a run.

        A record that claims `Installed` but has lost its directory or
        interpreter is flipped to `NotInstalled` before failing.

        Example:
            ```python
            env, python = orchestrator._resolve_environment("4f1c")
            ```
        """
        if self._environments is None:
            raise EnvironmentNotFound(env_ref)
        env = self._environments.get(env_ref)
        if not env.is_installed or not env.install_path:
            raise EnvironmentNotReady(env.id, _not_ready_details(env))
        manager = self._environments.manager
        problem = manager.check_installation(env.install_path)
        if problem is not None:
            self._environments.mark_not_installed(env.id, problem)
            raise EnvironmentNotReady(
                env.id,
                f"{problem}. The environment has been marked as not installed. "
                f"Reinstall it with POST /api/python-environments/{env.id}/install "
                "and try again once it is Installed.",
            )
        self._environments.touch(env.id)
        return env, manager.python_path(env.install_path)

    def _stage_workspace(self) -> Path:
        """Create a private temp directory for one request.

        Example:
            ```python
            workspace = orchestrator._stage_workspace()
            ```
        """
        root = Path(self._settings.work_dir)
        root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix="run_", dir=str(root)))

    def _cleanup(self, workspace: Path) -> None:
        """Remove the request workspace; failures are logged, never raised.

        Example:
            ```python
            orchestrator._cleanup(workspace)
            ```
        """
        try:
            shutil.rmtree(workspace)
        except OSError as exc:
            logger.warning("workspace_cleanup_failed", workspace=str(workspace), error=str(exc))


def _write_source(path: Path, text: str) -> Path:
    """Write `text` to `path` as UTF-8 and return the path.

    Example:
        ```python
        src = _write_source(workspace / "main.rb", "puts 1")
        ```
    """
    path.write_text(text, encoding="utf-8")
    return path


def _not_ready_details(env: Environment) -> str:
    """Explain why an environment cannot run code yet.

    Example:
        ```python
        details = _not_ready_details(env)
        ```
    """
    if env.install_state is InstallState.FAILED:
        return (
            f"{env.install_error or 'Installation failed'}. "
            "Reinstall the environment or change its packages, then try again later."
        )
    if env.install_error:
        return (
            f"{env.install_error}. Reinstall it with "
            f"POST /api/python-environments/{env.id}/install and try again."
        )
    return "Environment is still being installed. Please try again later."
