from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import APIRouter, Body, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.responses import JSONResponse

from .environments import (
    DEFAULT_SEED_ENVIRONMENTS,
    EnvironmentManager,
    EnvironmentService,
    EnvironmentStore,
    JsonEnvironmentStore,
    StartupVerifier,
)
from .errors import EnvironmentNotFound
from .execution.orchestrator import ExecutionOrchestrator
from .execution.runner import CommandRunner, SubprocessRunner
from .execution.toolchains import probe_toolchains
from .handler import ExecutionHandler
from .schemas import EnvironmentCreate, EnvironmentUpdate, format_validation_errors
from .settings import RunnerSettings

logger = structlog.get_logger()

router = APIRouter(prefix="/api")


def _service(request: Request) -> EnvironmentService:
    """Return the environment service bound to the running app.

    Example:
        ```python
        service = _service(request)
        ```
    """
    return request.app.state.environments


@router.post("/execute")
def execute_code(request: Request, payload: Any = Body(None)) -> JSONResponse:
    """Run a snippet and return its output, or a structured failure.

    Example:
        ```python
        client.post("/api/execute", json={"code": "print(1)", "language": "python"})
        ```
    """
    handler: ExecutionHandler = request.app.state.handler
    response = handler.handle(payload)
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.get("/languages")
def list_languages(request: Request) -> list[dict[str, object]]:
    """Report which language toolchains this host can run.

    Example:
        ```python
        client.get("/api/languages").json()
        ```
    """
    settings: RunnerSettings = request.app.state.settings
    return [status_.to_dict() for status_ in probe_toolchains(settings)]


@router.get("/python-environments")
def list_environments(request: Request) -> list[dict[str, Any]]:
    """List environments sorted by name.

    Example:
        ```python
        client.get("/api/python-environments").json()
        ```
    """
    return [env.to_dict() for env in _service(request).list()]


@router.get("/python-environments/{env_id}")
def get_environment(env_id: str, request: Request) -> dict[str, Any]:
    """Return one environment.

    Example:
        ```python
        client.get(f"/api/python-environments/{env_id}").json()
        ```
    """
    return _service(request).get(env_id).to_dict()


@router.post("/python-environments", status_code=status.HTTP_201_CREATED)
def create_environment(body: EnvironmentCreate, request: Request) -> dict[str, Any]:
    """Create an environment; installation continues in the background.

    Example:
        ```python
        client.post("/api/python-environments", json={"name": "e1", "packages": ["requests"]})
        ```
    """
    env = _service(request).create(
        body.name, description=body.description, packages=body.packages
    )
    return env.to_dict()


@router.put("/python-environments/{env_id}")
def update_environment(env_id: str, body: EnvironmentUpdate, request: Request) -> dict[str, Any]:
    """Update an environment; a package change triggers a reinstall.

    Example:
        ```python
        client.put(f"/api/python-environments/{env_id}", json={"packages": ["httpx"]})
        ```
    """
    env = _service(request).update(
        env_id, name=body.name, description=body.description, packages=body.packages
    )
    return env.to_dict()


@router.delete("/python-environments/{env_id}")
def delete_environment(env_id: str, request: Request) -> dict[str, Any]:
    """Delete an environment record and, in the background, its directory.

    Example:
        ```python
        client.delete(f"/api/python-environments/{env_id}")
        ```
    """
    removed = _service(request).delete(env_id)
    return {"success": True, "id": removed.id, "message": "Python environment deleted successfully"}


@router.post("/python-environments/{env_id}/install", status_code=status.HTTP_202_ACCEPTED)
def reinstall_environment(env_id: str, request: Request) -> dict[str, Any]:
    """Force a fresh install of an environment.

    Example:
        ```python
        client.post(f"/api/python-environments/{env_id}/install")
        ```
    """
    return _service(request).reinstall(env_id).to_dict()


async def _not_found(request: Request, exc: EnvironmentNotFound) -> JSONResponse:
    """Map a missing environment to 404.

    Example:
        ```python
        app.add_exception_handler(EnvironmentNotFound, _not_found)
        ```
    """
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "error": "Python environment not found", "id": exc.env_id},
    )


async def _bad_value(request: Request, exc: ValueError) -> JSONResponse:
    """Map service-level argument errors to 400.

    Example:
        ```python
        app.add_exception_handler(ValueError, _bad_value)
        ```
    """
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": str(exc)},
    )


async def _invalid_body(request: Request, exc: BodyValidationError) -> JSONResponse:
    """Report schema violations as 400 with one detail per field.

    Example:
        ```python
        app.add_exception_handler(BodyValidationError, _invalid_body)
        ```
    """
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Invalid request",
            "details": format_validation_errors(exc.errors()),
        },
    )


def create_app(
    settings: RunnerSettings | None = None,
    *,
    store: EnvironmentStore | None = None,
    runner: CommandRunner | None = None,
) -> FastAPI:
    """Wire settings, store, runner, and services into a FastAPI app.

    The Startup Verifier runs once in the lifespan hook; the install pool
    is shut down when the app stops.

    Example:
        ```python
        app = create_app(RunnerSettings.from_file("pcr.toml"))
        ```
    """
    settings = settings or RunnerSettings()
    store = store if store is not None else JsonEnvironmentStore(settings.store_path)
    runner = runner or SubprocessRunner(max_output_bytes=settings.max_output_bytes)
    manager = EnvironmentManager.from_settings(settings, runner=runner)
    service = EnvironmentService(store, manager, max_workers=settings.install_workers)
    orchestrator = ExecutionOrchestrator(settings, runner=runner, environments=service)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Verify environments on startup and stop install workers on exit.

        Example:
            ```python
            app = FastAPI(lifespan=lifespan)
            ```
        """
        seeds = DEFAULT_SEED_ENVIRONMENTS if settings.seed_default_environments else ()
        summary = StartupVerifier(service, seeds=seeds).run()
        logger.info(
            "service_started",
            env_dir=str(manager.env_dir),
            seeded=len(summary.seeded),
            verified=len(summary.verified),
            repaired=len(summary.repaired),
            scheduled=len(summary.scheduled),
        )
        yield
        service.shutdown(wait_for_jobs=False)
        logger.info("service_stopped")

    app = FastAPI(title="poly-code-runner", lifespan=lifespan)
    app.state.settings = settings
    app.state.environments = service
    app.state.orchestrator = orchestrator
    app.state.handler = ExecutionHandler(orchestrator, settings)
    app.add_exception_handler(EnvironmentNotFound, _not_found)
    app.add_exception_handler(ValueError, _bad_value)
    app.add_exception_handler(BodyValidationError, _invalid_body)
    app.include_router(router)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Liveness probe.

        Example:
            ```python
            client.get("/health").json()  # {"status": "ok"}
            ```
        """
        return {"status": "ok"}

    return app
