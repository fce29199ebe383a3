from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Sequence

import structlog

from ..errors import EnvironmentNotFound
from .manager import EnvironmentManager
from .models import Environment, InstallState, packages_changed, utcnow
from .locks import KeyedLocks
from .store import EnvironmentStore

logger = structlog.get_logger()


class EnvironmentService:
    """Environment CRUD plus the background install state machine.

    Installs run as supervised jobs on a bounded thread pool. Each job
    reads the desired package list when it starts. Jobs for the same id
    run one at a time, and a done-callback records any unexpected job
    failure on the environment as `Failed`.

    Example:
        ```python
        service = EnvironmentService(store, manager, max_workers=2)
        env = service.create("e1", packages=["requests"])
        ```
    """

    def __init__(
        self,
        store: EnvironmentStore,
        manager: EnvironmentManager,
        *,
        max_workers: int = 2,
    ) -> None:
        """Bind the service to a metadata store and a lifecycle manager.

        Example:
            ```python
            service = EnvironmentService(InMemoryEnvironmentStore(), manager)
            ```
        """
        self._store = store
        self._manager = manager
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="env-install")
        self._futures_lock = threading.Lock()
        self._futures: set[Future[None]] = set()
        self._job_locks = KeyedLocks()

    @property
    def store(self) -> EnvironmentStore:
        """Metadata store backing this service.

        Example:
            ```python
            total = service.store.count()
            ```
        """
        return self._store

    @property
    def manager(self) -> EnvironmentManager:
        """Lifecycle manager that owns install directories.

        Example:
            ```python
            path = service.manager.install_path(env.id)
            ```
        """
        return self._manager

    def list(self) -> list[Environment]:
        """Return all environments sorted by name.

        Example:
            ```python
            envs = service.list()
            ```
        """
        return self._store.list()

    def get(self, env_id: str) -> Environment:
        """Return one environment or raise `EnvironmentNotFound`.

        Example:
            ```python
            env = service.get("4f1c")
            ```
        """
        env = self._store.get(env_id)
        if env is None:
            raise EnvironmentNotFound(env_id)
        return env

    def create(
        self, name: str, *, description: str | None = None, packages: Sequence[str] = ()
    ) -> Environment:
        """Persist a new environment and start installing it in the background.

        Returns immediately with `install_state == NotInstalled`.

        Example:
            ```python
            env = service.create("e1", packages=["requests"])
            ```
        """
        if not name or not name.strip():
            raise ValueError("Environment name is required")
        env = self._store.create(
            Environment(name=name.strip(), description=description, packages=list(packages))
        )
        logger.info("environment_created", env_id=env.id, name=env.name, packages=env.packages)
        self.schedule_install(env.id)
        return env

    def update(
        self,
        env_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        packages: Sequence[str] | None = None,
    ) -> Environment:
        """Update display metadata and, when packages change, invalidate the install.

        A package change flips the record to `NotInstalled` right away and
        schedules a job that removes the old directory, clears
        `install_path`, and installs the new list.

        Example:
            ```python
            env = service.update(env.id, packages=["httpx"])
            ```
        """
        current = self.get(env_id)
        changes: dict[str, object] = {}
        if name is not None:
            if not name.strip():
                raise ValueError("Environment name is required")
            changes["name"] = name.strip()
        if description is not None:
            changes["description"] = description
        reinstall = False
        if packages is not None:
            submitted = list(packages)
            changes["packages"] = submitted
            if packages_changed(current.packages, submitted):
                reinstall = True
                changes["install_state"] = InstallState.NOT_INSTALLED
                changes["install_error"] = None
        updated = self._store.update(env_id, **changes)
        if updated is None:
            raise EnvironmentNotFound(env_id)
        if reinstall:
            logger.info(
                "environment_packages_changed",
                env_id=env_id,
                old=current.packages,
                new=updated.packages,
            )
            self.schedule_install(env_id, stale_path=current.install_path)
        return updated

    def delete(self, env_id: str) -> Environment:
        """Remove the record now and the install directory in the background.

        Example:
            ```python
            removed = service.delete(env.id)
            ```
        """
        removed = self._store.delete(env_id)
        if removed is None:
            raise EnvironmentNotFound(env_id)
        logger.info("environment_deleted", env_id=env_id, install_path=removed.install_path)
        paths = {str(self._manager.install_path(env_id))}
        if removed.install_path:
            paths.add(removed.install_path)
        for path in sorted(paths):
            self._submit(env_id, self._remove_job, env_id, path)
        return removed

    def reinstall(self, env_id: str) -> Environment:
        """Mark an environment `NotInstalled` and install it again.

        Example:
            ```python
            env = service.reinstall(env.id)
            ```
        """
        updated = self._store.update(
            env_id, install_state=InstallState.NOT_INSTALLED, install_error=None
        )
        if updated is None:
            raise EnvironmentNotFound(env_id)
        self.schedule_install(env_id)
        return updated

    def mark_not_installed(self, env_id: str, reason: str) -> Environment | None:
        """Record that an install is unusable without scheduling a repair.

        Example:
            ```python
            service.mark_not_installed(env.id, "Virtual environment path not found")
            ```
        """
        logger.warning("environment_marked_not_installed", env_id=env_id, reason=reason)
        return self._store.update(
            env_id, install_state=InstallState.NOT_INSTALLED, install_error=reason
        )

    def touch(self, env_id: str) -> None:
        """Update `last_used` to now.

        Example:
            ```python
            service.touch(env.id)
            ```
        """
        self._store.update(env_id, last_used=utcnow())

    def schedule_install(self, env_id: str, *, stale_path: str | None = None) -> Future[None]:
        """Submit a background install job for `env_id`.

        Example:
            ```python
            future = service.schedule_install(env.id)
            ```
        """
        logger.info("environment_install_scheduled", env_id=env_id)
        return self._submit(env_id, self._install_job, env_id, stale_path)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted job finished; False on timeout.

        Jobs submitted while waiting are waited for as well.

        Example:
            ```python
            service.wait(timeout=600)
            ```
        """
        while True:
            with self._futures_lock:
                pending = set(self._futures)
            if not pending:
                return True
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, *, wait_for_jobs: bool = False) -> None:
        """Stop accepting jobs; optionally wait for running ones.

        Example:
            ```python
            service.shutdown(wait_for_jobs=True)
            ```
        """
        self._pool.shutdown(wait=wait_for_jobs, cancel_futures=not wait_for_jobs)

    def _submit(
        self, env_id: str, fn: Callable[..., None], *args: object
    ) -> Future[None]:
        """Submit a job and attach the supervising done-callback.

        Example:
            ```python
            service._submit(env_id, service._install_job, env_id, None)
            ```
        """
        future: Future[None] = self._pool.submit(fn, *args)
        with self._futures_lock:
            self._futures.add(future)

        def _on_done(done: Future[None]) -> None:
            """Forget the finished job and record unexpected failures.

            Example:
                ```python
                future.add_done_callback(_on_done)
                ```
            """
            try:
                exc = None if done.cancelled() else done.exception()
                if exc is not None:
                    self._record_job_failure(env_id, exc)
            finally:
                # wait() treats a job as pending until it is discarded here.
                with self._futures_lock:
                    self._futures.discard(done)

        future.add_done_callback(_on_done)
        return future

    def _record_job_failure(self, env_id: str, exc: BaseException) -> None:
        """Mark the environment `Failed` after a job raised.

        Example:
            ```python
            service._record_job_failure(env_id, RuntimeError("disk full"))
            ```
        """
        logger.error("environment_job_failed", env_id=env_id, error=repr(exc))
        self._store.update(
            env_id,
            install_state=InstallState.FAILED,
            install_error=f"Environment installation crashed: {exc}",
        )

    def _remove_job(self, env_id: str, path: str) -> None:
        """Background removal of a deleted environment's directory.

        Example:
            ```python
            service._remove_job(env_id, "/envs/env_4f1c")
            ```
        """
        with self._job_locks.hold(env_id):
            self._manager.delete(path, env_id=env_id)

    def _install_job(self, env_id: str, stale_path: str | None) -> None:
        """Install the current package list of `env_id` and record the outcome.

        Example:
            ```python
            service._install_job(env_id, None)
            ```
        """
        with self._job_locks.hold(env_id):
            self._install_locked(env_id, stale_path)

    def _install_locked(self, env_id: str, stale_path: str | None) -> None:
        """Run one install job; the caller holds the per-id job lock.

        Example:
            ```python
            with service._job_locks.hold(env_id):
                service._install_locked(env_id, None)
            ```
        """
        env = self._store.get(env_id)
        if env is None:
            logger.info("environment_install_skipped", env_id=env_id, reason="deleted")
            return
        old_path = stale_path or env.install_path
        if old_path:
            # install_path is only cleared once the old directory is gone.
            self._manager.delete(old_path, env_id=env_id)
            self._store.update(env_id, install_path=None)

        packages = list(env.packages)
        self._store.update(env_id, install_state=InstallState.INSTALLING, install_error=None)
        report = self._manager.create(env_id, packages)

        latest = self._store.get(env_id)
        if latest is None:
            logger.info("environment_deleted_during_install", env_id=env_id)
            self._manager.delete(report.install_path, env_id=env_id)
            return
        if packages_changed(latest.packages, packages):
            # A newer package list was submitted; its own job is queued.
            logger.info("environment_install_superseded", env_id=env_id)
            return
        if report.success:
            self._store.update(
                env_id,
                install_state=InstallState.INSTALLED,
                install_path=report.install_path,
                install_error=None,
                install_log=report.log_lines(),
            )
            logger.info(
                "environment_installed", env_id=env_id, failed_packages=report.failed_packages
            )
        else:
            self._store.update(
                env_id,
                install_state=InstallState.FAILED,
                install_error=report.error,
                install_log=report.log_lines(),
            )
            logger.error("environment_install_failed", env_id=env_id, error=report.error)
