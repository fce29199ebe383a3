from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

import structlog

from .models import Environment

logger = structlog.get_logger()


class EnvironmentStore(Protocol):
    def list(self) -> list[Environment]:
        """Return all environments sorted by name.

        Example:
            ```python
            envs = store.list()
            ```
        """
        ...

    def get(self, env_id: str) -> Environment | None:
        """Return one environment or None.

        Example:
            ```python
            env = store.get("4f1c")
            ```
        """
        ...

    def create(self, env: Environment) -> Environment:
        """Persist a new environment and return the stored copy.

        Example:
            ```python
            env = store.create(Environment(name="e1"))
            ```
        """
        ...

    def update(self, env_id: str, **changes: Any) -> Environment | None:
        """Apply field changes; return the updated copy or None when missing.

        Example:
            ```python
            env = store.update("4f1c", install_state=InstallState.INSTALLING)
            ```
        """
        ...

    def delete(self, env_id: str) -> Environment | None:
        """Remove an environment; return the removed record or None.

        Example:
            ```python
            removed = store.delete("4f1c")
            ```
        """
        ...

    def count(self) -> int:
        """Return the number of stored environments.

        Example:
            ```python
            total = store.count()
            ```
        """
        ...


def _copy(env: Environment) -> Environment:
    """Return a detached copy so callers never mutate stored state.

    Example:
        ```python
        snapshot = _copy(env)
        ```
    """
    return replace(env, packages=list(env.packages), install_log=list(env.install_log))


class InMemoryEnvironmentStore:
    """Thread-safe, process-local environment store.

    Example:
        ```python
        store = InMemoryEnvironmentStore()
        ```
    """

    def __init__(self) -> None:
        """Create an empty store.

        Example:
            ```python
            store = InMemoryEnvironmentStore()
            ```
        """
        self._lock = threading.RLock()
        self._items: dict[str, Environment] = {}

    def list(self) -> list[Environment]:
        """Return all environments sorted by name.

        Example:
            ```python
            names = [env.name for env in store.list()]
            ```
        """
        with self._lock:
            return sorted((_copy(e) for e in self._items.values()), key=lambda e: e.name)

    def get(self, env_id: str) -> Environment | None:
        """Return one environment or None.

        Example:
            ```python
            env = store.get(env_id)
            ```
        """
        with self._lock:
            env = self._items.get(env_id)
            return _copy(env) if env else None

    def create(self, env: Environment) -> Environment:
        """Persist a new environment and return the stored copy.

        Example:
            ```python
            env = store.create(Environment(name="data", packages=["pandas"]))
            ```
        """
        with self._lock:
            if env.id in self._items:
                raise ValueError(f"Environment id already exists: {env.id}")
            self._items[env.id] = _copy(env)
            try:
                self._persist()
            except BaseException:
                del self._items[env.id]
                raise
            return _copy(env)

    def update(self, env_id: str, **changes: Any) -> Environment | None:
        """Apply field changes; return the updated copy or None when missing.

        Example:
            ```python
            env = store.update(env_id, last_used=utcnow())
            ```
        """
        with self._lock:
            current = self._items.get(env_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._items[env_id] = updated
            try:
                self._persist()
            except BaseException:
                self._items[env_id] = current
                raise
            return _copy(updated)

    def delete(self, env_id: str) -> Environment | None:
        """Remove an environment; return the removed record or None.

        Example:
            ```python
            removed = store.delete(env_id)
            ```
        """
        with self._lock:
            removed = self._items.pop(env_id, None)
            if removed is not None:
                try:
                    self._persist()
                except BaseException:
                    self._items[env_id] = removed
                    raise
            return removed

    def count(self) -> int:
        """Return the number of stored environments.

        Example:
            ```python
            if store.count() == 0: ...
            ```
        """
        with self._lock:
            return len(self._items)

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held.

        Example:
            ```python
            store._persist()
            ```
        """


class JsonEnvironmentStore(InMemoryEnvironmentStore):
    """Environment store persisted as one JSON document on disk.

    Every change rewrites the whole file through a temp file and an atomic
    rename, so readers never observe a half-written document.

    Example:
        ```python
        store = JsonEnvironmentStore("~/.code-snippets/environments.json")
        ```
    """

    def __init__(self, path: str) -> None:
        """Load existing records from `path`, creating parent directories.

        Example:
            ```python
            store = JsonEnvironmentStore("/var/lib/pcr/environments.json")
            ```
        """
        super().__init__()
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def path(self) -> Path:
        """Location of the backing JSON file.

        Example:
            ```python
            print(store.path)
            ```
        """
        return self._path

    def _load(self) -> None:
        """Read the backing file into memory.

        Example:
            ```python
            store._load()
            ```
        """
        if not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as exc:
            raise ValueError(f"Environment store is not valid JSON: {self._path}: {exc}") from exc
        if not isinstance(raw, list):
            raise ValueError(f"Environment store must contain a JSON list: {self._path}")
        for item in raw:
            env = Environment.from_dict(item)
            self._items[env.id] = env
        logger.info("environment_store_loaded", path=str(self._path), count=len(self._items))

    def _persist(self) -> None:
        """Atomically rewrite the backing file from memory.

        Example:
            ```python
            store._persist()
            ```
        """
        payload = json.dumps([e.to_dict() for e in self._items.values()], indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=".environments-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
