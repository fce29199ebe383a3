from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime.

    Example:
        ```python
        stamp = utcnow()
        ```
    """
    return datetime.now(timezone.utc)


def new_environment_id() -> str:
    """Return a fresh opaque environment id.

    Example:
        ```python
        env_id = new_environment_id()
        ```
    """
    return uuid.uuid4().hex


class InstallState(str, Enum):
    """Install state machine of a durable environment.

    Example:
        ```python
        state = InstallState("Installed")
        ```
    """

    NOT_INSTALLED = "NotInstalled"
    INSTALLING = "Installing"
    INSTALLED = "Installed"
    FAILED = "Failed"


@dataclass(slots=True)
class Environment:
    """Persisted record of a named, package-bearing Python environment.

    `packages` is the desired state. `install_path` is only trustworthy as
    a hint: the directory can disappear underneath an `Installed` record.

    Example:
        ```python
        env = Environment(name="e1", packages=["requests"])
        ```
    """

    name: str
    description: str | None = None
    packages: list[str] = field(default_factory=list)
    id: str = field(default_factory=new_environment_id)
    install_state: InstallState = InstallState.NOT_INSTALLED
    install_path: str | None = None
    install_error: str | None = None
    install_log: list[str] = field(default_factory=list)
    created: datetime = field(default_factory=utcnow)
    last_used: datetime | None = None

    @property
    def is_installed(self) -> bool:
        """True when the record claims a usable installation.

        Example:
            ```python
            ready = env.is_installed
            ```
        """
        return self.install_state is InstallState.INSTALLED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON shape used by the API and the store.

        Example:
            ```python
            payload = env.to_dict()
            ```
        """
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "packages": list(self.packages),
            "installState": self.install_state.value,
            "isInstalled": self.is_installed,
            "installPath": self.install_path,
            "installError": self.install_error,
            "installLog": list(self.install_log),
            "created": self.created.isoformat(),
            "lastUsed": self.last_used.isoformat() if self.last_used else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Environment":
        """Rebuild an environment from its serialized form.

        Records written before `installState` existed carry only the
        boolean `isInstalled`.

        Example:
            ```python
            env = Environment.from_dict({"id": "a1", "name": "e1", "packages": []})
            ```
        """
        state_raw = raw.get("installState")
        if state_raw is None:
            state_raw = (
                InstallState.INSTALLED.value if raw.get("isInstalled") else InstallState.NOT_INSTALLED.value
            )
        last_used = raw.get("lastUsed")
        created = raw.get("created")
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name", "")),
            description=raw.get("description"),
            packages=[str(p) for p in raw.get("packages") or []],
            install_state=InstallState(state_raw),
            install_path=raw.get("installPath"),
            install_error=raw.get("installError"),
            install_log=[str(line) for line in raw.get("installLog") or []],
            created=datetime.fromisoformat(created) if created else utcnow(),
            last_used=datetime.fromisoformat(last_used) if last_used else None,
        )


def packages_changed(current: list[str], submitted: list[str]) -> bool:
    """Return True when two package lists differ, ignoring order.

    Example:
        ```python
        packages_changed(["a", "b"], ["b", "a"])  # False
        ```
    """
    return sorted(p.strip() for p in current) != sorted(p.strip() for p in submitted)
