from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_MIN_TIMEOUT_MS = 1000
DEFAULT_MAX_TIMEOUT_MS = 30000
DEFAULT_MAX_CODE_CHARS = 100_000
DEFAULT_MAX_OUTPUT_KB = 1024

_VENV_MANAGERS = {"python", "uv"}


def _default_data_dir() -> Path:
    """Return the per-user data directory for environments and metadata.

    Example:
        ```python
        root = _default_data_dir()
        ```
    """
    return Path.home() / ".code-snippets"


def _default_env_dir() -> str:
    """Return the base directory holding durable Python environments.

    Example:
        ```python
        env_dir = _default_env_dir()
        ```
    """
    return os.environ.get("PYTHON_ENV_DIR") or str(_default_data_dir() / "python-envs")


def _default_store_path() -> str:
    """Return the JSON metadata file used by the environment store.

    Example:
        ```python
        path = _default_store_path()
        ```
    """
    return str(_default_data_dir() / "environments.json")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read a settings TOML file and return the `[runner]` table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/pcr.toml"))
        ```
    """
    if not path.exists():
        return {}
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    settings_obj = raw.get("runner", raw)
    if not isinstance(settings_obj, dict):
        raise ValueError("Runner config must be a TOML table")
    return settings_obj


def _positive_int(value: Any, field_name: str) -> int:
    """Validate a strictly positive integer settings field.

    Example:
        ```python
        workers = _positive_int(2, "install_workers")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{field_name}' must be an integer")
    if value <= 0:
        raise ValueError(f"'{field_name}' must be positive")
    return value


def _timeout_table(value: Any) -> dict[str, int]:
    """Validate the per-language timeout override table.

    Example:
        ```python
        overrides = _timeout_table({"java": 15000})
        ```
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("'language_timeouts' must be a TOML table")
    return {str(k): _positive_int(v, f"language_timeouts.{k}") for k, v in value.items()}


@dataclass(slots=True)
class RunnerSettings:
    """Service configuration shared by the orchestrator and environment manager.

    Example:
        ```python
        settings = RunnerSettings(env_dir="/srv/envs", python_command="python3")
        ```
    """

    env_dir: str = field(default_factory=_default_env_dir)
    store_path: str = field(default_factory=_default_store_path)
    work_dir: str = field(default_factory=tempfile.gettempdir)
    python_command: str = "python"
    venv_manager: str = "python"
    max_code_chars: int = DEFAULT_MAX_CODE_CHARS
    max_output_kb: int = DEFAULT_MAX_OUTPUT_KB
    min_timeout_ms: int = DEFAULT_MIN_TIMEOUT_MS
    max_timeout_ms: int = DEFAULT_MAX_TIMEOUT_MS
    python_probe_timeout_ms: int = 5000
    venv_timeout_ms: int = 60000
    pip_upgrade_timeout_ms: int = 120000
    package_install_timeout_ms: int = 180000
    package_list_timeout_ms: int = 30000
    install_workers: int = 2
    dotnet_target_framework: str = "net8.0"
    seed_default_environments: bool = False
    language_timeouts: dict[str, int] = field(default_factory=dict)
    log_level: str = "INFO"
    log_json: bool = False
    config_path: str | None = None

    def __post_init__(self) -> None:
        """Validate cross-field constraints after dataclass initialization.

        Example:
            ```python
            RunnerSettings(venv_manager="uv")
            ```
        """
        if self.venv_manager not in _VENV_MANAGERS:
            raise ValueError("venv_manager must be either 'python' or 'uv'")
        if not self.env_dir.strip():
            raise ValueError("'env_dir' must be a non-empty path")
        if self.min_timeout_ms > self.max_timeout_ms:
            raise ValueError("'min_timeout_ms' must not exceed 'max_timeout_ms'")
        _positive_int(self.install_workers, "install_workers")
        _positive_int(self.max_output_kb, "max_output_kb")

    @property
    def max_output_bytes(self) -> int:
        """Per-stream output cap in bytes.

        Example:
            ```python
            cap = RunnerSettings(max_output_kb=64).max_output_bytes
            ```
        """
        return self.max_output_kb * 1024

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerSettings":
        """Create settings from a TOML file, falling back to defaults for missing keys.

        Example:
            ```python
            settings = RunnerSettings.from_file("/etc/pcr.toml")
            ```
        """
        raw = _read_settings_toml(Path(config_path).expanduser())
        defaults = cls()
        return cls(
            env_dir=str(raw.get("env_dir", defaults.env_dir)),
            store_path=str(raw.get("store_path", defaults.store_path)),
            work_dir=str(raw.get("work_dir", defaults.work_dir)),
            python_command=str(raw.get("python_command", defaults.python_command)),
            venv_manager=str(raw.get("venv_manager", defaults.venv_manager)),
            max_code_chars=_positive_int(
                raw.get("max_code_chars", defaults.max_code_chars), "max_code_chars"
            ),
            max_output_kb=_positive_int(
                raw.get("max_output_kb", defaults.max_output_kb), "max_output_kb"
            ),
            min_timeout_ms=_positive_int(
                raw.get("min_timeout_ms", defaults.min_timeout_ms), "min_timeout_ms"
            ),
            max_timeout_ms=_positive_int(
                raw.get("max_timeout_ms", defaults.max_timeout_ms), "max_timeout_ms"
            ),
            python_probe_timeout_ms=_positive_int(
                raw.get("python_probe_timeout_ms", defaults.python_probe_timeout_ms),
                "python_probe_timeout_ms",
            ),
            venv_timeout_ms=_positive_int(
                raw.get("venv_timeout_ms", defaults.venv_timeout_ms), "venv_timeout_ms"
            ),
            pip_upgrade_timeout_ms=_positive_int(
                raw.get("pip_upgrade_timeout_ms", defaults.pip_upgrade_timeout_ms),
                "pip_upgrade_timeout_ms",
            ),
            package_install_timeout_ms=_positive_int(
                raw.get("package_install_timeout_ms", defaults.package_install_timeout_ms),
                "package_install_timeout_ms",
            ),
            package_list_timeout_ms=_positive_int(
                raw.get("package_list_timeout_ms", defaults.package_list_timeout_ms),
                "package_list_timeout_ms",
            ),
            install_workers=_positive_int(
                raw.get("install_workers", defaults.install_workers), "install_workers"
            ),
            dotnet_target_framework=str(
                raw.get("dotnet_target_framework", defaults.dotnet_target_framework)
            ),
            seed_default_environments=bool(
                raw.get("seed_default_environments", defaults.seed_default_environments)
            ),
            language_timeouts=_timeout_table(raw.get("language_timeouts")),
            log_level=str(raw.get("log_level", defaults.log_level)).upper(),
            log_json=bool(raw.get("log_json", defaults.log_json)),
            config_path=config_path,
        )
