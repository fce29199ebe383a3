from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from .models import Environment
from .service import EnvironmentService

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class SeedEnvironment:
    """Environment created on first boot when the store is empty.

    Example:
        ```python
        seed = SeedEnvironment("web_dev", "Web development", ("flask",))
        ```
    """

    name: str
    description: str
    packages: tuple[str, ...]


DEFAULT_SEED_ENVIRONMENTS: tuple[SeedEnvironment, ...] = (
    SeedEnvironment(
        "gen_ai",
        "Environment for AI/ML development",
        ("numpy", "pandas", "matplotlib", "langchain", "openai"),
    ),
    SeedEnvironment(
        "web_dev",
        "Environment for web development",
        ("flask", "django", "fastapi", "sqlalchemy"),
    ),
    SeedEnvironment(
        "data_science",
        "Environment for data science",
        ("pandas", "numpy", "scipy", "scikit-learn", "matplotlib", "seaborn"),
    ),
)


@dataclass(slots=True)
class VerificationSummary:
    """What one startup verification pass did.

    Example:
        ```python
        summary = VerificationSummary(verified=["a1"])
        ```
    """

    seeded: list[str] = field(default_factory=list)
    verified: list[str] = field(default_factory=list)
    repaired: list[str] = field(default_factory=list)
    scheduled: list[str] = field(default_factory=list)


class StartupVerifier:
    """Reconcile persisted environment state with what exists on disk.

    Runs once at boot. Installs are scheduled on the service's pool and
    never awaited here.

    Example:
        ```python
        summary = StartupVerifier(service, seeds=DEFAULT_SEED_ENVIRONMENTS).run()
        ```
    """

    def __init__(
        self,
        service: EnvironmentService,
        *,
        seeds: tuple[SeedEnvironment, ...] = (),
    ) -> None:
        """Bind the verifier to a service and an optional seed list.

        Example:
            ```python
            verifier = StartupVerifier(service)
            ```
        """
        self._service = service
        self._seeds = seeds

    def run(self) -> VerificationSummary:
        """Seed when empty, then verify or schedule every environment.

        Example:
            ```python
            summary = verifier.run()
            ```
        """
        summary = VerificationSummary()
        self._service.manager.ensure_base_dir()
        if self._seeds and self._service.store.count() == 0:
            logger.info("environment_seeding", count=len(self._seeds))
            for seed in self._seeds:
                env = self._service.create(
                    seed.name, description=seed.description, packages=seed.packages
                )
                summary.seeded.append(env.id)
            # Seeded records already have installs scheduled by create().
            return summary

        for env in self._service.list():
            if env.is_installed:
                self._verify_installed(env, summary)
            else:
                logger.info(
                    "environment_needs_install", env_id=env.id, state=env.install_state.value
                )
                self._service.schedule_install(env.id)
                summary.scheduled.append(env.id)
        logger.info(
            "environment_verification_finished",
            verified=len(summary.verified),
            repaired=len(summary.repaired),
            scheduled=len(summary.scheduled),
        )
        return summary

    def _verify_installed(self, env: Environment, summary: VerificationSummary) -> None:
        """Check one `Installed` record against the filesystem.

        Example:
            ```python
            verifier._verify_installed(env, summary)
            ```
        """
        try:
            problem = self._service.manager.check_installation(env.install_path)
        except OSError as exc:
            problem = f"Error during verification: {exc}"
        if problem is None:
            logger.info("environment_verified", env_id=env.id, name=env.name)
            summary.verified.append(env.id)
            return
        reason = f"{problem}; verification failed on server startup"
        self._service.mark_not_installed(env.id, reason)
        self._service.schedule_install(env.id)
        summary.repaired.append(env.id)
