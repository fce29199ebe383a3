from .manager import EnvironmentManager, InstallReport, PackageResult
from .models import Environment, InstallState
from .service import EnvironmentService
from .store import EnvironmentStore, InMemoryEnvironmentStore, JsonEnvironmentStore
from .verifier import DEFAULT_SEED_ENVIRONMENTS, StartupVerifier, VerificationSummary

__all__ = [
    "DEFAULT_SEED_ENVIRONMENTS",
    "Environment",
    "EnvironmentManager",
    "EnvironmentService",
    "EnvironmentStore",
    "InMemoryEnvironmentStore",
    "InstallReport",
    "InstallState",
    "JsonEnvironmentStore",
    "PackageResult",
    "StartupVerifier",
    "VerificationSummary",
]
