from .settings import RunnerSettings
from .execution import ExecutionRequest, ExecutionResult, Language, SubprocessRunner, run_command
from .environments import EnvironmentManager, EnvironmentService, StartupVerifier
from .execution.orchestrator import ExecutionOrchestrator
from .handler import ExecutionHandler, HandlerResponse

__all__ = [
    "EnvironmentManager",
    "EnvironmentService",
    "ExecutionHandler",
    "ExecutionOrchestrator",
    "ExecutionRequest",
    "ExecutionResult",
    "HandlerResponse",
    "Language",
    "RunnerSettings",
    "StartupVerifier",
    "SubprocessRunner",
    "run_command",
]
