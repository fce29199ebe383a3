from .command import run_command
from .languages import LanguageProfile, Strategy, infer_entry_point, profile_for, supported_languages
from .runner import CommandRunner, SubprocessRunner
from .types import CommandOutput, EnvironmentInfo, ExecutionRequest, ExecutionResult, Language

__all__ = [
    "CommandOutput",
    "CommandRunner",
    "EnvironmentInfo",
    "ExecutionRequest",
    "ExecutionResult",
    "Language",
    "LanguageProfile",
    "Strategy",
    "SubprocessRunner",
    "infer_entry_point",
    "profile_for",
    "run_command",
    "supported_languages",
]
