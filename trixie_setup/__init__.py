"""
trixie-setup: idempotent post-install provisioning for Debian 13 (Trixie)
GNOME workstations.
"""

from .config import VERSION, AppConfig, TargetUser, resolve_target_user
from .engine import ProvisioningEngine, validate_plan
from .errors import (
    ApplyFailure,
    ConfigurationError,
    ExecutionError,
    PreconditionCheckError,
    SetupError,
    TimeoutFailure,
)
from .fallback import with_fallback
from .tasks import FailurePolicy, RunReport, Task, TaskContext, TaskOutcome, TaskStatus

__version__ = VERSION

__all__ = [
    "AppConfig",
    "ApplyFailure",
    "ConfigurationError",
    "ExecutionError",
    "FailurePolicy",
    "PreconditionCheckError",
    "ProvisioningEngine",
    "RunReport",
    "SetupError",
    "TargetUser",
    "Task",
    "TaskContext",
    "TaskOutcome",
    "TaskStatus",
    "TimeoutFailure",
    "resolve_target_user",
    "validate_plan",
    "with_fallback",
]
