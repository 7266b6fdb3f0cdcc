"""Sandbox domain models.

This module provides domain models for sandbox lifecycle management:
- ProjectSandboxBinding: persisted project to sandbox association
- SandboxState: explicit lifecycle state derived from the binding
- ProjectFile: file value object used by write, backup and restore
- OperationBudget / RetryPolicy: time control for lifecycle operations
"""

from src.domain.model.sandbox.dev_server import (
    DevServerAction,
    DevServerLogs,
    DevServerProcessState,
    ReadinessResult,
    compute_env_hash,
)
from src.domain.model.sandbox.exceptions import (
    BackupWriteError,
    LockContentionError,
    OperationTimeoutError,
    ReadinessTimeoutError,
    RestorationExhaustedError,
    RestorationFailedError,
    SandboxCommandError,
    SandboxError,
    SandboxLivenessError,
    SandboxNotFoundError,
    SandboxStateTransitionError,
    SandboxTransientError,
    is_retryable_error,
)
from src.domain.model.sandbox.operation_budget import OperationBudget
from src.domain.model.sandbox.project_file import ProjectFile
from src.domain.model.sandbox.project_sandbox import (
    EnvironmentVariable,
    ProjectSandboxBinding,
    SandboxState,
    can_transition,
)
from src.domain.model.sandbox.retry_policy import RetryPolicy

__all__ = [
    "BackupWriteError",
    "DevServerAction",
    "DevServerLogs",
    "DevServerProcessState",
    "EnvironmentVariable",
    "LockContentionError",
    "OperationBudget",
    "OperationTimeoutError",
    "ProjectFile",
    "ProjectSandboxBinding",
    "ReadinessResult",
    "ReadinessTimeoutError",
    "RestorationExhaustedError",
    "RestorationFailedError",
    "RetryPolicy",
    "SandboxCommandError",
    "SandboxError",
    "SandboxLivenessError",
    "SandboxNotFoundError",
    "SandboxState",
    "SandboxStateTransitionError",
    "SandboxTransientError",
    "can_transition",
    "compute_env_hash",
    "is_retryable_error",
]
