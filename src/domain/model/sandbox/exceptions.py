"""Sandbox exception types.

Every failure the lifecycle core can observe maps to one of these types at
the adapter boundary, so services branch on type and never on message text.
"""

from typing import Any, Dict, List, Optional


class SandboxError(Exception):
    """Base exception for all sandbox-related errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        sandbox_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.sandbox_id = sandbox_id
        self.operation = operation
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "sandbox_id": self.sandbox_id,
            "operation": self.operation,
            "details": self.details,
            "retryable": self.retryable,
        }


class SandboxNotFoundError(SandboxError):
    """The provider confirmed the sandbox is permanently gone (expired or killed)."""

    retryable = False

    def __init__(self, sandbox_id: str, operation: Optional[str] = None):
        super().__init__(
            f"Sandbox {sandbox_id} not found (expired or deleted)",
            sandbox_id,
            operation or "connect",
        )


class SandboxTransientError(SandboxError):
    """Network, timeout or provider hiccup. Safe to retry."""

    retryable = True

    def __init__(
        self,
        message: str,
        sandbox_id: Optional[str] = None,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        details = {"cause": type(cause).__name__} if cause is not None else None
        super().__init__(message, sandbox_id, operation, details)


class SandboxLivenessError(SandboxTransientError):
    """Transport connected but the no-op liveness command failed."""

    def __init__(self, sandbox_id: str, reason: str):
        super().__init__(
            f"Liveness probe failed for sandbox {sandbox_id}: {reason}",
            sandbox_id,
            "liveness_probe",
        )


class SandboxCommandError(SandboxError):
    """A command inside the sandbox exited with a non-zero code."""

    def __init__(
        self,
        command: str,
        exit_code: int,
        stderr: str = "",
        sandbox_id: Optional[str] = None,
    ):
        super().__init__(
            f"Command exited with code {exit_code}: {command}",
            sandbox_id,
            "run_command",
            {"exit_code": exit_code, "stderr": stderr[-2000:]},
        )
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class LockContentionError(SandboxError):
    """Another caller holds the project lock; retry shortly."""

    retryable = True

    def __init__(self, key: str, waited_seconds: float):
        super().__init__(
            f"Operation in progress for {key}, retry shortly",
            operation="acquire_lock",
            details={"key": key, "waited_seconds": round(waited_seconds, 2)},
        )
        self.key = key
        self.waited_seconds = waited_seconds


class RestorationExhaustedError(SandboxError):
    """No backup source holds any files for the project. Real data-loss risk."""

    retryable = False

    def __init__(self, project_id: str, expired_sandbox_id: Optional[str], sources: List[str]):
        super().__init__(
            f"No backup available for project {project_id}: "
            f"{' and '.join(sources)} are empty",
            expired_sandbox_id,
            "restore",
            {"project_id": project_id, "sources_checked": sources},
        )
        self.project_id = project_id
        self.sources = sources


class RestorationFailedError(SandboxError):
    """A backup exists but creating the new sandbox or writing files failed."""

    retryable = True

    def __init__(
        self,
        project_id: str,
        expired_sandbox_id: Optional[str],
        source: str,
        reason: str,
    ):
        super().__init__(
            f"Restoration of project {project_id} from {source} failed: {reason}",
            expired_sandbox_id,
            "restore",
            {"project_id": project_id, "source": source},
        )
        self.project_id = project_id
        self.source = source


class ReadinessTimeoutError(SandboxError):
    """The dev server did not become reachable inside the readiness window."""

    retryable = True

    def __init__(self, url: str, waited_seconds: float, sandbox_id: Optional[str] = None):
        super().__init__(
            f"Dev server at {url} not ready after {waited_seconds:.1f}s",
            sandbox_id,
            "wait_until_ready",
            {"url": url, "waited_seconds": round(waited_seconds, 2)},
        )
        self.url = url
        self.waited_seconds = waited_seconds


class OperationTimeoutError(SandboxError):
    """The caller's overall wall-clock budget ran out."""

    retryable = False

    def __init__(self, operation: str, budget_seconds: float, elapsed_seconds: float):
        super().__init__(
            f"Operation '{operation}' exceeded budget of {budget_seconds:.0f}s "
            f"(elapsed {elapsed_seconds:.1f}s)",
            operation=operation,
            details={
                "budget_seconds": budget_seconds,
                "elapsed_seconds": round(elapsed_seconds, 2),
            },
        )
        self.budget_seconds = budget_seconds
        self.elapsed_seconds = elapsed_seconds


class BackupWriteError(SandboxError):
    """A backup store write failed. Logged, never propagated to the writer."""

    def __init__(self, project_id: str, path: Optional[str], reason: str):
        super().__init__(
            f"Backup write failed for project {project_id}"
            + (f" ({path})" if path else "")
            + f": {reason}",
            operation="backup",
            details={"project_id": project_id, "path": path},
        )
        self.project_id = project_id
        self.path = path


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable.

    Args:
        error: The exception to check

    Returns:
        True if the error should be retried, False otherwise
    """
    if isinstance(error, SandboxError):
        return error.retryable
    return False


class SandboxStateTransitionError(SandboxError):
    """Raised when a binding is moved along a transition that does not exist."""

    def __init__(self, project_id: str, current_state: str, target_state: str):
        super().__init__(
            f"Invalid state transition for project {project_id}: "
            f"{current_state} -> {target_state}",
            operation="transition",
            details={"project_id": project_id},
        )
        self.current_state = current_state
        self.target_state = target_state
