"""Tests for Sandbox exceptions.

Tests the exception hierarchy, retry classification, and serialization.
"""

import httpx

from src.domain.model.sandbox.exceptions import (
    LockContentionError,
    OperationTimeoutError,
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


class TestSandboxError:
    """Tests for base SandboxError."""

    def test_should_create_with_basic_params(self) -> None:
        """Should create exception with message."""
        error = SandboxError("Test error")
        assert error.message == "Test error"
        assert error.sandbox_id is None
        assert error.operation is None
        assert error.details == {}

    def test_to_dict(self) -> None:
        """Should convert to dictionary."""
        error = SandboxError(
            message="Test error",
            sandbox_id="sb-123",
            operation="create",
            details={"key": "value"},
        )
        data = error.to_dict()
        assert data == {
            "error_type": "SandboxError",
            "message": "Test error",
            "sandbox_id": "sb-123",
            "operation": "create",
            "details": {"key": "value"},
            "retryable": False,
        }


class TestProviderErrors:
    def test_not_found_is_permanent(self) -> None:
        error = SandboxNotFoundError("sb-123")
        assert error.sandbox_id == "sb-123"
        assert error.operation == "connect"
        assert error.retryable is False

    def test_transient_records_cause(self) -> None:
        error = SandboxTransientError(
            "reset", "sb-123", "connect", cause=httpx.ConnectError("reset")
        )
        assert error.retryable is True
        assert error.details == {"cause": "ConnectError"}

    def test_liveness_failure_is_transient(self) -> None:
        error = SandboxLivenessError("sb-123", "unexpected output")
        assert isinstance(error, SandboxTransientError)
        assert error.operation == "liveness_probe"

    def test_command_error_truncates_stderr(self) -> None:
        error = SandboxCommandError("npm install", 1, "x" * 5000, "sb-123")
        assert error.exit_code == 1
        assert len(error.details["stderr"]) == 2000


class TestLifecycleErrors:
    def test_lock_contention(self) -> None:
        error = LockContentionError("sandbox:lock:proj-1", 15.0)
        assert error.retryable is True
        assert error.details == {"key": "sandbox:lock:proj-1", "waited_seconds": 15.0}

    def test_restoration_exhausted_names_sources(self) -> None:
        error = RestorationExhaustedError("proj-1", "sb-old", ["backup", "database"])
        assert error.retryable is False
        assert error.sandbox_id == "sb-old"
        assert error.details["sources_checked"] == ["backup", "database"]
        assert "backup and database" in error.message

    def test_restoration_failed_is_retryable(self) -> None:
        error = RestorationFailedError("proj-1", "sb-old", "backup", "write refused")
        assert error.retryable is True
        assert error.source == "backup"

    def test_operation_timeout(self) -> None:
        error = OperationTimeoutError("ensure_sandbox_ready", 90.0, 91.234)
        assert error.retryable is False
        assert error.details == {"budget_seconds": 90.0, "elapsed_seconds": 91.23}

    def test_state_transition(self) -> None:
        error = SandboxStateTransitionError("proj-1", "none", "paused")
        assert "Invalid state transition" in error.message
        assert error.current_state == "none"
        assert error.target_state == "paused"


class TestIsRetryableError:
    """Tests for is_retryable_error utility function."""

    def test_transient_error_is_retryable(self) -> None:
        assert is_retryable_error(SandboxTransientError("timeout")) is True

    def test_not_found_is_not_retryable(self) -> None:
        assert is_retryable_error(SandboxNotFoundError("sb-1")) is False

    def test_non_sandbox_error_is_not_retryable(self) -> None:
        """Should return False for non-sandbox errors."""
        assert is_retryable_error(ValueError("Some other error")) is False
