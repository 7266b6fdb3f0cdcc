"""Project-Sandbox binding domain model.

The binding is the persisted record of which remote sandbox belongs to a
project. Its lifecycle is expressed as an explicit ``SandboxState`` that is
derived from the stored fields plus, when available, the outcome of a live
provider probe.

State Diagram:
    ┌───────────────┐  create   ┌─────────┐  pause   ┌────────┐
    │ UNINITIALIZED │──────────▶│ RUNNING │─────────▶│ PAUSED │
    └───────────────┘           └─────────┘◀─────────└────────┘
            ▲                        │       resume       │
            │ kill                   │ not found          │ not found
            │                        ▼                    │
            │                   ┌─────────┐               │
            └───────────────────│ EXPIRED │◀──────────────┘
                                └─────────┘
    EXPIRED never resumes; restoration rebinds to a brand-new RUNNING sandbox.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from src.domain.model.sandbox.exceptions import SandboxStateTransitionError
from src.domain.model.sandbox.project_file import ProjectFile, files_from_mapping


class SandboxState(Enum):
    """Explicit lifecycle state of a project's sandbox."""

    UNINITIALIZED = "uninitialized"  # No sandbox bound
    RUNNING = "running"
    PAUSED = "paused"
    EXPIRED = "expired"  # Provider confirmed the sandbox is gone


_ALLOWED_TRANSITIONS: Dict[SandboxState, set[SandboxState]] = {
    SandboxState.UNINITIALIZED: {SandboxState.RUNNING},
    SandboxState.RUNNING: {SandboxState.PAUSED, SandboxState.EXPIRED, SandboxState.UNINITIALIZED},
    SandboxState.PAUSED: {
        SandboxState.RUNNING,
        SandboxState.PAUSED,
        SandboxState.EXPIRED,
        SandboxState.UNINITIALIZED,
    },
    # Restoration rebinds an expired project to a new running sandbox.
    SandboxState.EXPIRED: {SandboxState.RUNNING, SandboxState.EXPIRED, SandboxState.UNINITIALIZED},
}


def can_transition(current: SandboxState, target: SandboxState) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class EnvironmentVariable:
    """Per-project environment variable. Secret values are stored encrypted."""

    key: str
    value: str
    is_secret: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value, "is_secret": self.is_secret}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentVariable":
        return cls(
            key=data["key"],
            value=data.get("value", ""),
            is_secret=bool(data.get("is_secret", False)),
        )


@dataclass(kw_only=True)
class ProjectSandboxBinding:
    """Persisted association between a project and at most one remote sandbox.

    Attributes:
        project_id: Owning project
        sandbox_id: Provider-issued handle, None when no sandbox was ever bound
        sandbox_paused_at: When the sandbox was last paused, None if running
        last_backup_at: Last successful backup store write
        code_files: Coarse {path: content} snapshot used as secondary restore source
        environment_variables: Variables injected into the dev server
        expired: Set once a provider probe confirmed the sandbox is gone
    """

    project_id: str
    sandbox_id: Optional[str] = None
    sandbox_paused_at: Optional[datetime] = None
    last_backup_at: Optional[datetime] = None
    code_files: Dict[str, Optional[str]] = field(default_factory=dict)
    environment_variables: List[EnvironmentVariable] = field(default_factory=list)
    expired: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: Optional[datetime] = None

    def state(self) -> SandboxState:
        """Resolve the explicit state from the stored fields."""
        if self.sandbox_id is None:
            return SandboxState.UNINITIALIZED
        if self.expired:
            return SandboxState.EXPIRED
        if self.sandbox_paused_at is not None:
            return SandboxState.PAUSED
        return SandboxState.RUNNING

    def _transition(self, target: SandboxState) -> None:
        current = self.state()
        if not can_transition(current, target):
            raise SandboxStateTransitionError(self.project_id, current.value, target.value)
        self.updated_at = datetime.now(UTC)

    def bind(self, sandbox_id: str) -> None:
        """Attach a freshly created (or restored) sandbox."""
        self._transition(SandboxState.RUNNING)
        self.sandbox_id = sandbox_id
        self.sandbox_paused_at = None
        self.expired = False

    def mark_paused(self, at: Optional[datetime] = None) -> None:
        self._transition(SandboxState.PAUSED)
        self.sandbox_paused_at = at or datetime.now(UTC)

    def mark_resumed(self) -> None:
        self._transition(SandboxState.RUNNING)
        self.sandbox_paused_at = None

    def mark_expired(self) -> None:
        self._transition(SandboxState.EXPIRED)
        self.expired = True

    def unbind(self) -> None:
        """Forget the sandbox after an explicit kill."""
        self._transition(SandboxState.UNINITIALIZED)
        self.sandbox_id = None
        self.sandbox_paused_at = None
        self.expired = False

    def mark_backed_up(self, at: Optional[datetime] = None) -> None:
        self.last_backup_at = at or datetime.now(UTC)

    def stored_files(self) -> List[ProjectFile]:
        """Files of the database snapshot, skipping entries without content."""
        return files_from_mapping(self.code_files or {})
