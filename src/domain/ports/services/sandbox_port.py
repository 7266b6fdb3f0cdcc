"""Sandbox Provider Port - contract for the remote compute provider.

Adapters must translate provider exceptions into the typed errors of
``src.domain.model.sandbox.exceptions``:
- permanent loss of a sandbox raises SandboxNotFoundError
- network failures and provider timeouts raise SandboxTransientError
- a non-zero command exit raises SandboxCommandError
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

LIVENESS_COMMAND = "echo 'health-check'"
LIVENESS_MARKER = "health-check"


@dataclass
class CommandResult:
    """Result of a command run inside a sandbox."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def answered_liveness(self) -> bool:
        """The liveness command ran and echoed its marker."""
        return self.ok and LIVENESS_MARKER in self.stdout


@dataclass
class SandboxCreateOptions:
    """Options for creating a sandbox.

    Attributes:
        template: Provider template reference (None = provider default)
        metadata: Free-form key/value tags stored with the sandbox
        timeout_seconds: Idle lifetime before the provider auto-pauses
        envs: Environment variables set for the whole sandbox
    """

    template: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 600
    envs: dict[str, str] = field(default_factory=dict)


@dataclass
class RemoteSandboxInfo:
    """Provider-side facts about a sandbox."""

    sandbox_id: str
    state: str
    started_at: datetime | None = None
    end_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sandbox_id": self.sandbox_id,
            "state": self.state,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "metadata": self.metadata,
        }


class SandboxHandle(ABC):
    """A live connection to one sandbox.

    Handles are transient: only ``sandbox_id`` is ever persisted.
    """

    sandbox_id: str
    project_id: str | None = None

    @abstractmethod
    async def run_command(
        self,
        command: str,
        cwd: str | None = None,
        envs: dict[str, str] | None = None,
        timeout: float | None = None,
        background: bool = False,
    ) -> CommandResult:
        """Run a shell command.

        With ``background=True`` the call returns once the process is spawned
        and the result carries its pid with exit code 0.
        """

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Write a file at an absolute path, creating parent directories."""

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read a text file at an absolute path."""

    @abstractmethod
    def get_host(self, port: int) -> str:
        """Hostname routing external traffic to ``port`` inside the sandbox."""

    @abstractmethod
    async def set_timeout(self, timeout_seconds: int) -> None:
        """Extend the provider-side idle timeout."""

    def preview_url(self, port: int) -> str:
        return f"https://{self.get_host(port)}"


class SandboxProviderPort(ABC):
    """Abstract interface for the remote compute provider."""

    @abstractmethod
    async def create(self, options: SandboxCreateOptions) -> SandboxHandle:
        """Create a new sandbox."""

    @abstractmethod
    async def connect(self, sandbox_id: str, timeout_seconds: int | None = None) -> SandboxHandle:
        """Connect to an existing sandbox, resuming it if paused.

        Raises:
            SandboxNotFoundError: The sandbox no longer exists
            SandboxTransientError: The provider could not be reached
        """

    @abstractmethod
    async def pause(self, sandbox_id: str) -> None:
        """Pause a sandbox. Pausing an already paused sandbox succeeds."""

    @abstractmethod
    async def kill(self, sandbox_id: str) -> bool:
        """Kill a sandbox. Returns False if it did not exist."""

    @abstractmethod
    async def get_info(self, sandbox_id: str) -> RemoteSandboxInfo:
        """Fetch provider-side info without resuming the sandbox.

        Raises:
            SandboxNotFoundError: The sandbox no longer exists
        """
