"""Repository interface for ProjectSandboxBinding.

This module defines the repository port for the persisted project record
fields the sandbox lifecycle core reads and writes.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from src.domain.model.sandbox.project_sandbox import ProjectSandboxBinding


class ProjectSandboxRepository(ABC):
    """Repository interface for project-sandbox bindings.

    Each call is atomic on its own. Callers must not assume atomicity across
    calls; lifecycle mutations are serialized by the project lock instead.
    """

    @abstractmethod
    async def find_by_project(self, project_id: str) -> ProjectSandboxBinding | None:
        """Find the binding for a project.

        Args:
            project_id: The project ID

        Returns:
            ProjectSandboxBinding if the project exists, None otherwise
        """
        pass

    @abstractmethod
    async def save(self, binding: ProjectSandboxBinding) -> None:
        """Insert or update a binding in a single write.

        Args:
            binding: The binding to persist
        """
        pass

    @abstractmethod
    async def update_sandbox(
        self,
        project_id: str,
        sandbox_id: str | None,
        sandbox_paused_at: datetime | None,
    ) -> None:
        """Atomically set sandbox_id and sandbox_paused_at together."""
        pass

    @abstractmethod
    async def update_paused_at(self, project_id: str, paused_at: datetime | None) -> None:
        """Set or clear the pause timestamp."""
        pass

    @abstractmethod
    async def update_last_backup_at(self, project_id: str, backed_up_at: datetime) -> None:
        """Record a successful backup store write."""
        pass
