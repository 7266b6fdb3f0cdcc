"""Backup Store Port - per-project file snapshots in object storage."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from src.domain.model.sandbox.project_file import ProjectFile


@dataclass
class BackupMetadata:
    """Summary of a project's backup snapshot set."""

    project_id: str
    file_count: int
    total_size_bytes: int = 0
    last_modified: datetime | None = None

    @property
    def has_files(self) -> bool:
        return self.file_count > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "file_count": self.file_count,
            "total_size_bytes": self.total_size_bytes,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


class BackupStorePort(ABC):
    """
    Abstract interface for the project backup store.

    Implementations may include S3, Cloudflare R2, MinIO, or an in-memory store.
    """

    @abstractmethod
    async def has_backup(self, project_id: str) -> bool:
        """Whether at least one file is backed up for the project."""

    @abstractmethod
    async def restore_files(self, project_id: str) -> list[ProjectFile]:
        """Read back every backed up file of the project."""

    @abstractmethod
    async def backup_file(self, project_id: str, file: ProjectFile) -> None:
        """Write a single file snapshot."""

    @abstractmethod
    async def backup_files(self, project_id: str, files: list[ProjectFile]) -> int:
        """Write several snapshots concurrently. Returns how many succeeded."""

    @abstractmethod
    async def get_backup_metadata(self, project_id: str) -> BackupMetadata:
        """Count and size of the project's snapshots."""
