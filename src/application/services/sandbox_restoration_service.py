"""Sandbox Restoration Service - rebuilds an expired project sandbox.

Sources are tried in a fixed order:
1. The backup store snapshot set (``backup``)
2. The project's ``code_files`` column (``database``)

When both are empty nothing is created and RestorationExhaustedError is
raised. Otherwise a new sandbox is created, every file is written, and only
then is the project rebound to the new sandbox in a single repository write.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.domain.model.sandbox.exceptions import (
    RestorationExhaustedError,
    RestorationFailedError,
    SandboxError,
)
from src.domain.model.sandbox.project_file import ProjectFile
from src.domain.model.sandbox.project_sandbox import ProjectSandboxBinding, SandboxState
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.backup_store_port import BackupStorePort
from src.domain.ports.services.sandbox_port import (
    SandboxCreateOptions,
    SandboxHandle,
    SandboxProviderPort,
)

logger = logging.getLogger(__name__)

SOURCE_BACKUP = "backup"
SOURCE_DATABASE = "database"
SOURCE_NONE = "none"


@dataclass
class RestorationStatus:
    """What a restoration would use right now."""

    project_id: str
    can_restore: bool
    source: str
    file_count: int
    last_backup_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "can_restore": self.can_restore,
            "source": self.source,
            "file_count": self.file_count,
            "last_backup_at": self.last_backup_at.isoformat() if self.last_backup_at else None,
        }


class SandboxRestorationService:
    """Restores expired sandboxes from the backup store or the database snapshot."""

    def __init__(
        self,
        provider: SandboxProviderPort,
        repository: ProjectSandboxRepository,
        backup_store: BackupStorePort,
        project_dir: str = "/home/user/project",
        template: str | None = None,
        create_timeout_seconds: int = 600,
    ) -> None:
        self._provider = provider
        self._repository = repository
        self._backup_store = backup_store
        self._project_dir = project_dir
        self._template = template
        self._create_timeout = create_timeout_seconds

    async def _load_backup(self, project_id: str) -> list[ProjectFile]:
        # An unreachable backup store falls through to the database snapshot.
        try:
            if not await self._backup_store.has_backup(project_id):
                return []
            return await self._backup_store.restore_files(project_id)
        except Exception as e:
            logger.warning(f"Backup store unavailable for project {project_id}: {e}")
            return []

    async def _select_source(
        self, project_id: str, binding: ProjectSandboxBinding | None
    ) -> tuple[str, list[ProjectFile]]:
        files = await self._load_backup(project_id)
        if files:
            return SOURCE_BACKUP, files
        if binding is not None:
            files = binding.stored_files()
            if files:
                return SOURCE_DATABASE, files
        return SOURCE_NONE, []

    async def restore_from_expired(
        self,
        project_id: str,
        expired_sandbox_id: str | None,
        binding: ProjectSandboxBinding | None = None,
    ) -> SandboxHandle:
        """Create a new sandbox for ``project_id`` and repopulate it.

        Args:
            project_id: Project whose sandbox expired
            expired_sandbox_id: The sandbox that was confirmed gone
            binding: Already-loaded project record, read from the repository if omitted

        Returns:
            Handle of the new sandbox, bound to the project

        Raises:
            RestorationExhaustedError: Neither source has any file
            RestorationFailedError: Creating the sandbox or writing files failed
        """
        if binding is None:
            binding = await self._repository.find_by_project(project_id)

        source, files = await self._select_source(project_id, binding)
        if not files:
            logger.error(
                f"No restoration source for project {project_id} "
                f"(expired sandbox {expired_sandbox_id})"
            )
            raise RestorationExhaustedError(
                project_id, expired_sandbox_id, [SOURCE_BACKUP, SOURCE_DATABASE]
            )

        logger.info(
            f"Restoring project {project_id} from {source} "
            f"({len(files)} files, expired sandbox {expired_sandbox_id})"
        )

        options = SandboxCreateOptions(
            template=self._template,
            metadata={
                "project_id": project_id,
                "restored_from": expired_sandbox_id or "",
                "restored_at": datetime.now(UTC).isoformat(),
                "source": source,
            },
            timeout_seconds=self._create_timeout,
        )
        try:
            handle = await self._provider.create(options)
        except SandboxError as e:
            raise RestorationFailedError(
                project_id, expired_sandbox_id, source, f"create failed: {e.message}"
            ) from e

        try:
            await asyncio.gather(
                *(handle.write_file(f.absolute_path(self._project_dir), f.content) for f in files)
            )
        except SandboxError as e:
            await self._discard(handle)
            raise RestorationFailedError(
                project_id, expired_sandbox_id, source, f"write failed: {e.message}"
            ) from e

        try:
            await self._rebind(project_id, binding, handle.sandbox_id)
        except Exception as e:
            await self._discard(handle)
            raise RestorationFailedError(
                project_id, expired_sandbox_id, source, f"rebind failed: {e}"
            ) from e

        handle.project_id = project_id
        logger.info(
            f"Restored project {project_id}: {expired_sandbox_id} -> {handle.sandbox_id} "
            f"({len(files)} files from {source})"
        )
        return handle

    async def _rebind(
        self, project_id: str, binding: ProjectSandboxBinding | None, new_sandbox_id: str
    ) -> None:
        if binding is not None:
            if binding.state() not in (SandboxState.UNINITIALIZED, SandboxState.EXPIRED):
                binding.mark_expired()
            binding.bind(new_sandbox_id)
        await self._repository.update_sandbox(project_id, new_sandbox_id, None)

    async def _discard(self, handle: SandboxHandle) -> None:
        try:
            await self._provider.kill(handle.sandbox_id)
        except Exception as e:
            logger.warning(f"Failed to discard partially restored sandbox {handle.sandbox_id}: {e}")

    async def get_restoration_status(self, project_id: str) -> RestorationStatus:
        """Report which source a restoration would use without creating anything."""
        binding = await self._repository.find_by_project(project_id)
        last_backup_at = binding.last_backup_at if binding else None

        try:
            metadata = await self._backup_store.get_backup_metadata(project_id)
        except Exception as e:
            logger.warning(f"Backup metadata unavailable for project {project_id}: {e}")
            metadata = None

        if metadata is not None and metadata.has_files:
            return RestorationStatus(
                project_id=project_id,
                can_restore=True,
                source=SOURCE_BACKUP,
                file_count=metadata.file_count,
                last_backup_at=metadata.last_modified or last_backup_at,
            )

        stored = binding.stored_files() if binding else []
        if stored:
            return RestorationStatus(
                project_id=project_id,
                can_restore=True,
                source=SOURCE_DATABASE,
                file_count=len(stored),
                last_backup_at=last_backup_at,
            )
        return RestorationStatus(
            project_id=project_id,
            can_restore=False,
            source=SOURCE_NONE,
            file_count=0,
            last_backup_at=last_backup_at,
        )

    async def validate_restoration_possible(self, project_id: str) -> bool:
        status = await self.get_restoration_status(project_id)
        return status.can_restore
