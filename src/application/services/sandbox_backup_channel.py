"""Sandbox Backup Channel - non-blocking side channel for backup writes.

Writers enqueue a snapshot and return immediately. Each snapshot runs as a
tracked asyncio task; its outcome is observable only through logs and the
project's ``last_backup_at`` stamp, never through the writer's return value.
"""

import asyncio
import logging
from datetime import UTC, datetime

from src.domain.model.sandbox.exceptions import BackupWriteError
from src.domain.model.sandbox.project_file import ProjectFile
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.backup_store_port import BackupStorePort

logger = logging.getLogger(__name__)


class SandboxBackupChannel:
    """Fire-and-forget backup writer with an explicit drain point."""

    def __init__(
        self,
        backup_store: BackupStorePort,
        repository: ProjectSandboxRepository | None = None,
    ) -> None:
        self._store = backup_store
        self._repository = repository
        self._pending: set[asyncio.Task] = set()
        self._failures = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def failure_count(self) -> int:
        return self._failures

    def submit(self, project_id: str, files: list[ProjectFile]) -> asyncio.Task | None:
        """Schedule a backup of ``files`` and return without waiting for it."""
        if not files:
            return None
        task = asyncio.create_task(
            self._backup(project_id, list(files)),
            name=f"sandbox-backup:{project_id}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _backup(self, project_id: str, files: list[ProjectFile]) -> None:
        try:
            written = await self._store.backup_files(project_id, files)
        except Exception as e:
            self._record_failure(BackupWriteError(project_id, None, str(e)))
            return

        if written < len(files):
            self._record_failure(
                BackupWriteError(project_id, None, f"{len(files) - written}/{len(files)} files failed")
            )
        if written == 0:
            return

        logger.debug(f"Backed up {written} file(s) for project {project_id}")
        if self._repository is None:
            return
        try:
            await self._repository.update_last_backup_at(project_id, datetime.now(UTC))
        except Exception as e:
            logger.warning(f"Failed to stamp last_backup_at for project {project_id}: {e}")

    def _record_failure(self, error: BackupWriteError) -> None:
        self._failures += 1
        logger.warning(error.message)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every outstanding backup task.

        Args:
            timeout: Give up waiting after this many seconds; unfinished tasks
                keep running
        """
        if not self._pending:
            return
        pending = list(self._pending)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} backup task(s) still running after drain timeout")
