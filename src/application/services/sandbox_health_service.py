"""Sandbox Health Service - liveness checks with optional auto-restore.

Status levels:
- healthy: connected and the liveness command answered
- paused: healthy, but the project record says it was paused
- expired: the provider confirmed the sandbox is gone
- error: any other failure
- unknown: the project has no sandbox bound

Checks never raise; every failure becomes a result. Probes are lock-free,
only an auto-restore takes the project lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.domain.model.sandbox.exceptions import (
    LockContentionError,
    SandboxError,
    SandboxNotFoundError,
)
from src.domain.model.sandbox.project_sandbox import ProjectSandboxBinding
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.distributed_lock_port import DistributedLockPort
from src.domain.ports.services.sandbox_port import LIVENESS_COMMAND, SandboxProviderPort

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status."""

    HEALTHY = "healthy"
    PAUSED = "paused"
    EXPIRED = "expired"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class SandboxHealthCheckResult:
    """Health check result."""

    project_id: str
    healthy: bool
    needs_restoration: bool
    can_restore: bool
    status: HealthStatus
    sandbox_id: str | None = None
    message: str = ""
    error: str | None = None
    restored: bool = False
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "healthy": self.healthy,
            "needs_restoration": self.needs_restoration,
            "can_restore": self.can_restore,
            "status": self.status.value,
            "sandbox_id": self.sandbox_id,
            "message": self.message,
            "error": self.error,
            "restored": self.restored,
            "checked_at": self.checked_at.isoformat(),
        }


class SandboxHealthService:
    """Sandbox health check service."""

    def __init__(
        self,
        provider: SandboxProviderPort,
        repository: ProjectSandboxRepository,
        restoration: SandboxRestorationService,
        lock: DistributedLockPort | None = None,
        liveness_timeout: float = 10.0,
        lock_ttl_seconds: int = 120,
        lock_wait_seconds: float = 15.0,
    ) -> None:
        """Initialize the health service.

        Args:
            provider: Remote compute provider
            repository: Project record store
            restoration: Used when an expired sandbox should be restored
            lock: Project lock taken only around auto-restore
            liveness_timeout: Timeout of the liveness command in seconds
        """
        self._provider = provider
        self._repository = repository
        self._restoration = restoration
        self._lock = lock
        self._liveness_timeout = liveness_timeout
        self._lock_ttl = lock_ttl_seconds
        self._lock_wait = lock_wait_seconds

    async def check_health(
        self, project_id: str, auto_restore: bool = True
    ) -> SandboxHealthCheckResult:
        """Check the project's sandbox.

        Args:
            project_id: Project ID
            auto_restore: Restore an expired sandbox when a source exists

        Returns:
            SandboxHealthCheckResult; never raises
        """
        try:
            binding = await self._repository.find_by_project(project_id)
        except Exception as e:
            logger.error(f"Health check could not load project {project_id}: {e}")
            return self._error(project_id, None, e)

        if binding is None or not binding.sandbox_id:
            return SandboxHealthCheckResult(
                project_id=project_id,
                healthy=False,
                needs_restoration=False,
                can_restore=False,
                status=HealthStatus.UNKNOWN,
                message="No sandbox bound to project",
            )

        sandbox_id = binding.sandbox_id
        try:
            handle = await self._provider.connect(sandbox_id)
            result = await handle.run_command(LIVENESS_COMMAND, timeout=self._liveness_timeout)
            if not result.answered_liveness:
                return self._error(
                    project_id,
                    sandbox_id,
                    f"Liveness command exited with code {result.exit_code} "
                    f"and output {result.stdout.strip()[:80]!r}",
                )
        except SandboxNotFoundError:
            return await self._handle_expired(binding, auto_restore)
        except Exception as e:
            logger.warning(f"Health check failed for sandbox {sandbox_id}: {e}")
            return self._error(project_id, sandbox_id, e)

        if binding.sandbox_paused_at is not None:
            return SandboxHealthCheckResult(
                project_id=project_id,
                healthy=True,
                needs_restoration=False,
                can_restore=True,
                status=HealthStatus.PAUSED,
                sandbox_id=sandbox_id,
                message="Sandbox is paused but healthy",
            )
        return SandboxHealthCheckResult(
            project_id=project_id,
            healthy=True,
            needs_restoration=False,
            can_restore=True,
            status=HealthStatus.HEALTHY,
            sandbox_id=sandbox_id,
            message="Sandbox is healthy",
        )

    async def _handle_expired(
        self, binding: ProjectSandboxBinding, auto_restore: bool
    ) -> SandboxHealthCheckResult:
        project_id = binding.project_id
        expired_id = binding.sandbox_id
        try:
            can_restore = await self._restoration.validate_restoration_possible(project_id)
        except Exception as e:
            logger.warning(f"Could not determine restoration sources for {project_id}: {e}")
            can_restore = False

        expired = SandboxHealthCheckResult(
            project_id=project_id,
            healthy=False,
            needs_restoration=True,
            can_restore=can_restore,
            status=HealthStatus.EXPIRED,
            sandbox_id=expired_id,
            message="Sandbox expired",
        )
        if not auto_restore or not can_restore:
            return expired

        try:
            new_sandbox_id = await self._restore(binding)
        except LockContentionError:
            expired.message = "Sandbox expired, restoration already in progress"
            return expired
        except Exception as e:
            logger.error(f"Auto-restore failed for project {project_id}: {e}")
            expired.message = "Sandbox expired and restoration failed"
            expired.error = e.message if isinstance(e, SandboxError) else str(e)
            return expired

        return SandboxHealthCheckResult(
            project_id=project_id,
            healthy=True,
            needs_restoration=False,
            can_restore=True,
            status=HealthStatus.HEALTHY,
            sandbox_id=new_sandbox_id,
            message=f"Sandbox restored (replaced {expired_id})",
            restored=True,
        )

    async def _restore(self, binding: ProjectSandboxBinding) -> str:
        project_id = binding.project_id
        expired_id = binding.sandbox_id
        if self._lock is None:
            handle = await self._restoration.restore_from_expired(project_id, expired_id, binding)
            return handle.sandbox_id

        release = await self._lock.acquire_release(
            project_id, ttl=self._lock_ttl, timeout=self._lock_wait
        )
        try:
            fresh = await self._repository.find_by_project(project_id)
            if fresh is not None and fresh.sandbox_id and fresh.sandbox_id != expired_id:
                return fresh.sandbox_id
            handle = await self._restoration.restore_from_expired(
                project_id, expired_id, fresh or binding
            )
            return handle.sandbox_id
        finally:
            await release()

    def _error(
        self, project_id: str, sandbox_id: str | None, error: Exception | str
    ) -> SandboxHealthCheckResult:
        if isinstance(error, SandboxError):
            detail = error.message
        else:
            detail = str(error)
        return SandboxHealthCheckResult(
            project_id=project_id,
            healthy=False,
            needs_restoration=False,
            can_restore=False,
            status=HealthStatus.ERROR,
            sandbox_id=sandbox_id,
            message="Health check failed",
            error=detail,
        )

    async def check_multiple(
        self, project_ids: list[str], auto_restore: bool = False
    ) -> dict[str, SandboxHealthCheckResult]:
        """Check several projects concurrently."""
        results = await asyncio.gather(
            *(self.check_health(pid, auto_restore=auto_restore) for pid in project_ids)
        )
        return dict(zip(project_ids, results))

    async def get_sandbox_uptime(self, project_id: str) -> float | None:
        """Seconds since the sandbox started, None when unknown."""
        binding = await self._repository.find_by_project(project_id)
        if binding is None or not binding.sandbox_id:
            return None
        try:
            info = await self._provider.get_info(binding.sandbox_id)
        except SandboxError as e:
            logger.debug(f"Uptime unavailable for {binding.sandbox_id}: {e.message}")
            return None
        if info.started_at is None:
            return None
        started_at = info.started_at
        if started_at.tzinfo is None:
            started_at = started_at.replace(tzinfo=UTC)
        return max(0.0, (datetime.now(UTC) - started_at).total_seconds())
