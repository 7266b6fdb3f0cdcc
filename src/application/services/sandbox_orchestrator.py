"""Sandbox Orchestrator - top-level "ensure sandbox ready" flow.

Composes the lock, the manager and the readiness prober under one overall
wall-clock budget and translates every failure into a structured result
used by the REST API.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from src.application.services.dev_server_readiness_service import DevServerReadinessService
from src.application.services.sandbox_health_service import (
    SandboxHealthCheckResult,
    SandboxHealthService,
)
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.domain.model.sandbox.dev_server import DevServerLogs
from src.domain.model.sandbox.exceptions import (
    LockContentionError,
    OperationTimeoutError,
    RestorationExhaustedError,
    RestorationFailedError,
    SandboxError,
    SandboxNotFoundError,
)
from src.domain.model.sandbox.operation_budget import OperationBudget
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.sandbox_port import SandboxProviderPort

logger = logging.getLogger(__name__)


# ============================================================================
# Result Data Classes
# ============================================================================


class EnsureStatus(Enum):
    READY = "ready"
    ERROR = "error"
    TIMEOUT = "timeout"


class SandboxStatus(Enum):
    INACTIVE = "inactive"
    RUNNING = "running"
    PAUSED = "paused"
    UNKNOWN = "unknown"


@dataclass
class EnsureSandboxResult:
    """Outcome of ensure_sandbox_ready.

    ``diagnostics["code"]`` names the failure on error and timeout;
    ``diagnostics["dev_server"]`` is "ready" or "starting" on success.
    """

    project_id: str
    status: EnsureStatus
    sandbox_id: str | None = None
    preview_url: str | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def ready(self) -> bool:
        return self.status == EnsureStatus.READY

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "sandbox_id": self.sandbox_id,
            "preview_url": self.preview_url,
            "diagnostics": self.diagnostics,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


@dataclass
class SandboxStatusResult:
    project_id: str
    status: SandboxStatus
    sandbox_id: str | None = None
    paused_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "sandbox_id": self.sandbox_id,
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
        }


# ============================================================================
# Orchestrator
# ============================================================================


class SandboxOrchestrator:
    """Entry point for callers that need a sandbox with a reachable dev server."""

    def __init__(
        self,
        manager: SandboxManagerService,
        readiness: DevServerReadinessService,
        health: SandboxHealthService,
        provider: SandboxProviderPort,
        repository: ProjectSandboxRepository,
        budget_seconds: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._readiness = readiness
        self._health = health
        self._provider = provider
        self._repository = repository
        self._budget_seconds = budget_seconds
        self._clock = clock

    async def ensure_sandbox_ready(self, project_id: str) -> EnsureSandboxResult:
        """Get or create the project's sandbox and make its dev server reachable.

        Holds the project lock for the whole flow and releases it on every
        exit path. Never raises.
        """
        budget = OperationBudget("ensure_sandbox_ready", self._budget_seconds, clock=self._clock)
        result = EnsureSandboxResult(project_id=project_id, status=EnsureStatus.ERROR)

        try:
            budget.check("lock")
            async with self._manager.project_lock(project_id, budget):
                budget.check("get_or_create")
                handle = await self._manager.get_or_create_sandbox(
                    project_id, budget=budget, lock_held=True
                )
                result.sandbox_id = handle.sandbox_id
                budget.check("dev_server")

                try:
                    readiness = await self._readiness.ensure_dev_server(handle, project_id, budget)
                except SandboxNotFoundError:
                    # Gone since it was validated; reconnecting routes it to restoration.
                    logger.warning(
                        f"Sandbox {handle.sandbox_id} for {project_id} disappeared, restoring"
                    )
                    self._manager.cache.evict(project_id)
                    handle = await self._manager.get_or_create_sandbox(
                        project_id, budget=budget, lock_held=True
                    )
                    result.sandbox_id = handle.sandbox_id
                    budget.check("dev_server")
                    readiness = await self._readiness.ensure_dev_server(handle, project_id, budget)
                result.preview_url = readiness.url
                budget.check("finalize")

            result.status = EnsureStatus.READY
            result.diagnostics = {
                "dev_server": "ready" if readiness.ready else "starting",
                "readiness": readiness.to_dict(),
            }
            if readiness.degraded:
                logger.warning(f"Sandbox for {project_id} ready, dev server still starting")
        except OperationTimeoutError as e:
            self._fail(result, budget, "timeout", e)
        except LockContentionError as e:
            self._fail(result, budget, "lock_contention", e)
        except RestorationExhaustedError as e:
            self._fail(result, budget, "restoration_exhausted", e)
        except RestorationFailedError as e:
            self._fail(result, budget, "restoration_failed", e)
        except SandboxError as e:
            self._fail(result, budget, "sandbox_error", e)
        except Exception as e:
            logger.exception(f"Unexpected error ensuring sandbox for {project_id}")
            self._fail(result, budget, "internal_error", e)

        result.elapsed_seconds = budget.elapsed
        return result

    def _fail(
        self,
        result: EnsureSandboxResult,
        budget: OperationBudget,
        code: str,
        error: Exception,
    ) -> None:
        # An exhausted budget wins over whatever error surfaced first.
        if isinstance(error, OperationTimeoutError) or budget.expired:
            result.status = EnsureStatus.TIMEOUT
            code = "timeout"
        else:
            result.status = EnsureStatus.ERROR

        message = error.message if isinstance(error, SandboxError) else str(error)
        result.diagnostics = {"code": code, "message": message}
        if isinstance(error, SandboxError):
            result.diagnostics["error"] = error.to_dict()
        logger.warning(f"ensure_sandbox_ready({result.project_id}) -> {code}: {message}")

    async def get_sandbox_status(self, project_id: str) -> SandboxStatusResult:
        """Report inactive, running, paused or unknown. Never raises."""
        try:
            binding = await self._repository.find_by_project(project_id)
        except Exception as e:
            logger.error(f"Status lookup failed for {project_id}: {e}")
            return SandboxStatusResult(project_id=project_id, status=SandboxStatus.UNKNOWN)

        if binding is None or not binding.sandbox_id:
            return SandboxStatusResult(project_id=project_id, status=SandboxStatus.INACTIVE)

        result = SandboxStatusResult(
            project_id=project_id,
            status=SandboxStatus.UNKNOWN,
            sandbox_id=binding.sandbox_id,
            paused_at=binding.sandbox_paused_at,
        )
        try:
            info = await self._provider.get_info(binding.sandbox_id)
        except SandboxNotFoundError:
            result.status = SandboxStatus.INACTIVE
            return result
        except SandboxError as e:
            logger.debug(f"Provider info unavailable for {binding.sandbox_id}: {e.message}")
            if binding.sandbox_paused_at is not None:
                result.status = SandboxStatus.PAUSED
            return result

        state = info.state.lower()
        if state == "running":
            result.status = SandboxStatus.RUNNING
        elif state == "paused":
            result.status = SandboxStatus.PAUSED
        return result

    async def check_health(self, project_id: str) -> SandboxHealthCheckResult:
        return await self._health.check_health(project_id)

    async def get_dev_server_logs(self, project_id: str, lines: int = 50) -> DevServerLogs | None:
        """Tail the dev server log. None when the project has no sandbox.

        Connecting resumes a paused sandbox and restores an expired one.
        """
        binding = await self._repository.find_by_project(project_id)
        if binding is None or not binding.sandbox_id:
            return None
        handle = await self._manager.get_or_create_sandbox(project_id)
        return await self._readiness.read_logs(handle, lines)
