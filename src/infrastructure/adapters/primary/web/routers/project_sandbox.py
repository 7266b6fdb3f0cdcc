"""Project Sandbox API routes.

Provides REST API endpoints for the per-project sandbox lifecycle:
- Each project has at most one sandbox
- Lazy creation and restoration on ensure
- Health monitoring with optional auto-restore
- Keep-alive heartbeat, uptime and dev server logs
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.application.services.sandbox_health_service import SandboxHealthService
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.application.services.sandbox_orchestrator import EnsureStatus, SandboxOrchestrator
from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.domain.model.sandbox.exceptions import (
    LockContentionError,
    RestorationExhaustedError,
    SandboxError,
)
from src.infrastructure.adapters.primary.web.dependencies import (
    get_health_service,
    get_orchestrator,
    get_restoration_service,
    get_sandbox_manager,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/projects", tags=["project-sandbox"])

_ERROR_STATUS = {
    "lock_contention": status.HTTP_429_TOO_MANY_REQUESTS,
    "restoration_exhausted": status.HTTP_410_GONE,
}


# ============================================================================
# Request/Response Schemas
# ============================================================================


class EnsureSandboxResponse(BaseModel):
    """Response schema for a ready sandbox."""

    project_id: str = Field(..., description="Project ID")
    status: str = Field(..., description="ready, error or timeout")
    sandbox_id: str | None = Field(None, description="Sandbox identifier")
    preview_url: str | None = Field(None, description="External dev server URL")
    diagnostics: dict[str, Any] = Field(default_factory=dict, description="Step details")
    elapsed_seconds: float = Field(0.0, description="Wall-clock time spent")


class SandboxStatusResponse(BaseModel):
    project_id: str
    status: str = Field(..., description="inactive, running, paused or unknown")
    sandbox_id: str | None = None
    paused_at: str | None = None


class HealthCheckResponse(BaseModel):
    """Response from health check."""

    project_id: str
    healthy: bool
    needs_restoration: bool
    can_restore: bool
    status: str = Field(..., description="healthy, paused, expired, error or unknown")
    sandbox_id: str | None = None
    message: str = ""
    error: str | None = None
    restored: bool = False
    checked_at: str


class RestorationStatusResponse(BaseModel):
    project_id: str
    can_restore: bool
    source: str = Field(..., description="backup, database or none")
    file_count: int
    last_backup_at: str | None = None


class WriteFilesRequest(BaseModel):
    """Files to write, keyed by path relative to the project root."""

    files: dict[str, str] = Field(..., min_length=1)


class WriteFilesResponse(BaseModel):
    written: list[str]


class SandboxActionResponse(BaseModel):
    """Response from sandbox actions (pause, kill, heartbeat)."""

    success: bool = Field(..., description="Whether action succeeded")
    message: str = Field(..., description="Status message")


class UptimeResponse(BaseModel):
    project_id: str
    uptime_seconds: float | None = Field(None, description="Seconds since start, null when unknown")


class DevServerLogsResponse(BaseModel):
    """Tail of the dev server log."""

    project_id: str
    logs: str
    has_error: bool
    error_type: str | None = Field(None, description="compilation, runtime or null")
    lines_returned: int


class BatchHealthRequest(BaseModel):
    project_ids: list[str] = Field(..., min_length=1, max_length=100)


class BatchHealthResponse(BaseModel):
    results: dict[str, HealthCheckResponse]


# ============================================================================
# Routes
# ============================================================================


@router.post("/{project_id}/sandbox/ensure", response_model=EnsureSandboxResponse)
async def ensure_sandbox(
    project_id: str,
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
) -> EnsureSandboxResponse:
    """Get, create or restore the project's sandbox and start its dev server."""
    result = await orchestrator.ensure_sandbox_ready(project_id)
    if result.status == EnsureStatus.READY:
        return EnsureSandboxResponse(**result.to_dict())

    if result.status == EnsureStatus.TIMEOUT:
        status_code = status.HTTP_504_GATEWAY_TIMEOUT
    else:
        code = result.diagnostics.get("code", "")
        status_code = _ERROR_STATUS.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=result.to_dict())


@router.get("/{project_id}/sandbox/status", response_model=SandboxStatusResponse)
async def get_sandbox_status(
    project_id: str,
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
) -> SandboxStatusResponse:
    result = await orchestrator.get_sandbox_status(project_id)
    return SandboxStatusResponse(**result.to_dict())


@router.get("/{project_id}/sandbox/health", response_model=HealthCheckResponse)
async def check_sandbox_health(
    project_id: str,
    auto_restore: bool = Query(True, description="Restore an expired sandbox"),
    health: SandboxHealthService = Depends(get_health_service),
) -> HealthCheckResponse:
    result = await health.check_health(project_id, auto_restore=auto_restore)
    return HealthCheckResponse(**result.to_dict())


@router.get("/{project_id}/sandbox/restoration", response_model=RestorationStatusResponse)
async def get_restoration_status(
    project_id: str,
    restoration: SandboxRestorationService = Depends(get_restoration_service),
) -> RestorationStatusResponse:
    result = await restoration.get_restoration_status(project_id)
    return RestorationStatusResponse(**result.to_dict())


@router.post("/{project_id}/sandbox/files", response_model=WriteFilesResponse)
async def write_sandbox_files(
    project_id: str,
    request: WriteFilesRequest,
    manager: SandboxManagerService = Depends(get_sandbox_manager),
) -> WriteFilesResponse:
    """Write files into the live sandbox. Backups happen in the background."""
    try:
        written = await manager.write_files(project_id, request.files)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except LockContentionError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.to_dict()) from e
    except RestorationExhaustedError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=e.to_dict()) from e
    except SandboxError as e:
        logger.error(f"Writing files for project {project_id} failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict()) from e
    return WriteFilesResponse(written=written)


@router.post("/{project_id}/sandbox/pause", response_model=SandboxActionResponse)
async def pause_sandbox(
    project_id: str,
    manager: SandboxManagerService = Depends(get_sandbox_manager),
) -> SandboxActionResponse:
    try:
        await manager.pause_sandbox(project_id)
    except LockContentionError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.to_dict()) from e
    except SandboxError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict()) from e
    return SandboxActionResponse(success=True, message="Sandbox paused")


@router.delete("/{project_id}/sandbox", response_model=SandboxActionResponse)
async def kill_sandbox(
    project_id: str,
    manager: SandboxManagerService = Depends(get_sandbox_manager),
) -> SandboxActionResponse:
    try:
        killed = await manager.kill_sandbox(project_id)
    except LockContentionError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.to_dict()) from e
    except SandboxError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict()) from e
    message = "Sandbox killed" if killed else "No running sandbox"
    return SandboxActionResponse(success=True, message=message)


@router.post("/{project_id}/sandbox/heartbeat", response_model=SandboxActionResponse)
async def sandbox_heartbeat(
    project_id: str,
    manager: SandboxManagerService = Depends(get_sandbox_manager),
) -> SandboxActionResponse:
    """Extend the sandbox idle timeout while the user is active.

    A failed extension is logged and still acknowledged; the next heartbeat retries.
    """
    try:
        extended = await manager.keep_sandbox_alive(project_id)
    except SandboxError as e:
        logger.warning(f"Heartbeat for project {project_id} could not extend timeout: {e.message}")
        return SandboxActionResponse(success=True, message="Heartbeat received, timeout not extended")
    if not extended:
        return SandboxActionResponse(success=False, message="No sandbox for project")
    return SandboxActionResponse(success=True, message="Sandbox timeout extended")


@router.get("/{project_id}/sandbox/uptime", response_model=UptimeResponse)
async def get_sandbox_uptime(
    project_id: str,
    health: SandboxHealthService = Depends(get_health_service),
) -> UptimeResponse:
    uptime = await health.get_sandbox_uptime(project_id)
    return UptimeResponse(project_id=project_id, uptime_seconds=uptime)


@router.get("/{project_id}/sandbox/logs", response_model=DevServerLogsResponse)
async def get_dev_server_logs(
    project_id: str,
    lines: int = Query(50, ge=1, le=1000, description="Number of trailing log lines"),
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
) -> DevServerLogsResponse:
    try:
        logs = await orchestrator.get_dev_server_logs(project_id, lines)
    except LockContentionError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=e.to_dict()) from e
    except RestorationExhaustedError as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=e.to_dict()) from e
    except SandboxError as e:
        logger.error(f"Reading dev server logs for project {project_id} failed: {e.message}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.to_dict()) from e
    if logs is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sandbox for project")
    return DevServerLogsResponse(project_id=project_id, **logs.to_dict())


@router.post("/sandboxes/health", response_model=BatchHealthResponse)
async def check_sandboxes_health(
    request: BatchHealthRequest,
    health: SandboxHealthService = Depends(get_health_service),
) -> BatchHealthResponse:
    """Check several projects at once. Never restores."""
    results = await health.check_multiple(request.project_ids)
    return BatchHealthResponse(
        results={pid: HealthCheckResponse(**r.to_dict()) for pid, r in results.items()}
    )
