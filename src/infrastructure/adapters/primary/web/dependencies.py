from fastapi import HTTPException, Request, status

from src.application.services.sandbox_health_service import SandboxHealthService
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.application.services.sandbox_orchestrator import SandboxOrchestrator
from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.configuration.containers import SandboxContainer


def get_container(request: Request) -> SandboxContainer:
    """Get the DI container from app state."""
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sandbox services not initialized",
        )
    return container


def get_orchestrator(request: Request) -> SandboxOrchestrator:
    return get_container(request).sandbox_orchestrator()


def get_sandbox_manager(request: Request) -> SandboxManagerService:
    return get_container(request).sandbox_manager()


def get_health_service(request: Request) -> SandboxHealthService:
    return get_container(request).health_service()


def get_restoration_service(request: Request) -> SandboxRestorationService:
    return get_container(request).restoration_service()
