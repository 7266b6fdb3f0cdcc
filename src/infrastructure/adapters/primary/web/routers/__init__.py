"""FastAPI routers for the sandbox lifecycle API."""

from src.infrastructure.adapters.primary.web.routers import project_sandbox

__all__ = ["project_sandbox"]
