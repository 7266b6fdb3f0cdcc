# flake8: noqa
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository

__all__ = ["ProjectSandboxRepository"]
