"""
Domain Ports - Hexagonal architecture interfaces.

Ports define contracts that infrastructure adapters implement.
Domain layer depends on these interfaces, not concrete implementations.
"""

from src.domain.ports.repositories import ProjectSandboxRepository
from src.domain.ports.services import (
    BackupStorePort,
    DevServerStatePort,
    DistributedLockPort,
    SandboxHandle,
    SandboxProviderPort,
)

__all__ = [
    "BackupStorePort",
    "DevServerStatePort",
    "DistributedLockPort",
    "ProjectSandboxRepository",
    "SandboxHandle",
    "SandboxProviderPort",
]
