# flake8: noqa
# Sandbox lifecycle domain models
from src.domain.model.sandbox import (
    EnvironmentVariable,
    ProjectFile,
    ProjectSandboxBinding,
    SandboxState,
)

__all__ = [
    "EnvironmentVariable",
    "ProjectFile",
    "ProjectSandboxBinding",
    "SandboxState",
]
