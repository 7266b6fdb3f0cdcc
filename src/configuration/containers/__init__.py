"""DI sub-containers."""

from src.configuration.containers.sandbox_container import SandboxContainer

__all__ = ["SandboxContainer"]
