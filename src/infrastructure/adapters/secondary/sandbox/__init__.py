"""Sandbox provider adapters.

This module provides:
- E2BSandboxAdapter: SandboxProviderPort backed by the E2B async SDK
- E2BSandboxHandle: live connection to one E2B sandbox
"""

from src.infrastructure.adapters.secondary.sandbox.e2b_sandbox_adapter import (
    E2BSandboxAdapter,
    E2BSandboxHandle,
)

__all__ = ["E2BSandboxAdapter", "E2BSandboxHandle"]
