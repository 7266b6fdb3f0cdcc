"""DI Container initialization for startup."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.configuration.config import Settings
from src.configuration.containers import SandboxContainer

logger = logging.getLogger(__name__)


def initialize_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: Any,
) -> SandboxContainer:
    """
    Initialize the DI container with all sandbox services.

    Args:
        settings: Application settings.
        session_factory: Factory for project record sessions.
        redis_client: The Redis client instance.

    Returns:
        Configured SandboxContainer instance.
    """
    logger.info("Initializing DI container...")
    container = SandboxContainer(
        settings=settings,
        session_factory=session_factory,
        redis_client=redis_client,
    )
    logger.info("DI container initialized")
    return container
