"""Database initialization for startup."""

import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.configuration.config import Settings
from src.infrastructure.adapters.secondary.persistence.database import (
    create_engine,
    create_session_factory,
    initialize_database,
)

logger = logging.getLogger(__name__)


async def initialize_database_schema(
    settings: Settings,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the engine, ensure the schema exists and return a session factory."""
    logger.info("Initializing database schema...")
    engine = create_engine(settings)
    await initialize_database(engine)
    logger.info("Database schema initialized")
    return engine, create_session_factory(engine)
