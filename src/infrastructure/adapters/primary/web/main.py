import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.configuration.config import get_settings
from src.configuration.containers import SandboxContainer
from src.infrastructure.adapters.primary.web.routers import project_sandbox
from src.infrastructure.adapters.primary.web.startup import (
    initialize_container,
    initialize_database_schema,
    initialize_redis_client,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

IDLE_PAUSE_INTERVAL_SECONDS = 60


async def _idle_pause_loop(container: SandboxContainer) -> None:
    """Periodically pause sandboxes this instance has not touched recently."""
    manager = container.sandbox_manager()
    while True:
        await asyncio.sleep(IDLE_PAUSE_INTERVAL_SECONDS)
        try:
            await manager.pause_idle_sandboxes()
        except Exception as e:
            logger.warning(f"Idle sandbox sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if getattr(app.state, "container", None) is not None:
        # Container injected by the caller (tests, embedding).
        yield
        return

    logger.info("Starting sandbox lifecycle service...")
    redis_client = await initialize_redis_client(settings)
    engine, session_factory = await initialize_database_schema(settings)
    container = initialize_container(settings, session_factory, redis_client)
    app.state.container = container

    idle_task = asyncio.create_task(_idle_pause_loop(container))
    logger.info("Idle sandbox sweep started")

    yield

    # Shutdown
    logger.info("Shutting down sandbox lifecycle service...")
    idle_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await idle_task
    await container.shutdown()
    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


def create_app(container: SandboxContainer | None = None) -> FastAPI:
    app = FastAPI(
        title="Sandbox Lifecycle API",
        description="Per-project E2B sandbox lifecycle: create, resume, restore and readiness.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": "0.1.0"}

    # Project Sandbox (one sandbox per project)
    app.include_router(project_sandbox.router)

    return app


app = create_app()
