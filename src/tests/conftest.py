"""Pytest configuration and shared fixtures for testing."""

from dataclasses import dataclass

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.application.services.dependency_installer import DependencyInstaller
from src.application.services.dev_server_readiness_service import DevServerReadinessService
from src.application.services.sandbox_backup_channel import SandboxBackupChannel
from src.application.services.sandbox_health_service import SandboxHealthService
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.application.services.sandbox_orchestrator import SandboxOrchestrator
from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.domain.model.sandbox.retry_policy import RetryPolicy
from src.infrastructure.adapters.secondary.cache.redis_lock_adapter import (
    RedisDistributedLockAdapter,
)
from src.infrastructure.adapters.secondary.cache.sandbox_handle_cache import SandboxHandleCache
from src.infrastructure.adapters.secondary.persistence.models import Base
from src.infrastructure.security.encryption_service import EncryptionService
from src.tests.unit.fixtures.sandbox_fixtures import (
    FakeRedis,
    FakeSandboxProvider,
    InMemoryBackupStore,
    InMemoryDevServerState,
    InMemoryProjectSandboxRepository,
    SleepRecorder,
)

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

# --- Database Fixtures ---


@pytest.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def test_session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


# --- Port Fakes ---


@pytest.fixture
def provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def repository() -> InMemoryProjectSandboxRepository:
    return InMemoryProjectSandboxRepository()


@pytest.fixture
def backup_store() -> InMemoryBackupStore:
    return InMemoryBackupStore()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def lock(fake_redis) -> RedisDistributedLockAdapter:
    return RedisDistributedLockAdapter(fake_redis, default_ttl=120, retry_interval=0.01)


@pytest.fixture
def dev_server_state() -> InMemoryDevServerState:
    return InMemoryDevServerState()


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(TEST_ENCRYPTION_KEY)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


# --- Services ---


@dataclass
class SandboxServices:
    provider: FakeSandboxProvider
    repository: InMemoryProjectSandboxRepository
    backup_store: InMemoryBackupStore
    lock: RedisDistributedLockAdapter
    dev_server_state: InMemoryDevServerState
    backup_channel: SandboxBackupChannel
    restoration: SandboxRestorationService
    manager: SandboxManagerService
    health: SandboxHealthService
    readiness: DevServerReadinessService
    orchestrator: SandboxOrchestrator
    sleeper: SleepRecorder


def reachable_transport() -> httpx.MockTransport:
    """Every preview URL answers 200."""
    return httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))


@pytest.fixture
def services(
    provider, repository, backup_store, lock, dev_server_state, encryption, sleeper
) -> SandboxServices:
    backup_channel = SandboxBackupChannel(backup_store, repository)
    restoration = SandboxRestorationService(provider, repository, backup_store)
    manager = SandboxManagerService(
        provider=provider,
        repository=repository,
        restoration=restoration,
        lock=lock,
        backup_channel=backup_channel,
        cache=SandboxHandleCache(max_size=16),
        retry_policy=RetryPolicy(sleep=sleeper.sleep),
        installer=DependencyInstaller(dev_server_state=dev_server_state),
        lock_wait_seconds=1.0,
    )
    health = SandboxHealthService(provider, repository, restoration, lock=lock, lock_wait_seconds=1.0)
    readiness = DevServerReadinessService(
        dev_server_state=dev_server_state,
        repository=repository,
        encryption=encryption,
        ready_window_seconds=5.0,
        poll_interval=1.0,
        transport=reachable_transport(),
        sleep=sleeper.sleep,
        clock=sleeper.clock,
    )
    orchestrator = SandboxOrchestrator(
        manager=manager,
        readiness=readiness,
        health=health,
        provider=provider,
        repository=repository,
    )
    return SandboxServices(
        provider=provider,
        repository=repository,
        backup_store=backup_store,
        lock=lock,
        dev_server_state=dev_server_state,
        backup_channel=backup_channel,
        restoration=restoration,
        manager=manager,
        health=health,
        readiness=readiness,
        orchestrator=orchestrator,
        sleeper=sleeper,
    )
