"""DI sub-container for the sandbox lifecycle domain."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.application.services.dependency_installer import DependencyInstaller
from src.application.services.dev_server_readiness_service import DevServerReadinessService
from src.application.services.sandbox_backup_channel import SandboxBackupChannel
from src.application.services.sandbox_health_service import SandboxHealthService
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.application.services.sandbox_orchestrator import SandboxOrchestrator
from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.configuration.config import Settings
from src.domain.model.sandbox.retry_policy import RetryPolicy
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.backup_store_port import BackupStorePort
from src.domain.ports.services.dev_server_state_port import DevServerStatePort
from src.domain.ports.services.distributed_lock_port import DistributedLockPort
from src.domain.ports.services.sandbox_port import SandboxProviderPort
from src.infrastructure.adapters.secondary.cache.redis_dev_server_state import RedisDevServerState
from src.infrastructure.adapters.secondary.cache.redis_lock_adapter import (
    RedisDistributedLockAdapter,
)
from src.infrastructure.adapters.secondary.cache.sandbox_handle_cache import SandboxHandleCache
from src.infrastructure.adapters.secondary.persistence.sql_project_sandbox_repository import (
    SqlProjectSandboxRepository,
)
from src.infrastructure.security.encryption_service import EncryptionService


class SandboxContainer:
    """Sub-container for sandbox lifecycle services.

    Services are built once per container and shared: the handle cache and
    the backup channel must be process-wide. Every port can be overridden,
    which is how tests swap in fakes.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        redis_client: Any = None,
        provider: SandboxProviderPort | None = None,
        backup_store: BackupStorePort | None = None,
        repository: ProjectSandboxRepository | None = None,
        lock: DistributedLockPort | None = None,
        dev_server_state: DevServerStatePort | None = None,
        encryption: EncryptionService | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._redis_client = redis_client
        self._provider = provider
        self._backup_store = backup_store
        self._repository = repository
        self._lock = lock
        self._dev_server_state = dev_server_state
        self._encryption = encryption
        self._cache: SandboxHandleCache | None = None
        self._backup_channel: SandboxBackupChannel | None = None
        self._restoration: SandboxRestorationService | None = None
        self._manager: SandboxManagerService | None = None
        self._health: SandboxHealthService | None = None
        self._readiness: DevServerReadinessService | None = None
        self._orchestrator: SandboxOrchestrator | None = None

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    def sandbox_provider(self) -> SandboxProviderPort:
        if self._provider is None:
            from src.infrastructure.adapters.secondary.sandbox.e2b_sandbox_adapter import (
                E2BSandboxAdapter,
            )

            self._provider = E2BSandboxAdapter(
                api_key=self._settings.e2b_api_key,
                template=self._settings.e2b_template_id,
                default_timeout_seconds=self._settings.sandbox_create_timeout_seconds,
            )
        return self._provider

    def backup_store(self) -> BackupStorePort:
        if self._backup_store is None:
            from src.infrastructure.adapters.secondary.storage.s3_backup_store import (
                S3BackupStore,
            )

            self._backup_store = S3BackupStore(
                bucket_name=self._settings.backup_bucket_name,
                region=self._settings.backup_region,
                access_key_id=self._settings.backup_access_key_id,
                secret_access_key=self._settings.backup_secret_access_key,
                endpoint_url=self._settings.backup_endpoint_url,
            )
        return self._backup_store

    def project_sandbox_repository(self) -> ProjectSandboxRepository:
        if self._repository is None:
            if self._session_factory is None:
                raise RuntimeError("Session factory not configured")
            self._repository = SqlProjectSandboxRepository(self._session_factory)
        return self._repository

    def distributed_lock(self) -> DistributedLockPort:
        if self._lock is None:
            if self._redis_client is None:
                raise RuntimeError("Redis client not configured")
            self._lock = RedisDistributedLockAdapter(
                self._redis_client,
                default_ttl=self._settings.sandbox_lock_ttl_seconds,
                retry_interval=self._settings.sandbox_lock_retry_interval,
            )
        return self._lock

    def dev_server_state(self) -> DevServerStatePort:
        if self._dev_server_state is None:
            if self._redis_client is None:
                raise RuntimeError("Redis client not configured")
            self._dev_server_state = RedisDevServerState(self._redis_client)
        return self._dev_server_state

    def encryption_service(self) -> EncryptionService:
        if self._encryption is None:
            self._encryption = EncryptionService(self._settings.env_var_encryption_key)
        return self._encryption

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def handle_cache(self) -> SandboxHandleCache:
        if self._cache is None:
            self._cache = SandboxHandleCache(max_size=self._settings.sandbox_cache_size)
        return self._cache

    def backup_channel(self) -> SandboxBackupChannel:
        if self._backup_channel is None:
            self._backup_channel = SandboxBackupChannel(
                self.backup_store(), self.project_sandbox_repository()
            )
        return self._backup_channel

    def restoration_service(self) -> SandboxRestorationService:
        if self._restoration is None:
            self._restoration = SandboxRestorationService(
                provider=self.sandbox_provider(),
                repository=self.project_sandbox_repository(),
                backup_store=self.backup_store(),
                project_dir=self._settings.sandbox_project_dir,
                template=self._settings.e2b_template_id,
                create_timeout_seconds=self._settings.sandbox_create_timeout_seconds,
            )
        return self._restoration

    def sandbox_manager(self) -> SandboxManagerService:
        if self._manager is None:
            s = self._settings
            installer = None
            if s.dev_server_auto_install:
                installer = DependencyInstaller(
                    project_dir=s.sandbox_project_dir,
                    install_timeout=s.dev_server_install_timeout,
                    dev_server_state=self.dev_server_state(),
                )
            self._manager = SandboxManagerService(
                provider=self.sandbox_provider(),
                repository=self.project_sandbox_repository(),
                restoration=self.restoration_service(),
                lock=self.distributed_lock(),
                backup_channel=self.backup_channel(),
                cache=self.handle_cache(),
                retry_policy=RetryPolicy(
                    max_attempts=s.sandbox_reconnect_max_attempts,
                    base_delay=s.sandbox_reconnect_base_delay,
                    max_delay=s.sandbox_reconnect_max_delay,
                ),
                installer=installer,
                project_dir=s.sandbox_project_dir,
                template=s.e2b_template_id,
                create_timeout_seconds=s.sandbox_create_timeout_seconds,
                liveness_timeout_seconds=s.sandbox_liveness_timeout_seconds,
                lock_ttl_seconds=s.sandbox_lock_ttl_seconds,
                lock_wait_seconds=s.sandbox_lock_wait_seconds,
                idle_pause_seconds=s.sandbox_idle_pause_seconds,
            )
        return self._manager

    def health_service(self) -> SandboxHealthService:
        if self._health is None:
            self._health = SandboxHealthService(
                provider=self.sandbox_provider(),
                repository=self.project_sandbox_repository(),
                restoration=self.restoration_service(),
                lock=self.distributed_lock(),
                liveness_timeout=self._settings.sandbox_liveness_timeout_seconds,
                lock_ttl_seconds=self._settings.sandbox_lock_ttl_seconds,
                lock_wait_seconds=self._settings.sandbox_lock_wait_seconds,
            )
        return self._health

    def readiness_service(self) -> DevServerReadinessService:
        if self._readiness is None:
            s = self._settings
            self._readiness = DevServerReadinessService(
                dev_server_state=self.dev_server_state(),
                repository=self.project_sandbox_repository(),
                encryption=self.encryption_service(),
                port=s.dev_server_port,
                project_dir=s.sandbox_project_dir,
                ready_window_seconds=s.dev_server_ready_window_seconds,
                poll_interval=s.dev_server_poll_interval,
                probe_timeout=s.dev_server_probe_timeout,
            )
        return self._readiness

    def sandbox_orchestrator(self) -> SandboxOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SandboxOrchestrator(
                manager=self.sandbox_manager(),
                readiness=self.readiness_service(),
                health=self.health_service(),
                provider=self.sandbox_provider(),
                repository=self.project_sandbox_repository(),
                budget_seconds=self._settings.sandbox_ensure_budget_seconds,
            )
        return self._orchestrator

    async def shutdown(self) -> None:
        """Drain pending backups, close HTTP clients and drop held locks."""
        if self._backup_channel is not None:
            await self._backup_channel.drain(timeout=30.0)
        if self._readiness is not None:
            await self._readiness.close()
        if isinstance(self._lock, RedisDistributedLockAdapter):
            await self._lock.cleanup()
