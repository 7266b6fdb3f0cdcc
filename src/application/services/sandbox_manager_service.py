"""Sandbox Manager Service - per-project sandbox lifecycle.

Responsibilities:
- get-or-create: reconnect to the bound sandbox or create the first one
- reconnect with bounded exponential backoff and a liveness probe
- route a provider-confirmed not-found to restoration
- idempotent pause, explicit kill
- file writes with a non-blocking backup side channel

The persisted project record is the only cross-instance source of truth.
The handle cache is a process-local optimization and may be empty at any time.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import AsyncIterator, Iterable, Mapping

from src.application.services.dependency_installer import DependencyInstaller
from src.application.services.sandbox_backup_channel import SandboxBackupChannel
from src.application.services.sandbox_restoration_service import SandboxRestorationService
from src.domain.model.sandbox.exceptions import (
    SandboxError,
    SandboxLivenessError,
    SandboxNotFoundError,
)
from src.domain.model.sandbox.operation_budget import OperationBudget
from src.domain.model.sandbox.project_file import ProjectFile, files_from_mapping
from src.domain.model.sandbox.project_sandbox import ProjectSandboxBinding, SandboxState
from src.domain.model.sandbox.retry_policy import RetryPolicy
from src.domain.ports.repositories.project_sandbox_repository import ProjectSandboxRepository
from src.domain.ports.services.distributed_lock_port import DistributedLockPort
from src.domain.ports.services.sandbox_port import (
    LIVENESS_COMMAND,
    SandboxCreateOptions,
    SandboxHandle,
    SandboxProviderPort,
)
from src.infrastructure.adapters.secondary.cache.sandbox_handle_cache import SandboxHandleCache

logger = logging.getLogger(__name__)


class SandboxManagerService:
    """Owns the lifecycle of each project's single sandbox."""

    def __init__(
        self,
        provider: SandboxProviderPort,
        repository: ProjectSandboxRepository,
        restoration: SandboxRestorationService,
        lock: DistributedLockPort,
        backup_channel: SandboxBackupChannel,
        cache: SandboxHandleCache | None = None,
        retry_policy: RetryPolicy | None = None,
        installer: DependencyInstaller | None = None,
        project_dir: str = "/home/user/project",
        template: str | None = None,
        create_timeout_seconds: int = 600,
        liveness_timeout_seconds: float = 10.0,
        lock_ttl_seconds: int = 120,
        lock_wait_seconds: float = 15.0,
        idle_pause_seconds: float = 300.0,
    ) -> None:
        """Initialize the manager.

        Args:
            provider: Remote compute provider
            repository: Project record store
            restoration: Restoration service used when a sandbox expired
            lock: Cross-instance lock serializing create, restore, pause and kill
            backup_channel: Side channel for backup writes
            cache: Process-local handle cache
            retry_policy: Reconnect retry policy (5 attempts, 1s doubling, 10s cap)
            installer: Installs dependencies when package.json is written
            project_dir: Project root inside the sandbox
            template: Provider template for new sandboxes
            create_timeout_seconds: Idle lifetime for new and reconnected sandboxes
            liveness_timeout_seconds: Timeout of the post-connect liveness command
            lock_ttl_seconds: TTL of the project lock
            lock_wait_seconds: Longest wait for the project lock
            idle_pause_seconds: Idle threshold for pause_idle_sandboxes
        """
        self._provider = provider
        self._repository = repository
        self._restoration = restoration
        self._lock = lock
        self._backup_channel = backup_channel
        self._cache = cache if cache is not None else SandboxHandleCache()
        self._retry = retry_policy or RetryPolicy()
        self._installer = installer
        self._project_dir = project_dir
        self._template = template
        self._create_timeout = create_timeout_seconds
        self._liveness_timeout = liveness_timeout_seconds
        self._lock_ttl = lock_ttl_seconds
        self._lock_wait = lock_wait_seconds
        self._idle_pause_seconds = idle_pause_seconds

    @property
    def cache(self) -> SandboxHandleCache:
        return self._cache

    @property
    def project_dir(self) -> str:
        return self._project_dir

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def project_lock(
        self, project_id: str, budget: OperationBudget | None = None
    ) -> AsyncIterator[None]:
        """Hold ``sandbox:lock:{project_id}`` for the duration of the block.

        Raises:
            LockContentionError: The lock was not freed in time
        """
        wait = budget.cap(self._lock_wait) if budget is not None else self._lock_wait
        release = await self._lock.acquire_release(project_id, ttl=self._lock_ttl, timeout=wait)
        try:
            yield
        finally:
            await release()

    # ------------------------------------------------------------------
    # Get or create
    # ------------------------------------------------------------------

    async def get_or_create_sandbox(
        self,
        project_id: str,
        options: SandboxCreateOptions | None = None,
        budget: OperationBudget | None = None,
        lock_held: bool = False,
    ) -> SandboxHandle:
        """Return a live handle for the project's sandbox.

        Args:
            project_id: Project ID
            options: Create options used only when no sandbox was ever bound
            budget: Overall budget of the calling operation
            lock_held: The caller already holds the project lock

        Raises:
            RestorationExhaustedError: The sandbox expired and nothing can restore it
            RestorationFailedError: Restoration started but did not finish
            SandboxTransientError: Every reconnect attempt failed
            LockContentionError: Create or restore could not take the project lock
        """
        binding = await self._repository.find_by_project(project_id)

        if binding is not None and binding.sandbox_id:
            if binding.state() == SandboxState.RUNNING:
                cached = self._cache.get(project_id, binding.sandbox_id)
                if cached is not None and await self._revalidate_cached(project_id, cached):
                    return cached
            return await self._reconnect(binding, budget, lock_held)

        if lock_held:
            return await self._create(project_id, binding, options)

        async with self.project_lock(project_id, budget):
            # Another caller may have created it while we waited.
            fresh = await self._repository.find_by_project(project_id)
            if fresh is not None and fresh.sandbox_id:
                return await self._reconnect(fresh, budget, lock_held=True)
            return await self._create(project_id, fresh, options)

    async def resume_sandbox(
        self, project_id: str, budget: OperationBudget | None = None
    ) -> SandboxHandle:
        """Resume the project's sandbox. Connecting resumes a paused sandbox."""
        return await self.get_or_create_sandbox(project_id, budget=budget)

    async def _create(
        self,
        project_id: str,
        binding: ProjectSandboxBinding | None,
        options: SandboxCreateOptions | None,
    ) -> SandboxHandle:
        opts = options or SandboxCreateOptions()
        opts.template = opts.template or self._template
        opts.timeout_seconds = opts.timeout_seconds or self._create_timeout
        opts.metadata = {**opts.metadata, "project_id": project_id}

        handle = await self._provider.create(opts)
        handle.project_id = project_id

        try:
            if binding is None:
                binding = ProjectSandboxBinding(project_id=project_id)
                binding.bind(handle.sandbox_id)
                await self._repository.save(binding)
            else:
                binding.bind(handle.sandbox_id)
                await self._repository.update_sandbox(project_id, handle.sandbox_id, None)
        except Exception:
            logger.error(f"Failed to persist new sandbox {handle.sandbox_id} for {project_id}")
            try:
                await self._provider.kill(handle.sandbox_id)
            except Exception as kill_error:
                logger.warning(f"Failed to kill unpersisted sandbox {handle.sandbox_id}: {kill_error}")
            raise

        self._cache.put(project_id, handle)
        logger.info(f"Created sandbox {handle.sandbox_id} for project {project_id}")
        return handle

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def _connect_and_probe(self, sandbox_id: str) -> SandboxHandle:
        handle = await self._provider.connect(sandbox_id, timeout_seconds=self._create_timeout)
        result = await handle.run_command(LIVENESS_COMMAND, timeout=self._liveness_timeout)
        if not result.answered_liveness:
            raise SandboxLivenessError(sandbox_id, f"exit code {result.exit_code}")
        return handle

    async def _revalidate_cached(self, project_id: str, handle: SandboxHandle) -> bool:
        """Confirm a cached handle still reaches its sandbox and refresh its lifetime.

        A failure evicts the entry so the caller falls through to reconnect.
        """
        try:
            result = await handle.run_command(LIVENESS_COMMAND, timeout=self._liveness_timeout)
            if not result.answered_liveness:
                raise SandboxLivenessError(handle.sandbox_id, f"exit code {result.exit_code}")
            await handle.set_timeout(self._create_timeout)
        except SandboxError as e:
            logger.info(
                f"Cached handle for sandbox {handle.sandbox_id} of project {project_id} "
                f"is stale: {e.message}"
            )
            self._cache.evict(project_id)
            return False
        return True

    async def _reconnect(
        self,
        binding: ProjectSandboxBinding,
        budget: OperationBudget | None,
        lock_held: bool,
    ) -> SandboxHandle:
        project_id = binding.project_id
        sandbox_id = binding.sandbox_id

        def on_retry(error: Exception, attempt: int, delay: float) -> None:
            logger.warning(
                f"Reconnect to sandbox {sandbox_id} failed (attempt {attempt}), "
                f"retrying in {delay:.1f}s: {error}"
            )

        try:
            handle = await self._retry.execute(
                lambda: self._connect_and_probe(sandbox_id),
                on_retry=on_retry,
                budget=budget,
            )
        except SandboxNotFoundError:
            logger.warning(f"Sandbox {sandbox_id} for project {project_id} expired, restoring")
            self._cache.evict(project_id)
            binding.mark_expired()
            return await self._restore(binding, sandbox_id, budget, lock_held)

        handle.project_id = project_id
        if binding.sandbox_paused_at is not None:
            binding.mark_resumed()
            await self._repository.update_paused_at(project_id, None)
            logger.info(f"Resumed sandbox {sandbox_id} for project {project_id}")

        self._cache.put(project_id, handle)
        return handle

    async def _restore(
        self,
        binding: ProjectSandboxBinding,
        expired_sandbox_id: str,
        budget: OperationBudget | None,
        lock_held: bool,
    ) -> SandboxHandle:
        project_id = binding.project_id
        if lock_held:
            handle = await self._restoration.restore_from_expired(
                project_id, expired_sandbox_id, binding
            )
        else:
            async with self.project_lock(project_id, budget):
                fresh = await self._repository.find_by_project(project_id)
                if fresh is not None and fresh.sandbox_id and fresh.sandbox_id != expired_sandbox_id:
                    logger.info(
                        f"Project {project_id} was already restored to {fresh.sandbox_id}"
                    )
                    return await self._reconnect(fresh, budget, lock_held=True)
                handle = await self._restoration.restore_from_expired(
                    project_id, expired_sandbox_id, fresh or binding
                )
        self._cache.put(project_id, handle)
        return handle

    # ------------------------------------------------------------------
    # Pause / kill
    # ------------------------------------------------------------------

    async def pause_sandbox(self, project_id: str) -> bool:
        """Pause the project's sandbox under the project lock. Idempotent.

        Returns True when the sandbox is paused, was already paused, no longer
        exists, or was never created.

        Raises:
            LockContentionError: A create, restore or kill held the lock too long
        """
        async with self.project_lock(project_id):
            binding = await self._repository.find_by_project(project_id)
            if binding is None or not binding.sandbox_id:
                return True

            sandbox_id = binding.sandbox_id
            try:
                await self._provider.pause(sandbox_id)
            except SandboxNotFoundError:
                # The id stays bound so the next reconnect routes to restoration.
                logger.info(f"Sandbox {sandbox_id} already gone while pausing project {project_id}")
                self._cache.evict(project_id)
                return True

            paused_at = datetime.now(UTC)
            binding.mark_paused(paused_at)
            await self._repository.update_paused_at(project_id, paused_at)
            self._cache.evict(project_id)
        logger.info(f"Paused sandbox {sandbox_id} for project {project_id}")
        return True

    async def kill_sandbox(self, project_id: str) -> bool:
        """Kill the project's sandbox and unbind it. Only ever called explicitly.

        Runs under the project lock so it cannot interleave with a create or
        restore that is about to bind a new id.

        Returns:
            True if a remote sandbox was killed

        Raises:
            LockContentionError: The project lock was not freed in time
        """
        async with self.project_lock(project_id):
            binding = await self._repository.find_by_project(project_id)
            if binding is None or not binding.sandbox_id:
                return False

            sandbox_id = binding.sandbox_id
            try:
                killed = await self._provider.kill(sandbox_id)
            except SandboxNotFoundError:
                killed = False

            binding.unbind()
            await self._repository.update_sandbox(project_id, None, None)
            self._cache.evict(project_id)
        logger.info(f"Killed sandbox {sandbox_id} for project {project_id} (existed={killed})")
        return killed

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def write_file(self, project_id: str, path: str, content: str) -> str:
        """Write one file and schedule its backup. Returns the normalized path."""
        written = await self.write_files(project_id, [ProjectFile(path, content)])
        return written[0]

    async def write_files(
        self,
        project_id: str,
        files: Mapping[str, str | None] | Iterable[ProjectFile],
        budget: OperationBudget | None = None,
    ) -> list[str]:
        """Write files into the live sandbox, then back them up without waiting.

        A backup failure is logged and never fails the write.

        Returns:
            Normalized relative paths written
        """
        if isinstance(files, Mapping):
            project_files = files_from_mapping(files)
        else:
            project_files = list(files)
        if not project_files:
            return []

        handle = await self.get_or_create_sandbox(project_id, budget=budget)

        manifest = next((f for f in project_files if f.is_package_manifest), None)
        previous_manifest = None
        if manifest is not None and self._installer is not None:
            previous_manifest = await self._read_optional(
                handle, manifest.absolute_path(self._project_dir)
            )

        try:
            await asyncio.gather(
                *(
                    handle.write_file(f.absolute_path(self._project_dir), f.content)
                    for f in project_files
                )
            )
        except SandboxNotFoundError:
            self._cache.evict(project_id)
            raise
        self._cache.touch(project_id)
        self._backup_channel.submit(project_id, project_files)

        if manifest is not None and self._installer is not None:
            try:
                await self._installer.install(handle, previous_manifest, manifest.content)
            except SandboxError as e:
                logger.error(f"Dependency install failed for project {project_id}: {e.message}")

        return [f.path for f in project_files]

    async def _read_optional(self, handle: SandboxHandle, path: str) -> str | None:
        try:
            return await handle.read_file(path)
        except SandboxError:
            return None

    # ------------------------------------------------------------------
    # Keep-alive and idle pausing
    # ------------------------------------------------------------------

    async def keep_sandbox_alive(self, project_id: str, timeout_seconds: int | None = None) -> bool:
        """Extend the provider-side idle timeout of the project's sandbox.

        Returns False when the project has no sandbox.
        """
        binding = await self._repository.find_by_project(project_id)
        if binding is None or not binding.sandbox_id:
            return False
        handle = await self.get_or_create_sandbox(project_id)
        await handle.set_timeout(timeout_seconds or self._create_timeout)
        self._cache.touch(project_id)
        return True

    async def pause_idle_sandboxes(self, idle_seconds: float | None = None) -> list[str]:
        """Pause every cached sandbox idle for longer than ``idle_seconds``.

        Returns:
            Project IDs whose sandbox was paused
        """
        threshold = idle_seconds if idle_seconds is not None else self._idle_pause_seconds
        paused: list[str] = []
        for entry in self._cache.idle_entries(threshold):
            try:
                await self.pause_sandbox(entry.project_id)
                paused.append(entry.project_id)
            except SandboxError as e:
                logger.warning(f"Failed to pause idle sandbox for {entry.project_id}: {e.message}")
        if paused:
            logger.info(f"Paused {len(paused)} idle sandbox(es)")
        return paused
