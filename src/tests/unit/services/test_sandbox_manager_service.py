"""Tests for SandboxManagerService."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from src.application.services.sandbox_backup_channel import SandboxBackupChannel
from src.application.services.sandbox_manager_service import SandboxManagerService
from src.domain.model.sandbox.exceptions import (
    LockContentionError,
    RestorationExhaustedError,
    SandboxLivenessError,
    SandboxNotFoundError,
    SandboxTransientError,
)
from src.domain.model.sandbox.project_sandbox import SandboxState
from src.domain.model.sandbox.retry_policy import RetryPolicy
from src.domain.ports.services.sandbox_port import (
    LIVENESS_COMMAND,
    CommandResult,
    SandboxCreateOptions,
)
from src.infrastructure.adapters.secondary.cache.sandbox_handle_cache import SandboxHandleCache
from src.tests.unit.fixtures.sandbox_fixtures import TEST_PROJECT_ID, make_binding

PROJECT_DIR = "/home/user/project"


class TestGetOrCreate:
    """Tests for get_or_create_sandbox."""

    @pytest.mark.asyncio
    async def test_creates_first_sandbox(self, services):
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-new-1"
        assert handle.project_id == TEST_PROJECT_ID
        assert len(services.provider.create_calls) == 1
        assert services.provider.create_calls[0].metadata["project_id"] == TEST_PROJECT_ID
        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_id == "sb-new-1"
        assert stored.state() == SandboxState.RUNNING

    @pytest.mark.asyncio
    async def test_create_keeps_caller_options(self, services):
        options = SandboxCreateOptions(template="nextjs", metadata={"owner": "u1"})

        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID, options=options)

        sent = services.provider.create_calls[0]
        assert sent.template == "nextjs"
        assert sent.metadata == {"owner": "u1", "project_id": TEST_PROJECT_ID}

    @pytest.mark.asyncio
    async def test_concurrent_callers_create_exactly_once(self, services):
        """Ten simultaneous callers on a fresh project end up on one sandbox."""
        handles = await asyncio.gather(
            *(services.manager.get_or_create_sandbox(TEST_PROJECT_ID) for _ in range(10))
        )

        assert len(services.provider.create_calls) == 1
        assert {h.sandbox_id for h in handles} == {"sb-new-1"}
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-new-1"
        assert await services.lock.is_locked(TEST_PROJECT_ID) is False

    @pytest.mark.asyncio
    async def test_different_projects_create_independently(self, services):
        a, b = await asyncio.gather(
            services.manager.get_or_create_sandbox("project-a"),
            services.manager.get_or_create_sandbox("project-b"),
        )

        assert a.sandbox_id != b.sandbox_id
        assert len(services.provider.create_calls) == 2

    @pytest.mark.asyncio
    async def test_reconnects_to_bound_sandbox(self, services):
        services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))

        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-1"
        assert services.provider.create_calls == []
        assert LIVENESS_COMMAND in handle.command_lines()

    @pytest.mark.asyncio
    async def test_cached_handle_skips_reconnect(self, services):
        handle = services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))

        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert services.provider.connect_calls == ["sb-1"]
        # The cached handle is still checked and its lifetime refreshed.
        assert handle.command_lines().count(LIVENESS_COMMAND) == 2
        assert handle.timeouts == [600]

    @pytest.mark.asyncio
    async def test_cached_handle_of_expired_sandbox_is_restored(self, services):
        services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.backup_store.seed(TEST_PROJECT_ID, {"app/page.tsx": "page"})
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        assert TEST_PROJECT_ID in services.manager.cache

        services.provider.expire("sb-1")
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-new-1"
        assert handle.files[f"{PROJECT_DIR}/app/page.tsx"] == "page"
        assert services.provider.connect_calls == ["sb-1", "sb-1"]
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-new-1"
        assert services.manager.cache.get(TEST_PROJECT_ID) is handle

    @pytest.mark.asyncio
    async def test_cached_handle_failing_liveness_reconnects(self, services):
        handle = services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        checks = {"count": 0}

        def responder(command):
            if command == LIVENESS_COMMAND:
                checks["count"] += 1
                if checks["count"] == 1:
                    return CommandResult(exit_code=0, stdout="")
            return None

        handle.responder = responder

        result = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert result.sandbox_id == "sb-1"
        assert services.provider.connect_calls == ["sb-1", "sb-1"]
        assert services.provider.create_calls == []

    @pytest.mark.asyncio
    async def test_stale_cache_entry_falls_through_to_reconnect(self, services):
        services.provider.add_sandbox("sb-1")
        services.provider.add_sandbox("sb-2")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        # Another instance rebound the project.
        services.repository.get(TEST_PROJECT_ID).sandbox_id = "sb-2"
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-2"
        assert services.provider.connect_calls == ["sb-1", "sb-2"]

    @pytest.mark.asyncio
    async def test_resume_clears_paused_at(self, services):
        services.provider.add_sandbox("sb-1", paused=True)
        services.repository.seed(
            make_binding(sandbox_id="sb-1", paused_at=datetime.now(UTC) - timedelta(minutes=10))
        )

        handle = await services.manager.resume_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-1"
        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_paused_at is None
        assert stored.state() == SandboxState.RUNNING
        assert "sb-1" not in services.provider.paused

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, services):
        services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.provider.connect_errors["sb-1"] = [
            SandboxTransientError("timeout", "sb-1", "connect"),
            SandboxTransientError("timeout", "sb-1", "connect"),
        ]

        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-1"
        assert services.provider.connect_calls == ["sb-1"] * 3
        assert services.sleeper.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_five_attempts(self, services):
        services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.provider.connect_errors["sb-1"] = [
            SandboxTransientError("timeout", "sb-1", "connect") for _ in range(5)
        ]

        with pytest.raises(SandboxTransientError):
            await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert len(services.provider.connect_calls) == 5
        assert services.sleeper.delays == [1.0, 2.0, 4.0, 8.0]
        assert services.provider.create_calls == []

    @pytest.mark.asyncio
    async def test_failed_liveness_probe_is_retried(self, services):
        handle = services.provider.add_sandbox("sb-1")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        probes = {"count": 0}

        def responder(command):
            if command == LIVENESS_COMMAND:
                probes["count"] += 1
                if probes["count"] == 1:
                    return CommandResult(exit_code=1, stderr="not ready")
            return None

        handle.responder = responder

        result = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert result.sandbox_id == "sb-1"
        assert probes["count"] == 2

    def test_liveness_error_is_transient(self):
        assert SandboxLivenessError("sb-1", "exit code 1").retryable is True

    @pytest.mark.asyncio
    async def test_not_found_goes_straight_to_restoration(self, services):
        services.repository.seed(make_binding(sandbox_id="sb-gone"))
        services.backup_store.seed(TEST_PROJECT_ID, {"index.js": "console.log(1)"})

        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert services.provider.connect_calls == ["sb-gone"]
        assert services.sleeper.delays == []
        assert handle.sandbox_id == "sb-new-1"
        assert handle.files[f"{PROJECT_DIR}/index.js"] == "console.log(1)"

    @pytest.mark.asyncio
    async def test_expired_with_paused_sandbox_restores_from_backup(self, services):
        """sb-1 paused two hours ago, now gone, three files in the backup store."""
        services.repository.seed(
            make_binding(sandbox_id="sb-1", paused_at=datetime.now(UTC) - timedelta(hours=2))
        )
        backup = {
            "package.json": '{"name": "app"}',
            "app/page.tsx": "export default function Page() {}",
            "app/layout.tsx": "export default function Layout() {}",
        }
        services.backup_store.seed(TEST_PROJECT_ID, backup)

        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_id != "sb-1"
        assert stored.sandbox_id == handle.sandbox_id
        assert stored.sandbox_paused_at is None
        assert {p: handle.files[f"{PROJECT_DIR}/{p}"] for p in backup} == backup
        assert services.provider.connect_calls == ["sb-1"]
        assert services.sleeper.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_restoration_propagates(self, services):
        services.repository.seed(make_binding(sandbox_id="sb-gone"))

        with pytest.raises(RestorationExhaustedError):
            await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert services.provider.create_calls == []
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-gone"
        assert await services.lock.is_locked(TEST_PROJECT_ID) is False

    @pytest.mark.asyncio
    async def test_restore_reuses_sandbox_restored_by_another_caller(self, services):
        services.repository.seed(make_binding(sandbox_id="sb-gone"))
        services.backup_store.seed(TEST_PROJECT_ID, {"index.js": "1"})

        handles = await asyncio.gather(
            services.manager.get_or_create_sandbox(TEST_PROJECT_ID),
            services.manager.get_or_create_sandbox(TEST_PROJECT_ID),
        )

        assert len(services.provider.create_calls) == 1
        assert handles[0].sandbox_id == handles[1].sandbox_id

    @pytest.mark.asyncio
    async def test_create_contention_raises(self, services):
        release = await services.lock.acquire_release(TEST_PROJECT_ID, ttl=120, timeout=1)
        try:
            with pytest.raises(LockContentionError):
                await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        finally:
            await release()

        assert services.provider.create_calls == []

    @pytest.mark.asyncio
    async def test_lock_released_when_create_fails(self, services):
        services.provider.create_error = SandboxTransientError("quota exceeded", operation="create")

        with pytest.raises(SandboxTransientError):
            await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert await services.lock.is_locked(TEST_PROJECT_ID) is False
        release = await services.lock.acquire_release(TEST_PROJECT_ID, ttl=120, timeout=0.1)
        await release()


class TestPause:
    """Tests for pause_sandbox."""

    @pytest.mark.asyncio
    async def test_pause_running_sandbox(self, services):
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert await services.manager.pause_sandbox(TEST_PROJECT_ID) is True

        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_paused_at is not None
        assert stored.state() == SandboxState.PAUSED
        assert handle.sandbox_id in services.provider.paused
        assert TEST_PROJECT_ID not in services.manager.cache

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self, services):
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert await services.manager.pause_sandbox(TEST_PROJECT_ID) is True
        assert await services.manager.pause_sandbox(TEST_PROJECT_ID) is True

        assert services.repository.get(TEST_PROJECT_ID).state() == SandboxState.PAUSED

    @pytest.mark.asyncio
    async def test_pause_without_sandbox(self, services):
        assert await services.manager.pause_sandbox(TEST_PROJECT_ID) is True
        assert services.provider.pause_calls == []

    @pytest.mark.asyncio
    async def test_pause_of_expired_sandbox_keeps_binding(self, services):
        services.repository.seed(make_binding(sandbox_id="sb-gone"))

        assert await services.manager.pause_sandbox(TEST_PROJECT_ID) is True

        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_id == "sb-gone"
        assert stored.sandbox_paused_at is None

    @pytest.mark.asyncio
    async def test_pause_waits_for_project_lock(self, services):
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        release = await services.lock.acquire_release(TEST_PROJECT_ID, ttl=120, timeout=1)
        try:
            with pytest.raises(LockContentionError):
                await services.manager.pause_sandbox(TEST_PROJECT_ID)
        finally:
            await release()

        assert services.provider.pause_calls == []
        assert services.repository.get(TEST_PROJECT_ID).sandbox_paused_at is None


class TestKill:
    @pytest.mark.asyncio
    async def test_kill_unbinds(self, services):
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert await services.manager.kill_sandbox(TEST_PROJECT_ID) is True

        assert services.provider.kill_calls == [handle.sandbox_id]
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id is None
        assert TEST_PROJECT_ID not in services.manager.cache

    @pytest.mark.asyncio
    async def test_kill_of_missing_sandbox(self, services):
        services.repository.seed(make_binding(sandbox_id="sb-gone"))

        assert await services.manager.kill_sandbox(TEST_PROJECT_ID) is False
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id is None

    @pytest.mark.asyncio
    async def test_kill_without_binding(self, services):
        assert await services.manager.kill_sandbox(TEST_PROJECT_ID) is False

    @pytest.mark.asyncio
    async def test_kill_does_not_interleave_with_lock_holder(self, services):
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        release = await services.lock.acquire_release(TEST_PROJECT_ID, ttl=120, timeout=1)
        try:
            with pytest.raises(LockContentionError):
                await services.manager.kill_sandbox(TEST_PROJECT_ID)
        finally:
            await release()

        assert services.provider.kill_calls == []
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-new-1"

    @pytest.mark.asyncio
    async def test_kill_sees_sandbox_bound_while_it_waited(self, services):
        """A restore holding the lock rebinds the project; kill then targets the new id."""
        services.provider.add_sandbox("sb-2")
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        release = await services.lock.acquire_release(TEST_PROJECT_ID, ttl=120, timeout=1)

        async def rebind_then_release():
            await asyncio.sleep(0.05)
            services.repository.get(TEST_PROJECT_ID).sandbox_id = "sb-2"
            await release()

        holder = asyncio.create_task(rebind_then_release())
        killed = await services.manager.kill_sandbox(TEST_PROJECT_ID)
        await holder

        assert killed is True
        assert services.provider.kill_calls == ["sb-2"]
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id is None

    @pytest.mark.asyncio
    async def test_next_call_after_kill_creates_new_sandbox(self, services):
        await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        await services.manager.kill_sandbox(TEST_PROJECT_ID)

        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert handle.sandbox_id == "sb-new-2"


class TestWriteFiles:
    """Tests for file writes and the backup side channel."""

    @pytest.mark.asyncio
    async def test_write_file_backs_up(self, services):
        path = await services.manager.write_file(TEST_PROJECT_ID, "/app/page.tsx", "hello")
        await services.backup_channel.drain()

        assert path == "app/page.tsx"
        handle = services.provider.sandboxes["sb-new-1"]
        assert handle.files[f"{PROJECT_DIR}/app/page.tsx"] == "hello"
        assert services.backup_store.objects[TEST_PROJECT_ID] == {"app/page.tsx": "hello"}
        assert services.repository.get(TEST_PROJECT_ID).last_backup_at is not None

    @pytest.mark.asyncio
    async def test_backup_failure_does_not_fail_write(self, services):
        services.backup_store.fail_writes = True

        written = await services.manager.write_files(TEST_PROJECT_ID, {"a.ts": "1", "b.ts": "2"})
        await services.backup_channel.drain()

        assert written == ["a.ts", "b.ts"]
        assert services.backup_channel.failure_count == 1
        assert services.repository.get(TEST_PROJECT_ID).last_backup_at is None

    @pytest.mark.asyncio
    async def test_write_does_not_wait_for_backup(self, services):
        services.backup_store.write_delay = 0.05

        await services.manager.write_files(TEST_PROJECT_ID, {"a.ts": "1"})

        assert services.backup_channel.pending_count == 1
        await services.backup_channel.drain()
        assert services.backup_channel.pending_count == 0

    @pytest.mark.asyncio
    async def test_empty_write_is_noop(self, services):
        assert await services.manager.write_files(TEST_PROJECT_ID, {}) == []
        assert services.provider.create_calls == []

    @pytest.mark.asyncio
    async def test_rejects_path_outside_project(self, services):
        with pytest.raises(ValueError):
            await services.manager.write_file(TEST_PROJECT_ID, "../etc/passwd", "x")

    @pytest.mark.asyncio
    async def test_package_json_installs_new_dependencies(self, services):
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        handle.files[f"{PROJECT_DIR}/package.json"] = '{"dependencies": {"react": "18.2.0"}}'
        services.dev_server_state.hashes[handle.sandbox_id] = "old-hash"

        await services.manager.write_file(
            TEST_PROJECT_ID,
            "package.json",
            '{"dependencies": {"react": "18.2.0", "zod": "^3.22.0"}}',
        )

        installs = [c for c in handle.command_lines() if c.startswith("npm install")]
        assert installs == ["npm install --legacy-peer-deps 'zod@^3.22.0'"]
        assert handle.sandbox_id not in services.dev_server_state.hashes

    @pytest.mark.asyncio
    async def test_failed_install_does_not_fail_write(self, services):
        handle = await services.manager.get_or_create_sandbox(TEST_PROJECT_ID)
        handle.responder = lambda cmd: (
            CommandResult(exit_code=1, stderr="ERESOLVE") if cmd.startswith("npm install") else None
        )

        path = await services.manager.write_file(
            TEST_PROJECT_ID, "package.json", '{"dependencies": {"zod": "3.22.0"}}'
        )

        assert path == "package.json"


class TestIdleAndKeepAlive:
    @pytest.fixture
    def clock(self):
        class Clock:
            now = 1000.0

            def __call__(self):
                return self.now

        return Clock()

    @pytest.fixture
    def manager(self, services, provider, repository, lock, backup_store, clock):
        return SandboxManagerService(
            provider=provider,
            repository=repository,
            restoration=services.restoration,
            lock=lock,
            backup_channel=SandboxBackupChannel(backup_store, repository),
            cache=SandboxHandleCache(clock=clock),
            retry_policy=RetryPolicy(sleep=services.sleeper.sleep),
            idle_pause_seconds=300,
        )

    @pytest.mark.asyncio
    async def test_pause_idle_sandboxes(self, manager, repository, clock):
        await manager.get_or_create_sandbox("project-idle")
        clock.now += 200
        await manager.get_or_create_sandbox("project-busy")
        clock.now += 150

        paused = await manager.pause_idle_sandboxes()

        assert paused == ["project-idle"]
        assert repository.get("project-idle").state() == SandboxState.PAUSED
        assert repository.get("project-busy").state() == SandboxState.RUNNING

    @pytest.mark.asyncio
    async def test_keep_alive_extends_timeout(self, manager, provider):
        handle = await manager.get_or_create_sandbox(TEST_PROJECT_ID)

        assert await manager.keep_sandbox_alive(TEST_PROJECT_ID, 900) is True
        assert handle.timeouts[-1] == 900

    @pytest.mark.asyncio
    async def test_keep_alive_without_sandbox(self, manager):
        assert await manager.keep_sandbox_alive(TEST_PROJECT_ID) is False


def test_not_found_error_is_never_retryable():
    assert SandboxNotFoundError("sb-1").retryable is False
