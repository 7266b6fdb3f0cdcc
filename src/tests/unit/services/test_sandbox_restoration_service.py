"""Tests for SandboxRestorationService."""

from datetime import UTC, datetime, timedelta

import pytest

from src.application.services.sandbox_restoration_service import (
    SOURCE_BACKUP,
    SOURCE_DATABASE,
    SOURCE_NONE,
)
from src.domain.model.sandbox.exceptions import (
    RestorationExhaustedError,
    RestorationFailedError,
    SandboxTransientError,
)
from src.domain.model.sandbox.project_sandbox import SandboxState
from src.tests.unit.fixtures.sandbox_fixtures import TEST_PROJECT_ID, make_binding

PROJECT_DIR = "/home/user/project"


@pytest.fixture
def restoration(services):
    return services.restoration


class TestRestoreFromExpired:
    """Tests for restore_from_expired."""

    @pytest.mark.asyncio
    async def test_restores_three_backed_up_files(self, services, restoration):
        services.repository.seed(
            make_binding(sandbox_id="sb-1", paused_at=datetime.now(UTC) - timedelta(hours=2))
        )
        files = {"a.ts": "a", "b.ts": "b", "lib/c.ts": "c"}
        services.backup_store.seed(TEST_PROJECT_ID, files)

        handle = await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert handle.sandbox_id != "sb-1"
        assert handle.project_id == TEST_PROJECT_ID
        assert handle.files == {f"{PROJECT_DIR}/{p}": c for p, c in files.items()}
        stored = services.repository.get(TEST_PROJECT_ID)
        assert stored.sandbox_id == handle.sandbox_id
        assert stored.sandbox_paused_at is None
        assert stored.state() == SandboxState.RUNNING

    @pytest.mark.asyncio
    async def test_backup_takes_precedence_over_database(self, services, restoration):
        services.repository.seed(
            make_binding(sandbox_id="sb-1", code_files={"index.ts": "from database"})
        )
        services.backup_store.seed(TEST_PROJECT_ID, {"index.ts": "from backup"})

        handle = await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert handle.files == {f"{PROJECT_DIR}/index.ts": "from backup"}
        assert services.provider.create_calls[0].metadata["source"] == SOURCE_BACKUP

    @pytest.mark.asyncio
    async def test_falls_back_to_database(self, services, restoration):
        services.repository.seed(
            make_binding(
                sandbox_id="sb-1",
                code_files={"index.ts": "from database", "skipped.ts": None},
            )
        )

        handle = await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert handle.files == {f"{PROJECT_DIR}/index.ts": "from database"}
        assert services.provider.create_calls[0].metadata["source"] == SOURCE_DATABASE

    @pytest.mark.asyncio
    async def test_unreachable_backup_store_falls_back_to_database(self, services, restoration):
        services.backup_store.fail_reads = True
        services.repository.seed(make_binding(sandbox_id="sb-1", code_files={"x.ts": "db"}))

        handle = await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert handle.files == {f"{PROJECT_DIR}/x.ts": "db"}

    @pytest.mark.asyncio
    async def test_exhausted_creates_nothing(self, services, restoration):
        services.repository.seed(make_binding(sandbox_id="sb-1"))

        with pytest.raises(RestorationExhaustedError) as exc_info:
            await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert services.provider.create_calls == []
        assert exc_info.value.retryable is False
        assert exc_info.value.sources == [SOURCE_BACKUP, SOURCE_DATABASE]
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-1"

    @pytest.mark.asyncio
    async def test_exhausted_for_unknown_project(self, services, restoration):
        with pytest.raises(RestorationExhaustedError):
            await restoration.restore_from_expired("missing-project", None)

        assert services.provider.create_calls == []

    @pytest.mark.asyncio
    async def test_create_metadata(self, services, restoration):
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.backup_store.seed(TEST_PROJECT_ID, {"a.ts": "a"})

        await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        metadata = services.provider.create_calls[0].metadata
        assert metadata["project_id"] == TEST_PROJECT_ID
        assert metadata["restored_from"] == "sb-1"
        assert datetime.fromisoformat(metadata["restored_at"]).tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_failure(self, services, restoration):
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.backup_store.seed(TEST_PROJECT_ID, {"a.ts": "a"})
        services.provider.create_error = SandboxTransientError("provider down")

        with pytest.raises(RestorationFailedError) as exc_info:
            await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert exc_info.value.source == SOURCE_BACKUP
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-1"

    @pytest.mark.asyncio
    async def test_write_failure_discards_new_sandbox(self, services, restoration):
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.backup_store.seed(TEST_PROJECT_ID, {"a.ts": "a"})
        services.provider.fail_writes_on_create = True

        with pytest.raises(RestorationFailedError, match="write failed"):
            await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert services.provider.kill_calls == ["sb-new-1"]
        assert services.provider.sandboxes == {}
        assert services.repository.get(TEST_PROJECT_ID).sandbox_id == "sb-1"

    @pytest.mark.asyncio
    async def test_rebind_failure_discards_new_sandbox(self, services, restoration):
        services.repository.seed(make_binding(sandbox_id="sb-1"))
        services.backup_store.seed(TEST_PROJECT_ID, {"a.ts": "a"})

        async def broken_update(*args, **kwargs):
            raise ConnectionError("database down")

        services.repository.update_sandbox = broken_update

        with pytest.raises(RestorationFailedError, match="rebind failed"):
            await restoration.restore_from_expired(TEST_PROJECT_ID, "sb-1")

        assert services.provider.kill_calls == ["sb-new-1"]


class TestRestorationStatus:
    @pytest.mark.asyncio
    async def test_status_from_backup(self, services, restoration):
        services.backup_store.seed(TEST_PROJECT_ID, {"a.ts": "a", "b.ts": "b"})

        status = await restoration.get_restoration_status(TEST_PROJECT_ID)

        assert status.can_restore is True
        assert status.source == SOURCE_BACKUP
        assert status.file_count == 2

    @pytest.mark.asyncio
    async def test_status_from_database(self, services, restoration):
        services.repository.seed(make_binding(code_files={"a.ts": "a"}))

        status = await restoration.get_restoration_status(TEST_PROJECT_ID)

        assert status.source == SOURCE_DATABASE
        assert status.file_count == 1

    @pytest.mark.asyncio
    async def test_status_none(self, restoration):
        status = await restoration.get_restoration_status(TEST_PROJECT_ID)

        assert status.can_restore is False
        assert status.source == SOURCE_NONE
        assert status.to_dict()["file_count"] == 0
        assert await restoration.validate_restoration_possible(TEST_PROJECT_ID) is False
