"""
SQLAlchemy implementation of ProjectSandboxRepository.

Each method opens its own session so the repository can be shared by
concurrent tasks.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domain.model.sandbox.project_sandbox import (
    EnvironmentVariable,
    ProjectSandboxBinding,
)
from src.domain.ports.repositories.project_sandbox_repository import (
    ProjectSandboxRepository,
)
from src.infrastructure.adapters.secondary.persistence.models import Project

logger = logging.getLogger(__name__)


class SqlProjectSandboxRepository(ProjectSandboxRepository):
    """SQLAlchemy implementation of ProjectSandboxRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _to_domain(self, orm: Project) -> ProjectSandboxBinding:
        """Convert ORM model to domain entity."""
        return ProjectSandboxBinding(
            project_id=orm.id,
            sandbox_id=orm.sandbox_id,
            sandbox_paused_at=orm.sandbox_paused_at,
            last_backup_at=orm.last_backup_at,
            code_files=dict(orm.code_files or {}),
            environment_variables=[
                EnvironmentVariable.from_dict(v) for v in (orm.environment_variables or [])
            ],
            created_at=orm.created_at,
            updated_at=orm.updated_at,
        )

    def _apply(self, orm: Project, domain: ProjectSandboxBinding) -> None:
        orm.sandbox_id = domain.sandbox_id
        orm.sandbox_paused_at = domain.sandbox_paused_at
        orm.last_backup_at = domain.last_backup_at
        orm.code_files = dict(domain.code_files)
        orm.environment_variables = [v.to_dict() for v in domain.environment_variables]

    async def find_by_project(self, project_id: str) -> Optional[ProjectSandboxBinding]:
        async with self._session_factory() as session:
            orm = await session.get(Project, project_id)
            return self._to_domain(orm) if orm else None

    async def save(self, binding: ProjectSandboxBinding) -> None:
        async with self._session_factory() as session:
            existing = await session.get(Project, binding.project_id)
            if existing is None:
                existing = Project(id=binding.project_id, created_at=binding.created_at)
                session.add(existing)
            self._apply(existing, binding)
            await session.commit()

    async def _update(self, project_id: str, **values) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Project).where(Project.id == project_id).values(**values)
            )
            await session.commit()
        if result.rowcount == 0:
            logger.warning(f"Update of project {project_id} matched no row: {sorted(values)}")

    async def update_sandbox(
        self,
        project_id: str,
        sandbox_id: Optional[str],
        sandbox_paused_at: Optional[datetime],
    ) -> None:
        await self._update(project_id, sandbox_id=sandbox_id, sandbox_paused_at=sandbox_paused_at)

    async def update_paused_at(self, project_id: str, paused_at: Optional[datetime]) -> None:
        await self._update(project_id, sandbox_paused_at=paused_at)

    async def update_last_backup_at(self, project_id: str, backed_up_at: datetime) -> None:
        await self._update(project_id, last_backup_at=backed_up_at)
