from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class Project(Base):
    """
    Project record, restricted to the columns the sandbox lifecycle owns.

    ``sandbox_id`` is the single arbitration point for which remote sandbox
    belongs to the project. It is only written while holding the project lock
    and only after the matching provider call succeeded.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    sandbox_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    sandbox_paused_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_backup_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    code_files: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    environment_variables: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )  # [{key, value, is_secret}], secret values encrypted
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )
