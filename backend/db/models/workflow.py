"""Workflow definition record."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class WorkflowDefinitionRecord(Base):
    """Stored workflow definition.

    The full definition lives in ``document``; the other columns are
    indexed copies of the fields definitions are listed by.

    Attributes:
        id: Definition id (``wf_...``)
        name: Workflow name
        type: Workflow type
        category: Free-form category
        is_active: Whether new executions may start
        created_by: Author id
        revision: Optimistic-lock version, incremented by the application
        document: WorkflowDefinition as JSON
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    __tablename__ = "workflow_definitions"

    id: Mapped[str] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    type: Mapped[str] = mapped_column(nullable=False, index=True)
    category: Mapped[str] = mapped_column(nullable=False, default="general", index=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    created_by: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    revision: Mapped[int] = mapped_column(nullable=False, default=0)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": revision, "version_id_generator": False}

    def __repr__(self) -> str:
        return f"<WorkflowDefinitionRecord(id={self.id}, name={self.name}, revision={self.revision})>"
