"""Workflow execution record."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class WorkflowExecutionRecord(Base):
    """Stored workflow execution.

    Attributes:
        id: Execution id (``exec_...``)
        workflow_definition_id: Definition this execution runs
        status: Execution status
        trigger_type: What started the execution
        start_time: Start timestamp
        end_time: Terminal timestamp
        revision: Optimistic-lock version, incremented by the application
        document: WorkflowExecution as JSON
        created_at: Creation timestamp
    """

    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(primary_key=True)
    workflow_definition_id: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(nullable=False, index=True)
    trigger_type: Mapped[str] = mapped_column(nullable=False, index=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revision: Mapped[int] = mapped_column(nullable=False, default=0)
    document: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    __mapper_args__ = {"version_id_col": revision, "version_id_generator": False}

    def __repr__(self) -> str:
        return f"<WorkflowExecutionRecord(id={self.id}, status={self.status}, revision={self.revision})>"
