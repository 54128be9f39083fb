"""Workflow definition schemas."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from core.constants import WorkflowPriority
from workflow.models import ExecutionContext


class WorkflowUpdate(BaseModel):
    """Request to update a workflow definition."""

    changes: Dict[str, Any] = Field(description="Top-level definition fields to replace")
    expected_revision: Optional[int] = Field(
        default=None, ge=0, description="Revision the caller last read; stale revisions are rejected"
    )


class ExecuteRequest(BaseModel):
    """Request to start an execution of a stored workflow."""

    variables: Dict[str, Any] = Field(default_factory=dict, description="Initial workflow variables")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Payload of the starting event")
    priority: Optional[WorkflowPriority] = Field(default=None, description="Overrides the workflow's priority")
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    wait: bool = Field(default=False, description="Block until the drive loop halts")
