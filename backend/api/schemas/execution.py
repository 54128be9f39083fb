"""Execution schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class ApprovalRequest(BaseModel):
    """Decision on an approval gate."""

    approved_by: str = Field(min_length=1, description="Approver recording the decision")
    approved: bool = Field(default=True, description="False rejects the gate and fails the execution")
    comment: Optional[str] = Field(default=None, description="Free-text note kept with the decision")
