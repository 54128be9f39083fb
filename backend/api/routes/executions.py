"""Workflow execution history and management endpoints."""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status as http_status

from api.schemas.common import PageResponse, PaginationParams
from api.schemas.execution import ApprovalRequest
from app.dependencies import get_engine
from core.constants import ExecutionStatus
from core.utils import paginate
from workflow.engine import WorkflowEngine
from workflow.models import WorkflowExecution

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["executions"])


@router.get("/", response_model=PageResponse)
async def list_executions(
    pagination: PaginationParams = Depends(),
    workflow_id: Optional[str] = Query(default=None),
    status: Optional[ExecutionStatus] = Query(default=None),
    engine: WorkflowEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    List executions, newest first, optionally for one workflow or status.
    """
    filters: Dict[str, Any] = {}
    if workflow_id:
        filters["workflow_definition_id"] = workflow_id
    if status:
        filters["status"] = status

    executions, total = await engine.list_executions(filters, pagination.offset, pagination.limit)
    return paginate(executions, total, pagination.offset, pagination.limit)


@router.get("/{execution_id}", response_model=WorkflowExecution)
async def get_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowExecution:
    return await engine.get_execution_status(execution_id)


@router.post("/{execution_id}/cancel", response_model=WorkflowExecution)
async def cancel_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowExecution:
    """
    Cancel an ACTIVE or WAITING_APPROVAL execution.
    """
    return await engine.cancel(execution_id)


@router.post(
    "/{execution_id}/retry",
    response_model=WorkflowExecution,
    status_code=http_status.HTTP_202_ACCEPTED,
)
async def retry_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowExecution:
    """
    Resume a failed execution after its last completed step.
    """
    return await engine.retry(execution_id)


@router.post("/{execution_id}/steps/{step_id}/approve", response_model=WorkflowExecution)
async def approve_step(
    execution_id: str,
    step_id: str,
    request: ApprovalRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> WorkflowExecution:
    """
    Record an approval decision on a waiting approval gate.
    """
    return await engine.approve_step(
        execution_id,
        step_id,
        approved_by=request.approved_by,
        approved=request.approved,
        comment=request.comment,
    )
