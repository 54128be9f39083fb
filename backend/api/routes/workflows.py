"""Workflow definition endpoints — list, create, get, update, delete, execute."""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query, status

from api.schemas.common import MessageResponse, PageResponse, PaginationParams
from api.schemas.workflow import ExecuteRequest, WorkflowUpdate
from app.dependencies import get_engine, get_workflow_service
from core.constants import WorkflowStatus, WorkflowType
from core.utils import paginate
from services.workflow_service import WorkflowService
from workflow.engine import WorkflowEngine
from workflow.models import ExecuteWorkflowRequest, ExecuteWorkflowResponse, WorkflowDefinition

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["workflows"])


@router.get("/", response_model=PageResponse)
async def list_workflows(
    pagination: PaginationParams = Depends(),
    type: Optional[WorkflowType] = Query(default=None),
    workflow_status: Optional[WorkflowStatus] = Query(default=None, alias="status"),
    category: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    created_by: Optional[str] = Query(default=None),
    svc: WorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    """
    List workflow definitions, newest first.
    """
    workflows, total = await svc.list_workflows(
        type=type,
        status=workflow_status,
        category=category,
        is_active=is_active,
        created_by=created_by,
        limit=pagination.limit,
        offset=pagination.offset,
    )
    return paginate(workflows, total, pagination.offset, pagination.limit)


@router.post("/", response_model=WorkflowDefinition, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    payload: Dict[str, Any] = Body(...),
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowDefinition:
    """
    Validate and store a new workflow definition.

    The body is the full definition; ``id``, ``usage_count`` and the
    timestamps are assigned by the server.
    """
    return await svc.create(payload)


@router.get("/{workflow_id}", response_model=WorkflowDefinition)
async def get_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowDefinition:
    return await svc.get(workflow_id)


@router.put("/{workflow_id}", response_model=WorkflowDefinition)
async def update_workflow(
    workflow_id: str,
    request: WorkflowUpdate,
    svc: WorkflowService = Depends(get_workflow_service),
) -> WorkflowDefinition:
    """
    Replace top-level fields of a definition and re-validate it.
    """
    return await svc.update(workflow_id, request.changes, request.expected_revision)


@router.delete("/{workflow_id}", response_model=MessageResponse)
async def delete_workflow(
    workflow_id: str,
    svc: WorkflowService = Depends(get_workflow_service),
) -> MessageResponse:
    """
    Delete a definition. Refused while any of its executions is still running.
    """
    await svc.delete(workflow_id)
    return MessageResponse(message=f"Workflow {workflow_id} deleted")


@router.post(
    "/{workflow_id}/execute",
    response_model=ExecuteWorkflowResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> ExecuteWorkflowResponse:
    """
    Start an execution of a stored workflow.
    """
    return await engine.execute(
        ExecuteWorkflowRequest(
            workflow_id=workflow_id,
            variables=request.variables,
            trigger_data=request.trigger_data,
            priority=request.priority,
            context=request.context,
        ),
        wait=request.wait,
    )
