"""Trigger event intake.

External sources post observed events here; each matching workflow
trigger starts an execution.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.dependencies import get_trigger_manager
from core.constants import TriggerType
from triggers.base import TriggerEvent
from triggers.manager import TriggerManager
from workflow.models import ExecutionContext

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["triggers"])


class TriggerEventRequest(BaseModel):
    trigger_type: TriggerType
    payload: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    workflow_id: Optional[str] = Field(default=None, description="Restrict the event to one workflow")
    correlation_id: Optional[str] = None


class TriggerResultResponse(BaseModel):
    success: bool
    message: str
    workflow_id: str
    trigger_id: Optional[str] = None
    execution_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@router.get("/types", summary="List supported trigger types")
async def list_trigger_types() -> List[str]:
    return [t.value for t in TriggerType]


@router.post("/events", response_model=List[TriggerResultResponse], summary="Fire a trigger event")
async def fire_event(
    request: TriggerEventRequest,
    manager: TriggerManager = Depends(get_trigger_manager),
) -> List[Dict[str, Any]]:
    """
    Start every workflow whose active trigger matches the event.

    An empty list means no trigger matched.
    """
    event = TriggerEvent(
        trigger_type=request.trigger_type,
        payload=request.payload,
        variables=request.variables,
        context=request.context,
        workflow_id=request.workflow_id,
        correlation_id=request.correlation_id,
    )
    results = await manager.fire(event)
    return [asdict(result) for result in results]
