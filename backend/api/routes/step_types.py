"""Step type catalogue.

Lists the step types the engine can dispatch, with the JSON schema of
each type's ``config`` payload, for definition editors.
"""

from fastapi import APIRouter, Depends

from app.dependencies import get_engine
from core.constants import StepType, UNSUPPORTED_STEP_TYPES
from core.exceptions import NotFoundError
from workflow.engine import WorkflowEngine

router = APIRouter()


@router.get("/", summary="List step types with a dedicated handler")
async def list_step_types(engine: WorkflowEngine = Depends(get_engine)):
    step_types = engine.task_registry.list_all()
    return {"step_types": step_types, "count": len(step_types)}


@router.get("/{step_type}", summary="Get one step type's handler and config schema")
async def get_step_type(step_type: str, engine: WorkflowEngine = Depends(get_engine)):
    """Types without a dedicated handler describe the custom-action fallback."""
    try:
        resolved = StepType(step_type)
    except ValueError:
        raise NotFoundError(f"Unknown step type: {step_type}")
    if resolved in UNSUPPORTED_STEP_TYPES:
        raise NotFoundError(f"Step type '{step_type}' is not supported")
    return engine.task_registry.describe(resolved)
