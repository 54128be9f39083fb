"""Workflow service — definition CRUD with validation and the deletion guard."""

from typing import Any, Optional

import structlog

from core.constants import WorkflowStatus, WorkflowType
from core.exceptions import ConcurrencyError, ConflictError, NotFoundError
from core.utils import generate_id, utc_now
from services.repository import Repository
from workflow.engine import WorkflowEngine
from workflow.models import WorkflowDefinition
from workflow.validator import ensure_valid, parse_definition

logger = structlog.get_logger(__name__)

# Set by the service, never taken from a caller's payload
MANAGED_FIELDS = ("id", "usage_count", "last_used", "created_at", "updated_at", "revision")


class WorkflowService:
    """Service for workflow definition management.

    Every create and update validates the complete definition before
    anything is written, so a rejected payload never leaves a partial record.
    """

    def __init__(self, definitions: Repository[WorkflowDefinition], engine: WorkflowEngine):
        self._definitions = definitions
        self._engine = engine

    async def create(self, payload: dict[str, Any], created_by: Optional[str] = None) -> WorkflowDefinition:
        """Validate and store a new definition.

        Raises:
            ValidationError: schema or structural problems
            ConflictError: duplicate step ids
        """
        data = {k: v for k, v in payload.items() if k not in MANAGED_FIELDS}
        definition = parse_definition(data)

        now = utc_now()
        definition.id = generate_id("wf")
        definition.usage_count = 0
        definition.last_used = None
        definition.created_at = now
        definition.updated_at = now
        definition.revision = 0
        if created_by:
            definition.created_by = created_by

        ensure_valid(definition)
        stored = await self._definitions.create(definition)
        logger.info("workflow_created", workflow_id=stored.id, name=stored.name, steps=len(stored.steps))
        return stored

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self._definitions.get(workflow_id)
        if definition is None:
            raise NotFoundError(f"Workflow '{workflow_id}' not found")
        return definition

    async def update(
        self,
        workflow_id: str,
        changes: dict[str, Any],
        expected_revision: Optional[int] = None,
    ) -> WorkflowDefinition:
        """Merge ``changes`` into the stored definition and re-validate the whole.

        Raises:
            NotFoundError: definition does not exist
            ConcurrencyError: ``expected_revision`` is stale
            ValidationError / ConflictError: the merged definition is invalid
        """
        current = await self.get(workflow_id)
        if expected_revision is not None and expected_revision != current.revision:
            raise ConcurrencyError(
                f"Workflow '{workflow_id}' is at revision {current.revision}, not {expected_revision}"
            )

        merged = current.model_dump(mode="json")
        merged.update({k: v for k, v in changes.items() if k not in MANAGED_FIELDS})
        definition = parse_definition(merged)
        definition.id = current.id
        definition.usage_count = current.usage_count
        definition.last_used = current.last_used
        definition.created_at = current.created_at
        definition.updated_at = utc_now()
        definition.revision = current.revision

        ensure_valid(definition)
        stored = await self._definitions.update(definition)
        logger.info("workflow_updated", workflow_id=workflow_id, revision=stored.revision, fields=sorted(changes))
        return stored

    async def delete(self, workflow_id: str) -> None:
        """Delete a definition that has no ACTIVE or WAITING_APPROVAL executions.

        Raises:
            NotFoundError: definition does not exist
            ConflictError: executions referencing it are still running
        """
        async with self._engine.definition_lock(workflow_id):
            await self.get(workflow_id)
            active = await self._engine.count_active_executions(workflow_id)
            if active:
                raise ConflictError(f"Workflow '{workflow_id}' has {active} active execution(s)")
            await self._definitions.delete(workflow_id)
        logger.info("workflow_deleted", workflow_id=workflow_id)

    async def list_workflows(
        self,
        type: Optional[WorkflowType] = None,
        status: Optional[WorkflowStatus] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        created_by: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[WorkflowDefinition], int]:
        """List definitions with filters; newest first.

        ``status`` ACTIVE/INACTIVE is another spelling of ``is_active``; if
        both are given and disagree nothing matches.
        """
        filters: dict[str, Any] = {}
        if type is not None:
            filters["type"] = type
        if category is not None:
            filters["category"] = category
        if created_by is not None:
            filters["created_by"] = created_by
        if status is not None:
            wanted = status == WorkflowStatus.ACTIVE
            if is_active is not None and is_active != wanted:
                return [], 0
            is_active = wanted
        if is_active is not None:
            filters["is_active"] = is_active

        return await self._definitions.list(filters, offset, limit)
