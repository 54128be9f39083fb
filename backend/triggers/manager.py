"""Trigger Manager — routes observed events to workflow executions.

For each event the manager looks for active definitions declaring an
active trigger of the same type whose conditions hold against the event
payload, and starts one execution per matching definition.
"""

from typing import Any, Optional

import structlog

from core.constants import ConditionOperator, LogicalOperator
from core.exceptions import WorkflowEngineError
from services.repository import Repository, update_with_retry
from triggers.base import TriggerEvent, TriggerResult
from workflow.engine import WorkflowEngine
from workflow.models import ExecuteWorkflowRequest, TriggerCondition, WorkflowDefinition, WorkflowTrigger

logger = structlog.get_logger(__name__)


def lookup(payload: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path (``case.client.id``) in the payload; None if absent."""
    current: Any = payload
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def _compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    try:
        if operator == ConditionOperator.EQUALS:
            return actual == expected
        if operator == ConditionOperator.NOT_EQUALS:
            return actual != expected
        if operator == ConditionOperator.CONTAINS:
            return actual is not None and expected in actual
        if operator == ConditionOperator.STARTS_WITH:
            return isinstance(actual, str) and actual.startswith(str(expected))
        if operator == ConditionOperator.ENDS_WITH:
            return isinstance(actual, str) and actual.endswith(str(expected))
        if operator == ConditionOperator.GREATER_THAN:
            return actual is not None and actual > expected
        if operator == ConditionOperator.LESS_THAN:
            return actual is not None and actual < expected
        if operator == ConditionOperator.IN:
            return actual in (expected or [])
        if operator == ConditionOperator.NOT_IN:
            return actual not in (expected or [])
    except TypeError:
        return False
    return False


def conditions_match(conditions: list[TriggerCondition], payload: dict[str, Any]) -> bool:
    """Evaluate conditions left to right.

    Each condition's ``logical_operator`` joins it to the result so far;
    the first condition's operator is ignored. No conditions always match.
    """
    result: Optional[bool] = None
    for condition in conditions:
        value = _compare(condition.operator, lookup(payload, condition.field), condition.value)
        if result is None:
            result = value
        elif condition.logical_operator == LogicalOperator.OR:
            result = result or value
        else:
            result = result and value
    return True if result is None else result


class TriggerManager:
    """Central router from trigger events to the workflow engine."""

    def __init__(self, definitions: Repository[WorkflowDefinition], engine: WorkflowEngine):
        self._definitions = definitions
        self._engine = engine

    def find_trigger(self, definition: WorkflowDefinition, event: TriggerEvent) -> Optional[WorkflowTrigger]:
        for trigger in definition.triggers:
            if (
                trigger.is_active
                and trigger.type == event.trigger_type
                and conditions_match(trigger.conditions, event.payload)
            ):
                return trigger
        return None

    async def fire(self, event: TriggerEvent) -> list[TriggerResult]:
        """Start an execution for every definition the event matches.

        Failures to start one workflow are reported in its result and do
        not stop the others.
        """
        if event.workflow_id:
            definition = await self._definitions.get(event.workflow_id)
            candidates = [definition] if definition is not None and definition.is_active else []
        else:
            candidates, _ = await self._definitions.list({"is_active": True})

        results = []
        for definition in candidates:
            trigger = self.find_trigger(definition, event)
            if trigger is None:
                continue
            results.append(await self._start(definition, trigger, event))

        logger.info(
            "trigger_event_processed",
            trigger_type=event.trigger_type.value,
            correlation_id=event.correlation_id,
            matched=len(results),
            started=sum(1 for r in results if r.success),
        )
        return results

    async def _start(
        self,
        definition: WorkflowDefinition,
        trigger: WorkflowTrigger,
        event: TriggerEvent,
    ) -> TriggerResult:
        # Trigger config may map payload fields onto workflow variables
        mapping = trigger.config.get("variable_mapping", {})
        variables = {name: lookup(event.payload, path) for name, path in mapping.items()}
        variables.update(event.variables)

        request = ExecuteWorkflowRequest(
            workflow_id=definition.id,
            trigger_type=event.trigger_type,
            trigger_data=event.payload,
            variables=variables,
            context=event.context,
        )
        try:
            response = await self._engine.execute(request)
        except WorkflowEngineError as e:
            logger.warning(
                "trigger_execution_failed",
                workflow_id=definition.id,
                trigger_id=trigger.id,
                code=e.code,
                error=e.message,
            )
            return TriggerResult(
                success=False,
                message=f"Workflow execution failed: {e.message}",
                workflow_id=definition.id,
                trigger_id=trigger.id,
                error=e.message,
                error_code=e.code,
            )

        def bump(stored: WorkflowDefinition) -> None:
            for candidate in stored.triggers:
                if candidate.id == trigger.id:
                    candidate.trigger_count += 1
                    candidate.last_triggered = event.timestamp

        try:
            await update_with_retry(self._definitions, definition.id, bump)
        except WorkflowEngineError as e:
            logger.warning("trigger_stats_update_failed", workflow_id=definition.id, error=e.message)

        logger.info(
            "trigger_fired",
            workflow_id=definition.id,
            trigger_id=trigger.id,
            execution_id=response.execution_id,
        )
        return TriggerResult(
            success=True,
            message="Trigger fired successfully",
            workflow_id=definition.id,
            trigger_id=trigger.id,
            execution_id=response.execution_id,
        )
