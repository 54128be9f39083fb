"""Tests for trigger condition matching and the trigger manager."""

import pytest

from core.constants import ConditionOperator, ErrorCode, TriggerType
from triggers.base import TriggerEvent
from triggers.manager import TriggerManager, conditions_match, lookup
from workflow.models import TriggerCondition


def cond(field, operator, value=None, logical_operator="and") -> TriggerCondition:
    return TriggerCondition(field=field, operator=operator, value=value, logical_operator=logical_operator)


def trigger(type="case_created", conditions=(), **fields) -> dict:
    return {"type": type, "conditions": [c.model_dump() for c in conditions], **fields}


@pytest.fixture
def manager(definitions, engine) -> TriggerManager:
    return TriggerManager(definitions, engine)


@pytest.mark.unit
class TestConditions:

    def test_lookup_dotted_path(self):
        payload = {"case": {"client": {"id": "c-1"}}}
        assert lookup(payload, "case.client.id") == "c-1"
        assert lookup(payload, "case.matter") is None

    @pytest.mark.parametrize(
        "operator, value, expected",
        [
            (ConditionOperator.EQUALS, "litigation", True),
            (ConditionOperator.NOT_EQUALS, "litigation", False),
            (ConditionOperator.CONTAINS, "igat", True),
            (ConditionOperator.STARTS_WITH, "lit", True),
            (ConditionOperator.ENDS_WITH, "tion", True),
            (ConditionOperator.IN, ["litigation", "tax"], True),
            (ConditionOperator.NOT_IN, ["tax"], True),
        ],
    )
    def test_string_operators(self, operator, value, expected):
        assert conditions_match([cond("practice", operator, value)], {"practice": "litigation"}) is expected

    def test_numeric_comparison_and_type_mismatch(self):
        payload = {"amount": 5000}
        assert conditions_match([cond("amount", "greater_than", 1000)], payload)
        assert not conditions_match([cond("amount", "less_than", 1000)], payload)
        assert not conditions_match([cond("amount", "greater_than", "big")], payload)
        assert not conditions_match([cond("missing", "greater_than", 1)], payload)

    def test_left_to_right_combination(self):
        payload = {"a": 1, "b": 2}
        assert conditions_match([cond("a", "equals", 9), cond("b", "equals", 2, "or")], payload)
        assert not conditions_match([cond("a", "equals", 1), cond("b", "equals", 9, "and")], payload)

    def test_no_conditions_always_match(self):
        assert conditions_match([], {})


@pytest.mark.unit
class TestTriggerManager:

    async def test_fires_matching_workflows(self, manager, create_workflow, engine, definitions):
        litigation = await create_workflow(
            triggers=[trigger(conditions=[cond("practice", "equals", "litigation")])],
        )
        await create_workflow(triggers=[trigger(conditions=[cond("practice", "equals", "tax")])])
        await create_workflow(triggers=[trigger(type="payment_received")])

        results = await manager.fire(TriggerEvent(TriggerType.CASE_CREATED, payload={"practice": "litigation"}))

        assert [(r.workflow_id, r.success) for r in results] == [(litigation.id, True)]
        execution = await engine.wait_for_execution(results[0].execution_id, timeout=5)
        assert execution.trigger_type == TriggerType.CASE_CREATED
        assert execution.trigger_data == {"practice": "litigation"}

        stored = await definitions.get(litigation.id)
        assert stored.triggers[0].trigger_count == 1
        assert stored.triggers[0].last_triggered is not None

    async def test_variable_mapping(self, manager, create_workflow, engine):
        workflow = await create_workflow(
            triggers=[trigger(config={"variable_mapping": {"client_id": "case.client.id"}})],
        )
        event = TriggerEvent(
            TriggerType.CASE_CREATED,
            payload={"case": {"client": {"id": "c-42"}}},
            variables={"source": "intake-form"},
            workflow_id=workflow.id,
        )
        [result] = await manager.fire(event)

        execution = await engine.wait_for_execution(result.execution_id, timeout=5)
        assert execution.variables == {"client_id": "c-42", "source": "intake-form"}

    async def test_inactive_triggers_and_workflows_ignored(self, manager, create_workflow):
        await create_workflow(triggers=[trigger(is_active=False)])
        await create_workflow(triggers=[trigger()], is_active=False)

        assert await manager.fire(TriggerEvent(TriggerType.CASE_CREATED)) == []

    async def test_failed_start_is_reported(self, manager, create_workflow):
        workflow = await create_workflow(
            triggers=[trigger()],
            variables=[{"name": "client_id", "required": True}],
        )
        [result] = await manager.fire(TriggerEvent(TriggerType.CASE_CREATED))

        assert result.success is False
        assert result.workflow_id == workflow.id
        assert result.error_code == ErrorCode.VALIDATION.value
        assert result.execution_id is None

    async def test_unknown_workflow_id(self, manager):
        event = TriggerEvent(TriggerType.CASE_CREATED, workflow_id="wf_missing")
        assert await manager.fire(event) == []
