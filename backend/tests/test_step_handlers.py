"""Tests for step handlers, the task registry and the step dispatcher."""

import asyncio

import httpx
import pytest

from app.config import Settings
from conftest import FakeApiClient, FakeNotifier, HangingTask
from core.constants import ActionType, ErrorCode, StepType
from core.exceptions import StepExecutionError, StepTimeoutError
from tasks.capabilities import Capabilities
from tasks.implementations.control_task import CustomActionTask, DelayTask
from tasks.implementations.http_task import HttpxApiClient, validate_url_safety
from tasks.registry import TaskRegistry
from workflow.dispatcher import StepDispatcher
from workflow.models import WorkflowExecution, WorkflowStep
from workflow.step_configs import parse_step_config


def _execution(**variables) -> WorkflowExecution:
    return WorkflowExecution(
        id="exec_test",
        workflow_definition_id="wf_test",
        workflow_name="Test",
        workflow_version="1.0.0",
        variables=variables,
    )


def _step(type: str, config: dict = None, **fields) -> WorkflowStep:
    return WorkflowStep(id="s1", name="Step One", type=type, config=config or {}, **fields)


@pytest.fixture
def dispatcher(registry, capabilities, settings) -> StepDispatcher:
    return StepDispatcher(registry, capabilities, settings)


# ─── Registry ───

@pytest.mark.unit
class TestTaskRegistry:

    def test_builtin_types_registered(self):
        registry = TaskRegistry()
        for step_type in ("start", "end", "document_generation", "email_notification", "approval_gate",
                          "conditional_branch", "api_call", "delay", "task_assignment", "data_validation"):
            assert registry.has_handler(step_type)

    def test_unregistered_type_falls_back_to_custom(self):
        registry = TaskRegistry()
        assert not registry.has_handler(StepType.CALENDAR_EVENT)
        assert registry.get(StepType.CALENDAR_EVENT) is CustomActionTask

    def test_register_replaces_handler(self):
        registry = TaskRegistry()
        registry.register("calendar_event", DelayTask)
        assert isinstance(registry.create_instance(StepType.CALENDAR_EVENT), DelayTask)

    def test_list_all_includes_config_schema(self):
        entry = next(e for e in TaskRegistry().list_all() if e["task_type"] == "delay")
        assert "delayMinutes" in entry["config_schema"]["properties"]


# ─── Dispatcher ───

@pytest.mark.unit
class TestDispatcher:

    async def test_templates_resolved_before_handler(self, dispatcher, notifier):
        step = _step(
            "email_notification",
            {"recipients": "{{emails}}", "subject": "Welcome", "message": "Hello {{name}}", "outputVariable": "mail"},
        )
        result = await dispatcher.dispatch(_execution(emails=["a@x.com", "b@x.com"], name="Ada"), step)

        assert notifier.sent == [{
            "channel": "email",
            "recipients": ["a@x.com", "b@x.com"],
            "subject": "Welcome",
            "message": "Hello Ada",
        }]
        assert result.metrics == {"notifications_sent": 2}
        assert result.variables["mail"]["message"] == "Hello Ada"

    async def test_invalid_resolved_config_is_not_retryable(self, dispatcher):
        step = _step("delay", {"delayMinutes": "{{minutes}}"})
        with pytest.raises(StepExecutionError) as exc_info:
            await dispatcher.dispatch(_execution(minutes="soon"), step)
        assert exc_info.value.code == ErrorCode.VALIDATION.value
        assert exc_info.value.retryable is False

    async def test_missing_capability(self, registry, settings):
        dispatcher = StepDispatcher(registry, Capabilities(), settings)
        step = _step("sms_notification", {"recipients": ["+15550100"], "message": "hi"})
        with pytest.raises(StepExecutionError) as exc_info:
            await dispatcher.dispatch(_execution(), step)
        assert exc_info.value.code == ErrorCode.CAPABILITY_NOT_CONFIGURED.value
        assert exc_info.value.retryable is False

    async def test_step_timeout(self, dispatcher):
        step = _step("file_transfer", timeout_seconds=0.05)
        with pytest.raises(StepTimeoutError) as exc_info:
            await dispatcher.dispatch(_execution(), step)
        assert exc_info.value.code == ErrorCode.TIMEOUT.value
        assert exc_info.value.retryable is True

    async def test_cancel_event_reaches_handler(self, dispatcher):
        event = asyncio.Event()
        event.set()
        result = await dispatcher.dispatch(_execution(), _step("file_transfer"), event)
        assert result.output == {"cancelled": True}
        assert HangingTask.task_type == StepType.FILE_TRANSFER.value

    async def test_timeout_defaults_to_settings(self, dispatcher, settings):
        assert dispatcher.timeout_for(_step("delay", {"delayMinutes": 1})) == settings.DEFAULT_STEP_TIMEOUT_SECONDS

    def test_declared_wait_extends_timeout(self, registry, capabilities):
        settings = Settings(ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=60, DEFAULT_STEP_TIMEOUT_SECONDS=300)
        dispatcher = StepDispatcher(registry, capabilities, settings)

        delay = _step("delay", {"delayMinutes": 10})
        assert dispatcher.timeout_for(delay, parse_step_config("delay", delay.config)) == 900

        gate = _step("approval_gate", {"approvers": ["partner"], "approvalType": "single", "autoApproveAfter": 30})
        assert dispatcher.timeout_for(gate, parse_step_config("approval_gate", gate.config)) == 2100

        manual = _step("approval_gate", {"approvers": ["partner"], "approvalType": "single"})
        assert dispatcher.timeout_for(manual, parse_step_config("approval_gate", manual.config)) == 300

    async def test_delay_longer_than_step_timeout_completes(self, registry, capabilities):
        settings = Settings(ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=0.2, DEFAULT_STEP_TIMEOUT_SECONDS=0.1)
        dispatcher = StepDispatcher(registry, capabilities, settings)

        result = await dispatcher.dispatch(_execution(), _step("delay", {"delayMinutes": 1}))
        assert result.output["actual_delay_seconds"] == pytest.approx(0.2)
        assert result.output["cancelled"] is False


# ─── Handlers ───

@pytest.mark.unit
class TestControlHandlers:

    async def test_approval_gate_waits_without_auto_approve(self, dispatcher):
        step = _step("approval_gate", {"approvers": ["partner"], "approvalType": "single"})
        result = await dispatcher.dispatch(_execution(), step)
        assert result.waiting is True
        assert result.output["status"] == "pending_approval"

    async def test_approval_gate_auto_approves(self, dispatcher):
        step = _step("approval_gate", {"approvers": ["partner"], "approvalType": "single", "autoApproveAfter": 5})
        result = await dispatcher.dispatch(_execution(), step)
        assert result.waiting is False
        assert result.output["status"] == "auto_approved"
        assert result.output["approved_by"] == "system"

    async def test_conditional_branch_emits_actions(self, dispatcher):
        step = _step(
            "conditional_branch",
            conditions=[
                {"expression": "amount > 1000", "on_true": [{"type": "goto", "target": "review"}],
                 "on_false": [{"type": "skip", "target": "review"}]},
                {"type": "unless", "expression": "vip", "on_true": [{"type": "notify", "message": "not vip"}]},
            ],
        )
        result = await dispatcher.dispatch(_execution(amount=50, vip=False), step)
        assert [a.type for a in result.actions] == [ActionType.SKIP, ActionType.NOTIFY]
        assert result.output["condition_met"] is True
        assert [r["result"] for r in result.output["results"]] == [False, True]

    async def test_conditional_branch_bad_expression(self, dispatcher):
        step = _step("conditional_branch", conditions=[{"expression": "name > 3", "on_true": [{"type": "stop"}]}])
        with pytest.raises(StepExecutionError) as exc_info:
            await dispatcher.dispatch(_execution(name="x"), step)
        assert exc_info.value.code == ErrorCode.EXPRESSION_ERROR.value

    async def test_data_validation_fails_on_empty_values(self, dispatcher):
        with pytest.raises(StepExecutionError) as exc_info:
            await dispatcher.dispatch(_execution(client="Ada", email="", phone=None), _step("data_validation"))
        assert exc_info.value.code == ErrorCode.DATA_VALIDATION_FAILED.value
        results = exc_info.value.details["output"]["validation_results"]
        assert [r["field"] for r in results if not r["is_valid"]] == ["email", "phone"]

    async def test_data_validation_restricted_to_required(self, dispatcher):
        step = _step("data_validation", {"requiredVariables": ["client"]})
        result = await dispatcher.dispatch(_execution(client="Ada", email=""), step)
        assert result.output["is_valid"] is True

    async def test_delay_with_zero_time_scale(self, dispatcher):
        result = await dispatcher.dispatch(_execution(), _step("delay", {"delayMinutes": 10}))
        assert result.output == {"delay_minutes": 10, "actual_delay_seconds": 0.0, "cancelled": False}

    async def test_custom_fallback(self, dispatcher):
        result = await dispatcher.dispatch(_execution(), _step("calendar_event", {"title": "{{t}}"}))
        assert result.output["step_type"] == "calendar_event"
        assert result.output["config"] == {"title": "{{t}}"}


@pytest.mark.unit
class TestCapabilityHandlers:

    async def test_document_generation(self, dispatcher, documents):
        step = _step("document_generation", {"templateId": "nda", "outputFormat": ["PDF"], "data": {"extra": 1}})
        result = await dispatcher.dispatch(_execution(client="Ada"), step)
        assert result.output["document_id"] == "doc-1"
        assert documents.rendered[0]["data"] == {"client": "Ada", "extra": 1}
        assert result.metrics == {"documents_generated": 1}

    async def test_task_assignment_uses_step_assignees(self, dispatcher, assigner):
        step = _step("task_assignment", {"title": "Review intake"}, assigned_roles=["paralegal"])
        result = await dispatcher.dispatch(_execution(), step)
        assert result.output["task_id"] == "task-1"
        assert assigner.assigned[0]["roles"] == ["paralegal"]
        assert assigner.assigned[0]["metadata"]["execution_id"] == "exec_test"

    async def test_api_call(self, dispatcher, api_client):
        step = _step("api_call", {"endpoint": "https://crm.example.com/clients/{{id}}", "method": "get"})
        result = await dispatcher.dispatch(_execution(id=7), step)
        assert api_client.calls[0]["endpoint"] == "https://crm.example.com/clients/7"
        assert result.output["method"] == "GET"
        assert result.metrics == {"api_calls_made": 1}

    async def test_api_call_rejects_unknown_method(self, dispatcher):
        step = _step("api_call", {"endpoint": "https://crm.example.com", "method": "TRACE"})
        with pytest.raises(StepExecutionError) as exc_info:
            await dispatcher.dispatch(_execution(), step)
        assert exc_info.value.retryable is False


# ─── HTTP client ───

@pytest.mark.unit
class TestHttpxApiClient:

    def test_url_safety(self):
        validate_url_safety("https://api.example.com/v1")
        for url in ("ftp://example.com", "http://localhost:8000", "http://10.0.0.5/x", "http:///nohost"):
            with pytest.raises(ValueError):
                validate_url_safety(url)
        validate_url_safety("http://localhost:8000", allow_private=True)

    async def test_json_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            return httpx.Response(201, json={"id": 42})

        client = HttpxApiClient(transport=httpx.MockTransport(handler))
        response = await client.request("post", "https://api.example.com/items", payload={"name": "x"})
        assert response["status_code"] == 201
        assert response["body"] == {"id": 42}

    async def test_server_error_is_retryable(self):
        client = HttpxApiClient(transport=httpx.MockTransport(lambda r: httpx.Response(503, text="down")))
        with pytest.raises(StepExecutionError) as exc_info:
            await client.request("GET", "https://api.example.com/items")
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"status_code": 503}

    async def test_client_error_is_not_retryable(self):
        client = HttpxApiClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        with pytest.raises(StepExecutionError) as exc_info:
            await client.request("GET", "https://api.example.com/missing")
        assert exc_info.value.retryable is False

    async def test_private_host_blocked(self):
        client = HttpxApiClient()
        with pytest.raises(StepExecutionError) as exc_info:
            await client.request("GET", "http://127.0.0.1/admin")
        assert exc_info.value.code == ErrorCode.INTEGRATION_ERROR.value


def test_fakes_satisfy_protocols():
    from tasks.capabilities import ApiClient, Notifier

    assert isinstance(FakeNotifier(), Notifier)
    assert isinstance(FakeApiClient(), ApiClient)
