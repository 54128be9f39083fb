"""Tests for the structlog setup and execution log context."""

import json
import logging

import pytest
import structlog

from app.config import Settings
from core.logging_config import execution_log_context, setup_logging
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.models import ExecuteWorkflowRequest


class ContextCaptureTask(BaseTask):
    task_type = "custom_action"
    display_name = "Context capture"
    seen: list = []

    async def execute(self, ctx: StepContext) -> TaskResult:
        type(self).seen.append(structlog.contextvars.get_contextvars())
        return TaskResult(success=True)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


@pytest.mark.unit
class TestSetup:

    def test_json_lines_carry_service(self, capsys, restore_logging):
        setup_logging(Settings(ENVIRONMENT="production", LOG_FORMAT="json", APP_NAME="engine-test"))
        structlog.get_logger("engine.test").info("sample_event", step_id="a")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "sample_event"
        assert record["step_id"] == "a"
        assert record["service"] == "engine-test"
        assert record["env"] == "production"
        assert record["level"] == "info"

    def test_library_loggers_quietened(self, restore_logging):
        setup_logging(Settings(LOG_LEVEL="DEBUG"))
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING


@pytest.mark.unit
class TestExecutionContext:

    def test_binds_and_unbinds(self):
        with execution_log_context("exec_1", "wf_1"):
            assert structlog.contextvars.get_contextvars() == {"execution_id": "exec_1", "workflow_id": "wf_1"}
        assert "execution_id" not in structlog.contextvars.get_contextvars()

    async def test_handlers_log_under_the_execution_id(self, engine, registry, create_workflow):
        ContextCaptureTask.seen = []
        registry.register("custom_action", ContextCaptureTask)
        workflow = await create_workflow()

        response = await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id), wait=True)

        assert ContextCaptureTask.seen == [{"execution_id": response.execution_id}]
