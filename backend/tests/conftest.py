"""Shared pytest fixtures for the Workflow Automation Engine test suite.

Provides:
- In-memory repositories (and an aiosqlite-backed SQL store)
- Recording fakes for every injected capability
- A definition factory for START -> ... -> END workflows
- Engine, services and a FastAPI test client (httpx.AsyncClient)
"""

import os
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("TIME_SCALE_SECONDS_PER_MINUTE", "0")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from core.constants import ErrorCode, StepType  # noqa: E402
from core.exceptions import StepExecutionError  # noqa: E402
from services.repository import InMemoryRepository  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from tasks.base_task import BaseTask, StepContext, TaskResult  # noqa: E402
from tasks.capabilities import Capabilities  # noqa: E402
from tasks.registry import TaskRegistry  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.models import WorkflowDefinition, WorkflowExecution  # noqa: E402


# ---------------------------------------------------------------------------
# Capability fakes
# ---------------------------------------------------------------------------

class FakeDocuments:
    def __init__(self):
        self.rendered: list[dict] = []

    async def render(self, template_id, output_formats, data, document_name=None):
        self.rendered.append({"template_id": template_id, "formats": output_formats, "data": data})
        return {"document_id": f"doc-{len(self.rendered)}", "document_name": document_name}


class FakeNotifier:
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, channel, recipients, subject, message):
        self.sent.append({"channel": channel, "recipients": recipients, "subject": subject, "message": message})
        return {"message_id": f"msg-{len(self.sent)}"}


class FakeApiClient:
    def __init__(self, response: Optional[dict] = None):
        self.calls: list[dict] = []
        self.response = response or {"status_code": 200, "body": {"ok": True}}

    async def request(self, method, endpoint, headers=None, payload=None):
        self.calls.append({"method": method, "endpoint": endpoint, "headers": headers, "payload": payload})
        return self.response


class FakeAssigner:
    def __init__(self):
        self.assigned: list[dict] = []

    async def assign(self, assigned_to, assigned_roles, title, description=None, due_in_days=None, metadata=None):
        self.assigned.append({"to": assigned_to, "roles": assigned_roles, "title": title, "metadata": metadata})
        return {"task_id": f"task-{len(self.assigned)}"}


# ---------------------------------------------------------------------------
# Test handlers
# ---------------------------------------------------------------------------

class FailingTask(BaseTask):
    """Always fails; retryable unless the step config says otherwise."""

    task_type = StepType.SCRIPT_EXECUTION.value
    display_name = "Failing"

    async def execute(self, ctx: StepContext) -> TaskResult:
        raise StepExecutionError(
            "boom",
            code=ErrorCode.EXECUTION_ERROR.value,
            retryable=ctx.step.config.get("retryable", True),
        )


class FlakyTask(BaseTask):
    """Fails the first ``fail_times`` calls (counted per class), then succeeds."""

    task_type = StepType.DATABASE_QUERY.value
    display_name = "Flaky"
    calls = 0

    async def execute(self, ctx: StepContext) -> TaskResult:
        type(self).calls += 1
        if type(self).calls <= ctx.step.config.get("fail_times", 1):
            raise StepExecutionError("transient", retryable=True)
        return TaskResult(success=True, output={"calls": type(self).calls})


class HangingTask(BaseTask):
    """Sleeps far longer than any test step timeout."""

    task_type = StepType.FILE_TRANSFER.value
    display_name = "Hanging"

    async def execute(self, ctx: StepContext) -> TaskResult:
        await ctx.sleep(3600)
        return TaskResult(success=True, output={"cancelled": ctx.cancelled})


# ---------------------------------------------------------------------------
# Definition factory
# ---------------------------------------------------------------------------

def step(step_id: str, type: str = "custom_action", **fields: Any) -> dict:
    return {"id": step_id, "name": step_id.upper(), "type": type, **fields}


def linear(*middle: dict) -> list[dict]:
    """START -> middle... -> END, chained through ``dependencies``."""
    steps = [step("start", "start")]
    previous = "start"
    for s in middle:
        steps.append({**s, "dependencies": [previous]})
        previous = s["id"]
    steps.append(step("end", "end", dependencies=[previous]))
    return steps


def make_definition(steps: Optional[list[dict]] = None, **overrides: Any) -> dict:
    payload = {
        "name": "Test Workflow",
        "type": "custom",
        "category": "testing",
        "steps": steps if steps is not None else linear(step("a")),
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        TIME_SCALE_SECONDS_PER_MINUTE=0,
        DEFAULT_STEP_TIMEOUT_SECONDS=5,
        MAX_CONCURRENT_EXECUTIONS_DEFAULT=10,
    )


@pytest.fixture
def definitions() -> InMemoryRepository:
    return InMemoryRepository(WorkflowDefinition)


@pytest.fixture
def executions() -> InMemoryRepository:
    return InMemoryRepository(WorkflowExecution)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def documents() -> FakeDocuments:
    return FakeDocuments()


@pytest.fixture
def api_client() -> FakeApiClient:
    return FakeApiClient()


@pytest.fixture
def assigner() -> FakeAssigner:
    return FakeAssigner()


@pytest.fixture
def capabilities(documents, notifier, api_client, assigner) -> Capabilities:
    return Capabilities(documents=documents, notifier=notifier, api_client=api_client, task_assigner=assigner)


@pytest.fixture
def registry() -> TaskRegistry:
    FlakyTask.calls = 0
    reg = TaskRegistry()
    reg.register(StepType.SCRIPT_EXECUTION, FailingTask)
    reg.register(StepType.DATABASE_QUERY, FlakyTask)
    reg.register(StepType.FILE_TRANSFER, HangingTask)
    return reg


@pytest.fixture
def engine(definitions, executions, registry, capabilities, settings) -> WorkflowEngine:
    return WorkflowEngine(
        definitions,
        executions,
        task_registry=registry,
        capabilities=capabilities,
        settings=settings,
    )


@pytest.fixture
def workflow_service(definitions, engine) -> WorkflowService:
    return WorkflowService(definitions, engine)


@pytest.fixture
def create_workflow(workflow_service):
    """Store a definition built by ``make_definition`` and return it."""

    async def _create(steps: Optional[list[dict]] = None, **overrides: Any) -> WorkflowDefinition:
        return await workflow_service.create(make_definition(steps, **overrides))

    return _create


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(definitions, executions, capabilities, settings, registry):
    """FastAPI app wired to the in-memory stores and fake capabilities."""
    from app.main import create_app, wire_services

    test_app = create_app()
    test_app.state.db_engine = None
    engine = wire_services(test_app, definitions, executions, capabilities, settings, registry)
    yield test_app

    for execution_id in engine.get_running_executions():
        await engine.wait_for_execution(execution_id, timeout=5)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
