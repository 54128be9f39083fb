"""Tests for the workflow execution engine (drive loop, cancel, retry, approvals)."""

import asyncio

import pytest

from app.config import Settings
from conftest import FlakyTask, linear, step
from core.constants import (
    ErrorCode,
    ErrorType,
    ExecutionStatus,
    StepStatus,
)
from core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from workflow.engine import WorkflowEngine, estimate_duration_ms
from workflow.models import ExecuteWorkflowRequest


async def run(engine: WorkflowEngine, workflow_id: str, **request):
    response = await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow_id, **request), wait=True)
    return await engine.get_execution_status(response.execution_id)


async def wait_until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


def approval_gate(approvers=("alice",), approval_type="single", **config):
    return step(
        "gate",
        "approval_gate",
        config={"approvers": list(approvers), "approvalType": approval_type, **config},
    )


# ─── Drive loop ───

@pytest.mark.unit
class TestLinearExecution:

    async def test_happy_path(self, engine, create_workflow):
        workflow = await create_workflow()
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_steps == ["start", "a", "end"]
        assert execution.next_steps == []
        assert execution.end_time >= execution.start_time
        assert execution.duration >= 0
        assert execution.metrics.completed_steps == 3
        assert execution.step_runs["a"].status == StepStatus.COMPLETED
        assert execution.errors == []

    async def test_response_without_wait(self, engine, create_workflow):
        workflow = await create_workflow()
        response = await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))

        assert response.status == ExecutionStatus.ACTIVE
        assert response.next_steps == ["a"]
        assert response.estimated_duration == estimate_duration_ms(workflow)

        execution = await engine.wait_for_execution(response.execution_id, timeout=5)
        assert execution.status == ExecutionStatus.COMPLETED
        assert engine.get_running_executions() == []

    async def test_outputs_variables_and_metrics(self, engine, create_workflow, notifier):
        mail = step(
            "mail",
            "email_notification",
            config={"recipients": ["{{email}}"], "message": "Hi {{name}}", "outputVariable": "welcome"},
        )
        workflow = await create_workflow(linear(mail))
        execution = await run(engine, workflow.id, variables={"email": "ada@x.com", "name": "Ada"})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["mail"]["message"] == "Hi Ada"
        assert execution.variables["welcome"]["recipients"] == ["ada@x.com"]
        assert execution.metrics.notifications_sent == 1
        assert len(notifier.sent) == 1

    async def test_usage_recorded_on_definition(self, engine, create_workflow, definitions):
        workflow = await create_workflow()
        await run(engine, workflow.id)
        await run(engine, workflow.id)

        stored = await definitions.get(workflow.id)
        assert stored.usage_count == 2
        assert stored.last_used is not None

    async def test_callbacks(self, definitions, executions, registry, capabilities, settings, create_workflow):
        steps_seen = []
        finished = []

        async def on_step(execution, run):
            steps_seen.append(run.step_id)

        async def on_done(execution):
            finished.append(execution.status)

        engine = WorkflowEngine(
            definitions, executions, registry, capabilities, settings,
            on_step_complete=on_step, on_execution_complete=on_done,
        )
        workflow = await create_workflow()
        await run(engine, workflow.id)

        assert steps_seen == ["a", "end"]
        assert finished == [ExecutionStatus.COMPLETED]


@pytest.mark.unit
class TestExecuteRejections:

    async def test_unknown_workflow(self, engine):
        with pytest.raises(NotFoundError):
            await engine.execute(ExecuteWorkflowRequest(workflow_id="wf_missing"))

    async def test_inactive_workflow(self, engine, create_workflow):
        workflow = await create_workflow(is_active=False)
        with pytest.raises(InvalidStateError) as exc_info:
            await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))
        assert exc_info.value.code == ErrorCode.INACTIVE.value

    async def test_missing_required_variable(self, engine, create_workflow, executions):
        workflow = await create_workflow(variables=[{"name": "client_id", "required": True}])
        with pytest.raises(ValidationError):
            await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))
        assert (await executions.list())[1] == 0

    async def test_concurrency_limit(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate()), settings={"max_concurrent_executions": 1})
        first = await run(engine, workflow.id)
        assert first.status == ExecutionStatus.WAITING_APPROVAL

        with pytest.raises(ConflictError):
            await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))

        await engine.cancel(first.id)
        assert (await run(engine, workflow.id)).status == ExecutionStatus.WAITING_APPROVAL


# ─── Failures ───

@pytest.mark.unit
class TestFailures:

    async def test_failure_halts_advancement(self, engine, create_workflow):
        workflow = await create_workflow(linear(step("a", "script_execution"), step("b")))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert "a" not in execution.completed_steps
        assert "b" not in execution.completed_steps
        assert execution.failed_steps == ["a"]
        assert len(execution.errors) == 1

        error = execution.errors[0]
        assert error.step_id == "a"
        assert error.step_name == "A"
        assert error.code == ErrorCode.EXECUTION_ERROR.value
        assert error.message == "boom"
        assert error.retryable is True
        assert execution.step_runs["a"].status == StepStatus.FAILED

    async def test_step_timeout(self, engine, create_workflow):
        workflow = await create_workflow(linear(step("slow", "file_transfer", timeout_seconds=0.05)))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert execution.step_runs["slow"].status == StepStatus.TIMEOUT
        assert execution.errors[0].code == ErrorCode.TIMEOUT.value
        assert execution.errors[0].type == ErrorType.TIMEOUT

    async def test_inline_retries(self, engine, create_workflow):
        flaky = step("b", "database_query", config={"fail_times": 2}, max_retries=2)
        workflow = await create_workflow(linear(flaky))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.step_runs["b"].attempts == 3
        assert execution.metrics.retry_attempts == 2

    async def test_retries_exhausted(self, engine, create_workflow):
        flaky = step("b", "database_query", config={"fail_times": 5}, max_retries=1)
        workflow = await create_workflow(linear(flaky))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert execution.errors[0].retry_count == 1

    async def test_non_retryable_error_is_not_retried(self, engine, create_workflow):
        failing = step("a", "script_execution", config={"retryable": False}, max_retries=3)
        workflow = await create_workflow(linear(failing))
        execution = await run(engine, workflow.id)

        assert execution.step_runs["a"].attempts == 1
        assert execution.errors[0].retryable is False

    async def test_cancel_stops_inline_retries(
        self, definitions, executions, registry, capabilities, create_workflow
    ):
        settings = Settings(ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=60)
        engine = WorkflowEngine(definitions, executions, registry, capabilities, settings)
        flaky = step("b", "database_query", config={"fail_times": 100}, max_retries=5)
        workflow = await create_workflow(linear(flaky), settings={"retry_delay": 0.5})

        response = await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))

        async def first_attempt_failed():
            return FlakyTask.calls >= 1

        await wait_until(first_attempt_failed)
        await asyncio.sleep(0.01)
        await engine.cancel(response.execution_id)
        execution = await engine.wait_for_execution(response.execution_id, timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert FlakyTask.calls == 1
        assert engine.get_running_executions() == []

    async def test_continue_policy(self, engine, create_workflow):
        workflow = await create_workflow(
            linear(step("a", "script_execution"), step("b")),
            settings={"on_error": "continue"},
        )
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_steps == ["start", "b", "end"]
        assert execution.failed_steps == ["a"]
        assert execution.errors == []
        assert [w.step_id for w in execution.warnings] == ["a"]

    async def test_notify_policy(self, engine, create_workflow, notifier):
        workflow = await create_workflow(
            linear(step("a", "script_execution")),
            settings={"on_error": "notify", "error_notification_recipients": ["ops@example.com"]},
        )
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert notifier.sent[0]["recipients"] == ["ops@example.com"]
        assert execution.id in notifier.sent[0]["message"]

    async def test_missing_capability_fails_step(self, definitions, executions, registry, settings, create_workflow):
        engine = WorkflowEngine(definitions, executions, registry, settings=settings)
        mail = step("mail", "email_notification", config={"recipients": ["a@x.com"], "message": "hi"})
        workflow = await create_workflow(linear(mail))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert execution.errors[0].code == ErrorCode.CAPABILITY_NOT_CONFIGURED.value
        assert execution.errors[0].type == ErrorType.INTEGRATION

    async def test_workflow_timeout(self, definitions, executions, registry, capabilities, create_workflow):
        settings = Settings(ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=60)
        engine = WorkflowEngine(definitions, executions, registry, capabilities, settings)
        wait = step("wait", "delay", config={"delayMinutes": 0.002})
        workflow = await create_workflow(linear(wait, step("b")), settings={"timeout": 0.001})
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.ERROR
        assert execution.errors[0].code == ErrorCode.WORKFLOW_TIMEOUT.value
        assert "wait" in execution.completed_steps
        assert "b" not in execution.completed_steps

    async def test_delay_outlasting_step_timeout_completes(
        self, definitions, executions, registry, capabilities, create_workflow
    ):
        settings = Settings(
            ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=0.2, DEFAULT_STEP_TIMEOUT_SECONDS=0.1
        )
        engine = WorkflowEngine(definitions, executions, registry, capabilities, settings)
        workflow = await create_workflow(linear(step("wait", "delay", config={"delayMinutes": 1})))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["wait"]["actual_delay_seconds"] == pytest.approx(0.2)

    async def test_step_visit_limit(self, definitions, executions, registry, capabilities, create_workflow):
        settings = Settings(ENVIRONMENT="testing", TIME_SCALE_SECONDS_PER_MINUTE=0, MAX_STEPS_PER_EXECUTION=20)
        engine = WorkflowEngine(definitions, executions, registry, capabilities, settings)
        loop = step(
            "loop",
            "conditional_branch",
            conditions=[{"expression": "count > 0", "on_true": [{"type": "goto", "target": "a"}]}],
        )
        workflow = await create_workflow(linear(step("a"), loop))
        execution = await run(engine, workflow.id, variables={"count": 1})

        assert execution.status == ExecutionStatus.ERROR
        assert execution.errors[0].code == ErrorCode.SYSTEM.value


# ─── Branching ───

@pytest.mark.unit
class TestBranching:

    def _branch(self, on_true, on_false=None):
        return step(
            "branch",
            "conditional_branch",
            conditions=[{"expression": "amount > 100", "on_true": on_true, "on_false": on_false or []}],
        )

    async def test_skip(self, engine, create_workflow):
        branch = self._branch([], on_false=[{"type": "skip", "target": "review"}])
        workflow = await create_workflow(linear(branch, step("review"), step("after")))
        execution = await run(engine, workflow.id, variables={"amount": 50})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.skipped_steps == ["review"]
        assert execution.completed_steps == ["start", "branch", "after", "end"]
        assert execution.step_runs["review"].status == StepStatus.SKIPPED

    async def test_goto(self, engine, create_workflow):
        branch = self._branch([{"type": "goto", "target": "after"}])
        workflow = await create_workflow(linear(branch, step("review"), step("after")))
        execution = await run(engine, workflow.id, variables={"amount": 500})

        assert execution.completed_steps == ["start", "branch", "after", "end"]
        assert "review" not in execution.step_runs

    async def test_stop(self, engine, create_workflow):
        branch = self._branch([{"type": "stop"}])
        workflow = await create_workflow(linear(branch, step("review")))
        execution = await run(engine, workflow.id, variables={"amount": 500})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.completed_steps == ["start", "branch"]

    async def test_set_variable_and_notify(self, engine, create_workflow):
        branch = self._branch([
            {"type": "set_variable", "target": "tier", "value": "gold"},
            {"type": "notify", "message": "large order"},
        ])
        workflow = await create_workflow(linear(branch))
        execution = await run(engine, workflow.id, variables={"amount": 500})

        assert execution.variables["tier"] == "gold"
        assert execution.warnings[0].message == "large order"

    async def test_expression_error_fails_execution(self, engine, create_workflow):
        workflow = await create_workflow(linear(self._branch([{"type": "stop"}])))
        execution = await run(engine, workflow.id, variables={"amount": "lots"})

        assert execution.status == ExecutionStatus.ERROR
        assert execution.errors[0].code == ErrorCode.EXPRESSION_ERROR.value
        assert execution.errors[0].retryable is False


# ─── Cancel ───

@pytest.mark.unit
class TestCancel:

    async def test_cancel_twice(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate()))
        execution = await run(engine, workflow.id)

        cancelled = await engine.cancel(execution.id)
        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.step_runs["gate"].status == StepStatus.CANCELLED

        with pytest.raises(InvalidStateError):
            await engine.cancel(execution.id)

    async def test_cancel_completed(self, engine, create_workflow):
        workflow = await create_workflow()
        execution = await run(engine, workflow.id)
        with pytest.raises(InvalidStateError):
            await engine.cancel(execution.id)

    async def test_cancel_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.cancel("exec_missing")

    async def test_cancel_reaches_running_handler(self, engine, create_workflow):
        workflow = await create_workflow(linear(step("hang", "file_transfer"), step("b")))
        response = await engine.execute(ExecuteWorkflowRequest(workflow_id=workflow.id))

        async def hanging():
            execution = await engine.get_execution_status(response.execution_id)
            run = execution.step_runs.get("hang")
            return run is not None and run.status == StepStatus.RUNNING

        await wait_until(hanging)
        await engine.cancel(response.execution_id)
        execution = await engine.wait_for_execution(response.execution_id, timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.step_runs["hang"].status == StepStatus.CANCELLED
        assert "b" not in execution.step_runs


# ─── Retry ───

@pytest.mark.unit
class TestRetry:

    async def test_resumes_after_last_completed_step(self, engine, create_workflow):
        workflow = await create_workflow(
            linear(step("a"), step("b", "database_query", config={"fail_times": 1}), step("c"))
        )
        failed = await run(engine, workflow.id)
        assert failed.status == ExecutionStatus.ERROR
        assert failed.last_completed_step == "a"

        resumed = await engine.retry(failed.id)
        assert resumed.status == ExecutionStatus.ACTIVE
        assert resumed.next_steps == ["b"]
        assert resumed.errors == []
        assert resumed.retry_count == 1

        done = await engine.wait_for_execution(failed.id, timeout=5)
        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_steps == ["start", "a", "b", "c", "end"]

    async def test_retry_requires_error(self, engine, create_workflow):
        workflow = await create_workflow()
        execution = await run(engine, workflow.id)
        with pytest.raises(InvalidStateError):
            await engine.retry(execution.id)


# ─── Approvals ───

@pytest.mark.unit
class TestApprovals:

    async def test_single_approval_resumes(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate(), step("b")))
        waiting = await run(engine, workflow.id)
        assert waiting.status == ExecutionStatus.WAITING_APPROVAL
        assert waiting.step_runs["gate"].status == StepStatus.WAITING_APPROVAL
        assert engine.get_running_executions() == []

        await engine.approve_step(waiting.id, "gate", "alice", comment="ok")
        done = await engine.wait_for_execution(waiting.id, timeout=5)

        assert done.status == ExecutionStatus.COMPLETED
        assert done.completed_steps == ["start", "gate", "b", "end"]
        assert done.output["gate"]["approved_by"] == ["alice"]
        assert done.step_runs["gate"].approvals[0].comment == "ok"

    async def test_multiple_needs_majority(self, engine, create_workflow):
        gate = approval_gate(["alice", "bob", "carol"], "multiple")
        workflow = await create_workflow(linear(gate))
        waiting = await run(engine, workflow.id)

        pending = await engine.approve_step(waiting.id, "gate", "alice")
        assert pending.status == ExecutionStatus.WAITING_APPROVAL

        await engine.approve_step(waiting.id, "gate", "bob")
        done = await engine.wait_for_execution(waiting.id, timeout=5)
        assert done.status == ExecutionStatus.COMPLETED

    async def test_unanimous_needs_everyone(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate(["alice", "bob"], "unanimous")))
        waiting = await run(engine, workflow.id)

        assert (await engine.approve_step(waiting.id, "gate", "alice")).status == ExecutionStatus.WAITING_APPROVAL
        await engine.approve_step(waiting.id, "gate", "bob")
        assert (await engine.wait_for_execution(waiting.id, timeout=5)).status == ExecutionStatus.COMPLETED

    async def test_rejection_fails_execution(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate()))
        waiting = await run(engine, workflow.id)

        rejected = await engine.approve_step(waiting.id, "gate", "alice", approved=False, comment="no")
        assert rejected.status == ExecutionStatus.ERROR
        assert rejected.errors[0].code == ErrorCode.APPROVAL_REJECTED.value
        assert rejected.errors[0].message == "Approval rejected by alice: no"
        assert rejected.failed_steps == ["gate"]

    async def test_approver_must_be_listed(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate()))
        waiting = await run(engine, workflow.id)
        with pytest.raises(ValidationError):
            await engine.approve_step(waiting.id, "gate", "mallory")

    async def test_step_must_be_waiting_gate(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate()))
        waiting = await run(engine, workflow.id)

        with pytest.raises(InvalidStateError):
            await engine.approve_step(waiting.id, "start", "alice")
        with pytest.raises(NotFoundError):
            await engine.approve_step(waiting.id, "ghost", "alice")

        await engine.cancel(waiting.id)
        with pytest.raises(InvalidStateError):
            await engine.approve_step(waiting.id, "gate", "alice")

    async def test_auto_approve(self, engine, create_workflow):
        workflow = await create_workflow(linear(approval_gate(autoApproveAfter=30)))
        execution = await run(engine, workflow.id)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.output["gate"]["status"] == "auto_approved"


# ─── Queries ───

@pytest.mark.unit
class TestQueries:

    async def test_list_and_count(self, engine, create_workflow):
        gated = await create_workflow(linear(approval_gate()))
        plain = await create_workflow()
        await run(engine, gated.id)
        await run(engine, plain.id)

        assert await engine.count_active_executions(gated.id) == 1
        assert await engine.count_active_executions(plain.id) == 0

        items, total = await engine.list_executions({"status": "completed"})
        assert total == 1
        assert items[0].workflow_definition_id == plain.id

    async def test_status_of_unknown_execution(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_execution_status("exec_missing")
