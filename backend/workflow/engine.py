"""Workflow Execution Engine — drives executions through a definition's step graph.

Each execution is advanced by its own asyncio task, strictly one step at a
time:

    ACTIVE ──▶ COMPLETED | CANCELLED | ERROR
    ACTIVE ──▶ WAITING_APPROVAL ──▶ ACTIVE (approve_step) | ERROR (rejected) | CANCELLED
    ERROR  ──▶ ACTIVE (retry)

The drive loop takes the first id in ``next_steps``, dispatches it, and on
success records the step as completed and recomputes ``next_steps`` with
the dependency resolver. A failed step puts the execution into ERROR with
one structured WorkflowError; only a caller-initiated ``retry`` resumes it.

Every write goes through ``_mutate``: under a per-execution lock the record
is reloaded, changed and written with an optimistic revision check, so a
cancel racing a step completion never loses either update.

Cancellation is cooperative. ``cancel`` flips the status and sets the
execution's cancel event, which handlers see through ``StepContext``; the
drive loop notices the status at its next check.
"""

import asyncio
from typing import Any, Callable, Optional

import structlog

from app.config import Settings, get_settings
from core.constants import (
    ActionType,
    ApprovalType,
    COMPLEXITY_MULTIPLIERS,
    ErrorCode,
    ErrorSeverity,
    ErrorType,
    ExecutionStatus,
    NON_TERMINAL_STATUSES,
    OnErrorPolicy,
    StepStatus,
    StepType,
)
from core.exceptions import (
    ConcurrencyError,
    ConflictError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from core.logging_config import execution_log_context
from core.utils import duration_ms, ensure_utc, generate_id, utc_now
from services.repository import Repository, update_with_retry
from tasks.base_task import TaskResult
from tasks.capabilities import Capabilities
from tasks.registry import TaskRegistry
from workflow.dispatcher import StepDispatcher
from workflow.expressions import ExpressionEvaluator
from workflow.models import (
    ApprovalRecord,
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
    ExecutionMetrics,
    StepAction,
    StepRun,
    WorkflowDefinition,
    WorkflowError,
    WorkflowExecution,
    WorkflowStep,
    WorkflowWarning,
)
from workflow.resolver import find_start, is_terminal_step, merge_ready, next_steps
from workflow.retry_strategies import RetryStrategy, execute_with_retry
from workflow.step_configs import ApprovalGateConfig, parse_step_config
from workflow.validator import validate_variables

logger = structlog.get_logger(__name__)

_ERROR_TYPES = {
    ErrorCode.TIMEOUT.value: ErrorType.TIMEOUT,
    ErrorCode.WORKFLOW_TIMEOUT.value: ErrorType.TIMEOUT,
    ErrorCode.VALIDATION.value: ErrorType.VALIDATION,
    ErrorCode.DATA_VALIDATION_FAILED.value: ErrorType.VALIDATION,
    ErrorCode.EXPRESSION_ERROR.value: ErrorType.VALIDATION,
    ErrorCode.INTEGRATION_ERROR.value: ErrorType.INTEGRATION,
    ErrorCode.CAPABILITY_NOT_CONFIGURED.value: ErrorType.INTEGRATION,
    ErrorCode.SYSTEM.value: ErrorType.SYSTEM,
}


def estimate_duration_ms(definition: WorkflowDefinition) -> int:
    """Rough runtime estimate: 30s base plus 5s per step, scaled by complexity."""
    base = 30000 + 5000 * len(definition.steps)
    return int(base * COMPLEXITY_MULTIPLIERS[definition.complexity])


class WorkflowEngine:
    """Main workflow execution engine.

    Owns the lifecycle of every execution: creation, the drive loop,
    cancellation, retry and approval. Definitions and executions are only
    read and written through the injected repositories.
    """

    def __init__(
        self,
        definitions: Repository[WorkflowDefinition],
        executions: Repository[WorkflowExecution],
        task_registry: Optional[TaskRegistry] = None,
        capabilities: Optional[Capabilities] = None,
        settings: Optional[Settings] = None,
        on_step_complete: Optional[Callable] = None,
        on_execution_complete: Optional[Callable] = None,
    ):
        self._definitions = definitions
        self._executions = executions
        self._settings = settings or get_settings()
        self._dispatcher = StepDispatcher(task_registry, capabilities, self._settings)
        self._on_step_complete = on_step_complete
        self._on_execution_complete = on_execution_complete
        self._locks: dict[str, asyncio.Lock] = {}
        self._definition_locks: dict[str, asyncio.Lock] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._running: dict[str, asyncio.Task] = {}

    # ─── Queries ──────────────────────────────────────────────

    @property
    def task_registry(self) -> TaskRegistry:
        return self._dispatcher.registry

    async def get_execution_status(self, execution_id: str) -> WorkflowExecution:
        execution = await self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution '{execution_id}' not found")
        return execution

    async def list_executions(
        self,
        filters: Optional[dict[str, Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> tuple[list[WorkflowExecution], int]:
        return await self._executions.list(filters, offset, limit)

    async def count_active_executions(self, definition_id: str) -> int:
        """Executions of ``definition_id`` that are ACTIVE or WAITING_APPROVAL."""
        _, total = await self._executions.list(
            {
                "workflow_definition_id": definition_id,
                "status": [s.value for s in NON_TERMINAL_STATUSES],
            },
            limit=0,
        )
        return total

    def get_running_executions(self) -> list[str]:
        """Ids of executions whose drive loop is currently scheduled."""
        return [eid for eid, task in self._running.items() if not task.done()]

    async def wait_for_execution(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """Wait until the execution's drive loop stops, then return its state.

        Returns as soon as the loop halts, which includes WAITING_APPROVAL.
        """
        task = self._running.get(execution_id)
        while task is not None and not task.done():
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            task = self._running.get(execution_id)
        return await self.get_execution_status(execution_id)

    # ─── Execute ──────────────────────────────────────────────

    def definition_lock(self, definition_id: str) -> asyncio.Lock:
        """Lock held while executions of a definition are admitted or it is deleted."""
        return self._definition_locks.setdefault(definition_id, asyncio.Lock())

    async def execute(self, request: ExecuteWorkflowRequest, wait: bool = False) -> ExecuteWorkflowResponse:
        """Create an execution and schedule its drive loop.

        Returns right after scheduling unless ``wait`` is set.

        Raises:
            NotFoundError: definition does not exist
            InvalidStateError: definition is inactive (code INACTIVE)
            ValidationError: request variables are missing or invalid
            ConflictError: the definition's concurrent-execution limit is reached
        """
        definition = await self._definitions.get(request.workflow_id)
        if definition is None:
            raise NotFoundError(f"Workflow '{request.workflow_id}' not found")
        if not definition.is_active:
            raise InvalidStateError(f"Workflow '{definition.id}' is inactive", code=ErrorCode.INACTIVE.value)

        variables = validate_variables(definition, request.variables)

        start_id = find_start(definition.steps)
        if start_id is None:
            # Stored definitions always have a START; the validator guarantees it
            raise InternalError(f"Workflow '{definition.id}' has no START step")
        start_step = definition.get_step(start_id)

        limit = definition.settings.max_concurrent_executions or self._settings.MAX_CONCURRENT_EXECUTIONS_DEFAULT
        async with self.definition_lock(definition.id):
            if await self._definitions.get(definition.id) is None:
                raise NotFoundError(f"Workflow '{definition.id}' not found")
            active = await self.count_active_executions(definition.id)
            if active >= limit:
                raise ConflictError(
                    f"Workflow '{definition.id}' already has {active} running execution(s) (limit {limit})"
                )

            now = utc_now()
            execution = WorkflowExecution(
                id=generate_id("exec"),
                workflow_definition_id=definition.id,
                workflow_name=definition.name,
                workflow_version=definition.version,
                triggered_by=request.context.user_id,
                trigger_type=request.trigger_type,
                trigger_data=request.trigger_data,
                priority=request.priority or definition.priority,
                start_time=now,
                current_step=start_id,
                next_steps=next_steps(definition.steps, start_id),
                completed_steps=[start_id],
                step_runs={
                    start_id: StepRun(
                        step_id=start_id,
                        step_name=start_step.display_name,
                        step_type=StepType.START,
                        status=StepStatus.COMPLETED,
                        started_at=now,
                        completed_at=now,
                        duration_ms=0,
                        attempts=1,
                    ),
                },
                variables=variables,
                context=request.context,
                metrics=ExecutionMetrics(total_steps=len(definition.steps), completed_steps=1),
                created_at=now,
                updated_at=now,
            )
            execution = await self._executions.create(execution)

        await self._record_usage(definition.id, now)

        logger.info(
            "execution_started",
            execution_id=execution.id,
            workflow_id=definition.id,
            trigger_type=request.trigger_type.value,
            next_steps=execution.next_steps,
        )

        self._cancel_events[execution.id] = asyncio.Event()
        task = self._schedule(execution.id)
        if wait:
            await task
            execution = await self.get_execution_status(execution.id)

        return ExecuteWorkflowResponse(
            execution_id=execution.id,
            status=execution.status,
            message="Workflow execution started",
            estimated_duration=estimate_duration_ms(definition),
            next_steps=list(execution.next_steps),
            errors=list(execution.errors),
        )

    async def _record_usage(self, definition_id: str, when) -> None:
        def bump(definition: WorkflowDefinition) -> None:
            definition.usage_count += 1
            definition.last_used = when

        try:
            await update_with_retry(self._definitions, definition_id, bump, self._settings.MAX_UPDATE_ATTEMPTS)
        except (ConcurrencyError, NotFoundError) as e:
            logger.warning("usage_count_update_failed", workflow_id=definition_id, error=e.message)

    # ─── Cancel / retry / approve ─────────────────────────────

    async def cancel(self, execution_id: str) -> WorkflowExecution:
        """Cancel an ACTIVE or WAITING_APPROVAL execution.

        Raises:
            NotFoundError: execution does not exist
            InvalidStateError: execution is already terminal
        """
        driving = execution_id in self.get_running_executions()

        def apply(execution: WorkflowExecution) -> None:
            if execution.status not in NON_TERMINAL_STATUSES:
                raise InvalidStateError(
                    f"Cannot cancel execution '{execution_id}' in status '{execution.status.value}'"
                )
            now = utc_now()
            for run in execution.step_runs.values():
                if run.status == StepStatus.WAITING_APPROVAL or (run.status == StepStatus.RUNNING and not driving):
                    run.status = StepStatus.CANCELLED
                    run.completed_at = now
            self._finish(execution, ExecutionStatus.CANCELLED, now)

        execution, _ = await self._mutate(execution_id, apply)

        event = self._cancel_events.get(execution_id)
        if event is not None:
            event.set()

        logger.info("execution_cancelled", execution_id=execution_id, current_step=execution.current_step)

        if not driving:
            await self._execution_finished(execution)
        return execution

    async def retry(self, execution_id: str) -> WorkflowExecution:
        """Resume an ERROR execution from the step after its last completed one.

        Raises:
            NotFoundError: execution or its definition does not exist
            InvalidStateError: execution is not in ERROR
        """
        execution = await self.get_execution_status(execution_id)
        if execution.status != ExecutionStatus.ERROR:
            raise InvalidStateError(
                f"Only failed executions can be retried; '{execution_id}' is '{execution.status.value}'"
            )
        definition = await self._load_definition(execution.workflow_definition_id)

        def apply(execution: WorkflowExecution) -> None:
            if execution.status != ExecutionStatus.ERROR:
                raise InvalidStateError(
                    f"Only failed executions can be retried; '{execution_id}' is '{execution.status.value}'"
                )
            anchor = execution.last_completed_step or find_start(definition.steps)
            resumed = next_steps(definition.steps, anchor)
            execution.next_steps = merge_ready(execution.next_steps, resumed, front=True)
            execution.errors = []
            execution.status = ExecutionStatus.ACTIVE
            execution.end_time = None
            execution.duration = None
            execution.metrics.total_duration_ms = None
            execution.retry_count += 1
            execution.resumed_at = utc_now()

        execution, _ = await self._mutate(execution_id, apply)
        logger.info(
            "execution_retried",
            execution_id=execution_id,
            retry_count=execution.retry_count,
            next_steps=execution.next_steps,
        )

        self._cancel_events[execution_id] = asyncio.Event()
        self._schedule(execution_id)
        return execution

    async def approve_step(
        self,
        execution_id: str,
        step_id: str,
        approved_by: str,
        approved: bool = True,
        comment: Optional[str] = None,
    ) -> WorkflowExecution:
        """Record an approval decision on a WAITING_APPROVAL gate.

        SINGLE needs one approval, MULTIPLE a majority of the listed
        approvers, UNANIMOUS every listed approver. Any rejection fails the
        execution with APPROVAL_REJECTED.

        Raises:
            NotFoundError: execution, definition or step does not exist
            InvalidStateError: the execution or step is not waiting for approval
            ValidationError: ``approved_by`` is not one of the gate's approvers
        """
        execution = await self.get_execution_status(execution_id)
        definition = await self._load_definition(execution.workflow_definition_id)
        step = definition.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step '{step_id}' not found in workflow '{definition.id}'")
        if step.type != StepType.APPROVAL_GATE:
            raise InvalidStateError(f"Step '{step_id}' is not an approval gate")

        config: ApprovalGateConfig = parse_step_config(
            step.type, ExpressionEvaluator.resolve_config(step.config, execution.variables)
        )
        if approved_by not in config.approvers:
            raise ValidationError(f"'{approved_by}' is not an approver for step '{step_id}'")

        def apply(execution: WorkflowExecution) -> str:
            if execution.status != ExecutionStatus.WAITING_APPROVAL:
                raise InvalidStateError(f"Execution '{execution_id}' is not waiting for approval")
            run = execution.step_runs.get(step_id)
            if run is None or run.status != StepStatus.WAITING_APPROVAL:
                raise InvalidStateError(f"Step '{step_id}' is not waiting for approval")

            now = utc_now()
            run.approvals.append(
                ApprovalRecord(approved_by=approved_by, approved=approved, comment=comment, timestamp=now)
            )

            if not approved:
                message = f"Approval rejected by {approved_by}" + (f": {comment}" if comment else "")
                self._record_failure(execution, step, run, now, StepStatus.FAILED, message)
                execution.errors.append(WorkflowError(
                    step_id=step.id,
                    step_name=step.display_name,
                    code=ErrorCode.APPROVAL_REJECTED.value,
                    message=message,
                    type=ErrorType.EXECUTION,
                    retryable=False,
                ))
                self._finish(execution, ExecutionStatus.ERROR, now)
                return "rejected"

            if not _approval_satisfied(config, run.approvals):
                return "pending"

            run.output = {
                **(run.output or {}),
                "status": "approved",
                "approved_by": sorted({a.approved_by for a in run.approvals if a.approved}),
                "approved_at": now.isoformat(),
            }
            execution.output[step.id] = run.output
            execution.status = ExecutionStatus.ACTIVE
            self._advance(execution, definition, step, run, now, [])
            return "approved"

        execution, outcome = await self._mutate(execution_id, apply)
        logger.info(
            "step_approval_recorded",
            execution_id=execution_id,
            step_id=step_id,
            approved_by=approved_by,
            approved=approved,
            outcome=outcome,
        )

        if outcome == "pending":
            return execution
        if execution.status == ExecutionStatus.ACTIVE:
            self._schedule(execution_id)
        else:
            await self._execution_finished(execution)
        return execution

    # ─── Drive loop ───────────────────────────────────────────

    def _schedule(self, execution_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._drive(execution_id), name=f"workflow-execution-{execution_id}")
        self._running[execution_id] = task
        return task

    async def _drive(self, execution_id: str) -> None:
        """Advance one execution until it halts."""
        with execution_log_context(execution_id):
            await self._drive_loop(execution_id)

    async def _drive_loop(self, execution_id: str) -> None:
        log = logger.bind(execution_id=execution_id)
        cancel_event = self._cancel_events.setdefault(execution_id, asyncio.Event())
        visits = 0
        try:
            execution = await self.get_execution_status(execution_id)
            definition = await self._definitions.get(execution.workflow_definition_id)

            while True:
                execution = await self.get_execution_status(execution_id)
                if execution.status != ExecutionStatus.ACTIVE:
                    break

                if definition is None:
                    await self._fail(execution_id, None, ErrorCode.SYSTEM.value, "Workflow definition no longer exists")
                    break

                if self._workflow_timed_out(execution, definition):
                    await self._fail(
                        execution_id,
                        None,
                        ErrorCode.WORKFLOW_TIMEOUT.value,
                        f"Workflow exceeded its timeout of {definition.settings.timeout} minute(s)",
                        retryable=True,
                    )
                    break

                if not execution.next_steps:
                    await self._mutate(execution_id, lambda e: self._complete_if_active(e))
                    break

                visits += 1
                if visits > self._settings.MAX_STEPS_PER_EXECUTION:
                    await self._fail(
                        execution_id,
                        None,
                        ErrorCode.SYSTEM.value,
                        f"Execution exceeded {self._settings.MAX_STEPS_PER_EXECUTION} step visits",
                    )
                    break

                step_id = execution.next_steps[0]
                step = definition.get_step(step_id)
                if step is None:
                    await self._fail(execution_id, None, ErrorCode.SYSTEM.value, f"Step '{step_id}' is not defined")
                    break

                if step_id in execution.skip_requests:
                    execution, _ = await self._mutate(execution_id, lambda e: self._skip(e, definition, step))
                    log.info("step_skipped", step_id=step_id)
                    await self._step_finished(execution, step_id)
                    continue

                if not await self._run_step(execution_id, definition, step, cancel_event, log):
                    break

        except Exception as e:
            log.error("execution_drive_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            try:
                await self._fail(execution_id, None, ErrorCode.SYSTEM.value, "Internal error while running the workflow")
            except Exception as inner:
                log.error("execution_fail_record_failed", error=str(inner))

        finally:
            if self._running.get(execution_id) is asyncio.current_task():
                self._running.pop(execution_id, None)
            try:
                final = await self._executions.get(execution_id)
            except Exception as e:
                log.error("execution_reload_failed", error=str(e))
                final = None
            if final is not None and final.is_terminal:
                await self._execution_finished(final)

    async def _run_step(
        self,
        execution_id: str,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        cancel_event: asyncio.Event,
        log,
    ) -> bool:
        """Dispatch one step and apply the outcome. Returns True to keep driving."""
        started = utc_now()

        def mark_running(execution: WorkflowExecution) -> bool:
            if execution.status != ExecutionStatus.ACTIVE:
                return False
            run = execution.step_runs.get(step.id) or StepRun(
                step_id=step.id, step_name=step.display_name, step_type=step.type
            )
            run.status = StepStatus.RUNNING
            run.started_at = started
            run.completed_at = None
            run.error = None
            run.attempts += 1
            execution.step_runs[step.id] = run
            execution.current_step = step.id
            return True

        execution, proceed = await self._mutate(execution_id, mark_running)
        if not proceed:
            return False

        log.info("step_started", step_id=step.id, step_type=step.type.value)

        retries = 0

        async def on_retry(attempt: int, error: Exception, delay: float) -> None:
            nonlocal retries
            retries = attempt

            def record(e: WorkflowExecution) -> None:
                e.step_runs[step.id].attempts += 1
                e.metrics.retry_attempts += 1

            await self._mutate(execution_id, record)

        strategy = RetryStrategy.for_step(step, definition.settings, self._settings.TIME_SCALE_SECONDS_PER_MINUTE)
        try:
            result = await execute_with_retry(
                self._dispatcher.dispatch,
                strategy,
                execution,
                step,
                cancel_event,
                on_retry=on_retry,
                stop_event=cancel_event,
            )
        except StepExecutionError as error:
            return await self._handle_step_failure(execution_id, definition, step, error, retries, log)

        def apply(e: WorkflowExecution) -> bool:
            return self._apply_success(e, definition, step, result)

        execution, proceed = await self._mutate(execution_id, apply)
        run = execution.step_runs[step.id]
        log.info(
            "step_completed" if run.status == StepStatus.COMPLETED else "step_halted",
            step_id=step.id,
            step_status=run.status.value,
            execution_status=execution.status.value,
            duration_ms=run.duration_ms,
        )
        await self._step_finished(execution, step.id)
        return proceed

    def _apply_success(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        result: TaskResult,
    ) -> bool:
        now = utc_now()
        run = execution.step_runs[step.id]

        if execution.status != ExecutionStatus.ACTIVE:
            run.status = StepStatus.CANCELLED
            run.completed_at = now
            run.duration_ms = duration_ms(run.started_at, now)
            return False

        output = result.output if isinstance(result.output, dict) else {"value": result.output}
        run.output = output
        execution.output[step.id] = output
        execution.variables.update(result.variables)
        for name, increment in result.metrics.items():
            if hasattr(execution.metrics, name):
                setattr(execution.metrics, name, getattr(execution.metrics, name) + increment)

        if result.waiting:
            run.status = StepStatus.WAITING_APPROVAL
            execution.status = ExecutionStatus.WAITING_APPROVAL
            return False

        self._advance(execution, definition, step, run, now, result.actions)
        return execution.status == ExecutionStatus.ACTIVE

    def _advance(
        self,
        execution: WorkflowExecution,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        run: StepRun,
        now,
        actions: list[StepAction],
    ) -> None:
        """Mark ``step`` completed and work out what runs next."""
        run.status = StepStatus.COMPLETED
        run.completed_at = now
        run.duration_ms = duration_ms(run.started_at, now)
        execution.completed_steps.append(step.id)
        execution.metrics.completed_steps += 1
        execution.metrics.step_durations[step.id] = run.duration_ms or 0

        pending = [s for s in execution.next_steps if s != step.id]
        redirect: list[str] = []
        stop = False
        for action in actions:
            if action.type in (ActionType.GOTO, ActionType.RETRY):
                redirect.append(action.target)
            elif action.type == ActionType.SKIP:
                if action.target not in execution.skip_requests:
                    execution.skip_requests.append(action.target)
            elif action.type == ActionType.STOP:
                stop = True
            elif action.type == ActionType.SET_VARIABLE:
                execution.variables[action.target] = action.value
            elif action.type == ActionType.NOTIFY:
                execution.warnings.append(WorkflowWarning(
                    step_id=step.id,
                    step_name=step.display_name,
                    code="BRANCH_NOTIFICATION",
                    message=action.message or f"Notification from step '{step.display_name}'",
                ))

        if stop or is_terminal_step(step):
            execution.next_steps = []
        elif redirect:
            execution.next_steps = merge_ready(pending, redirect, front=True)
        else:
            execution.next_steps = merge_ready(pending, next_steps(definition.steps, step.id))

        if not execution.next_steps:
            self._finish(execution, ExecutionStatus.COMPLETED, now)

    def _skip(self, execution: WorkflowExecution, definition: WorkflowDefinition, step: WorkflowStep) -> None:
        if execution.status != ExecutionStatus.ACTIVE:
            return
        now = utc_now()
        execution.step_runs[step.id] = StepRun(
            step_id=step.id,
            step_name=step.display_name,
            step_type=step.type,
            status=StepStatus.SKIPPED,
            completed_at=now,
        )
        execution.skip_requests.remove(step.id)
        execution.skipped_steps.append(step.id)
        execution.metrics.skipped_steps += 1
        pending = [s for s in execution.next_steps if s != step.id]
        execution.next_steps = merge_ready(pending, next_steps(definition.steps, step.id))
        if not execution.next_steps:
            self._finish(execution, ExecutionStatus.COMPLETED, now)

    # ─── Failure handling ─────────────────────────────────────

    async def _handle_step_failure(
        self,
        execution_id: str,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        error: StepExecutionError,
        retries: int,
        log,
    ) -> bool:
        policy = definition.settings.on_error
        step_status = StepStatus.TIMEOUT if isinstance(error, StepTimeoutError) else StepStatus.FAILED

        def apply(execution: WorkflowExecution) -> bool:
            now = utc_now()
            run = execution.step_runs[step.id]
            if execution.status != ExecutionStatus.ACTIVE:
                run.status = StepStatus.CANCELLED
                run.completed_at = now
                return False

            self._record_failure(execution, step, run, now, step_status, error.message)

            if policy == OnErrorPolicy.CONTINUE:
                execution.warnings.append(WorkflowWarning(
                    step_id=step.id,
                    step_name=step.display_name,
                    code=error.code,
                    message=f"Step failed and was passed over: {error.message}",
                ))
                pending = [s for s in execution.next_steps if s != step.id]
                execution.next_steps = merge_ready(pending, next_steps(definition.steps, step.id))
                if not execution.next_steps:
                    self._finish(execution, ExecutionStatus.COMPLETED, now)
                return execution.status == ExecutionStatus.ACTIVE

            execution.errors.append(WorkflowError(
                step_id=step.id,
                step_name=step.display_name,
                code=error.code,
                message=error.message,
                details=error.details,
                type=_ERROR_TYPES.get(error.code, ErrorType.EXECUTION),
                severity=ErrorSeverity.HIGH,
                retryable=error.retryable,
                retry_count=retries,
            ))
            self._finish(execution, ExecutionStatus.ERROR, now)
            return False

        execution, proceed = await self._mutate(execution_id, apply)
        log.warning(
            "step_failed",
            step_id=step.id,
            code=error.code,
            error=error.message,
            retries=retries,
            on_error=policy.value,
            execution_status=execution.status.value,
        )
        await self._step_finished(execution, step.id)

        if execution.status == ExecutionStatus.ERROR and policy == OnErrorPolicy.NOTIFY:
            await self._notify_failure(definition, execution, step, error)
        return proceed

    def _record_failure(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        run: StepRun,
        now,
        status: StepStatus,
        message: str,
    ) -> None:
        run.status = status
        run.completed_at = now
        run.duration_ms = duration_ms(run.started_at, now)
        run.error = message
        execution.failed_steps.append(step.id)
        execution.metrics.failed_steps += 1

    async def _fail(
        self,
        execution_id: str,
        step: Optional[WorkflowStep],
        code: str,
        message: str,
        retryable: bool = False,
    ) -> None:
        """Put an ACTIVE execution into ERROR for a reason outside any step handler."""

        def apply(execution: WorkflowExecution) -> None:
            if execution.status != ExecutionStatus.ACTIVE:
                return
            execution.errors.append(WorkflowError(
                step_id=step.id if step else None,
                step_name=step.display_name if step else None,
                code=code,
                message=message,
                type=_ERROR_TYPES.get(code, ErrorType.EXECUTION),
                severity=ErrorSeverity.CRITICAL if code == ErrorCode.SYSTEM.value else ErrorSeverity.HIGH,
                retryable=retryable,
            ))
            self._finish(execution, ExecutionStatus.ERROR, utc_now())

        await self._mutate(execution_id, apply)
        logger.warning("execution_failed", execution_id=execution_id, code=code, error=message)

    async def _notify_failure(
        self,
        definition: WorkflowDefinition,
        execution: WorkflowExecution,
        step: WorkflowStep,
        error: StepExecutionError,
    ) -> None:
        """Best-effort failure notice to the workflow's error recipients."""
        recipients = definition.settings.error_notification_recipients
        notifier = self._dispatcher.capabilities.notifier
        if not recipients or notifier is None:
            logger.info("error_notification_skipped", execution_id=execution.id, has_notifier=notifier is not None)
            return
        try:
            await notifier.send(
                "email",
                list(recipients),
                f"Workflow '{definition.name}' failed",
                f"Step '{step.display_name}' of execution {execution.id} failed: {error.message}",
            )
        except Exception as e:
            logger.warning("error_notification_failed", execution_id=execution.id, error=str(e))

    # ─── State helpers ────────────────────────────────────────

    def _finish(self, execution: WorkflowExecution, status: ExecutionStatus, now) -> None:
        execution.status = status
        execution.end_time = now
        execution.duration = duration_ms(execution.start_time, now)
        execution.metrics.total_duration_ms = execution.duration
        if status == ExecutionStatus.COMPLETED:
            execution.next_steps = []

    def _complete_if_active(self, execution: WorkflowExecution) -> None:
        if execution.status == ExecutionStatus.ACTIVE:
            self._finish(execution, ExecutionStatus.COMPLETED, utc_now())

    def _workflow_timed_out(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> bool:
        if definition.settings.timeout is None:
            return False
        limit = self._settings.minutes_to_seconds(definition.settings.timeout)
        if limit <= 0:
            return False
        since = ensure_utc(execution.resumed_at or execution.start_time)
        return (utc_now() - since).total_seconds() > limit

    async def _load_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await self._definitions.get(definition_id)
        if definition is None:
            raise NotFoundError(f"Workflow '{definition_id}' not found")
        return definition

    async def _mutate(self, execution_id: str, fn: Callable[[WorkflowExecution], Any]) -> tuple[WorkflowExecution, Any]:
        """Reload, apply ``fn`` and write one execution under its lock.

        Retries on ConcurrencyError; exceptions raised by ``fn`` propagate
        without writing.
        """
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        last_error: Optional[ConcurrencyError] = None
        async with lock:
            for attempt in range(1, self._settings.MAX_UPDATE_ATTEMPTS + 1):
                execution = await self.get_execution_status(execution_id)
                outcome = fn(execution)
                execution.updated_at = utc_now()
                try:
                    return await self._executions.update(execution), outcome
                except ConcurrencyError as e:
                    last_error = e
                    logger.debug("execution_update_conflict", execution_id=execution_id, attempt=attempt)
        raise last_error

    # ─── Callbacks ────────────────────────────────────────────

    async def _step_finished(self, execution: WorkflowExecution, step_id: str) -> None:
        if not self._on_step_complete:
            return
        try:
            await self._on_step_complete(execution, execution.step_runs.get(step_id))
        except Exception as e:
            logger.warning("on_step_complete_callback_failed", execution_id=execution.id, error=str(e))

    async def _execution_finished(self, execution: WorkflowExecution) -> None:
        logger.info(
            "execution_finished",
            execution_id=execution.id,
            status=execution.status.value,
            duration_ms=execution.duration,
            completed_steps=len(execution.completed_steps),
        )
        # retry() installs a fresh event if the execution is resumed
        self._cancel_events.pop(execution.id, None)
        lock = self._locks.get(execution.id)
        if lock is not None and not lock.locked():
            self._locks.pop(execution.id, None)
        if not self._on_execution_complete:
            return
        try:
            await self._on_execution_complete(execution)
        except Exception as e:
            logger.error("on_execution_complete_callback_failed", execution_id=execution.id, error=str(e))


def _approval_satisfied(config: ApprovalGateConfig, approvals: list[ApprovalRecord]) -> bool:
    granted = {a.approved_by for a in approvals if a.approved}
    listed = set(config.approvers)
    if config.approval_type == ApprovalType.SINGLE:
        return bool(granted)
    if config.approval_type == ApprovalType.MULTIPLE:
        return len(granted & listed) * 2 > len(listed)
    return listed <= granted
