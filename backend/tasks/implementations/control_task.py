"""Flow-control steps: markers, approval gate, branching, delay, data validation.

None of these need an external capability. CustomActionTask is the
fallback for every step type without a dedicated handler.
"""

from core.constants import ConditionType, ErrorCode, StepType
from core.exceptions import ExpressionError
from core.utils import utc_now
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.expressions import ExpressionEvaluator
from workflow.step_configs import ApprovalGateConfig, DataValidationConfig, DelayConfig


class MarkerTask(BaseTask):
    """START and END: nothing to do beyond bookkeeping."""

    display_name = "Marker"
    description = "Start or end of a workflow"

    async def execute(self, ctx: StepContext) -> TaskResult:
        return TaskResult(success=True, output={"marker": ctx.step.type.value})


class StartTask(MarkerTask):
    task_type = StepType.START.value
    display_name = "Start"


class EndTask(MarkerTask):
    task_type = StepType.END.value
    display_name = "End"


# ─── Approval ─────────────────────────────────────────────────

class ApprovalGateTask(BaseTask):
    """Suspend the execution until the approvers decide.

    With ``autoApproveAfter`` (minutes) the gate approves itself once that
    time has passed. Without it the step reports ``waiting`` and the driver
    parks the execution in WAITING_APPROVAL until ``approve_step`` is called.
    """

    task_type = StepType.APPROVAL_GATE.value
    display_name = "Approval Gate"
    description = "Wait for an approval decision"
    config_model = ApprovalGateConfig

    @classmethod
    def declared_wait_minutes(cls, config: ApprovalGateConfig) -> float:
        return config.auto_approve_after or 0.0

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: ApprovalGateConfig = ctx.config
        base = {
            "approvers": list(config.approvers),
            "approval_type": config.approval_type.value,
        }

        if config.auto_approve_after is None:
            return TaskResult(
                success=True,
                waiting=True,
                output={**base, "status": "pending_approval", "requested_at": utc_now().isoformat()},
            )

        cancelled = await ctx.sleep(ctx.settings.minutes_to_seconds(config.auto_approve_after))
        if cancelled:
            return TaskResult.failure("Execution cancelled while waiting for auto-approval", retryable=False)

        return TaskResult(
            success=True,
            output={
                **base,
                "status": "auto_approved",
                "approved_by": "system",
                "approved_at": utc_now().isoformat(),
            },
        )


# ─── Branching ────────────────────────────────────────────────

class ConditionalBranchTask(BaseTask):
    """Evaluate the step's conditions and emit the matching actions.

    IF, WHEN and WHILE take ``on_true`` when the expression holds; UNLESS
    inverts it. WHILE is evaluated once per visit; looping is done with a
    GOTO action back to an earlier step.
    """

    task_type = StepType.CONDITIONAL_BRANCH.value
    display_name = "Conditional Branch"
    description = "Choose a path based on execution variables"

    async def execute(self, ctx: StepContext) -> TaskResult:
        results = []
        actions = []
        for condition in ctx.step.conditions:
            try:
                value = ExpressionEvaluator.evaluate_bool(condition.expression, ctx.variables)
            except ExpressionError as e:
                return TaskResult.failure(e.message, code=ErrorCode.EXPRESSION_ERROR.value, retryable=False)
            holds = not value if condition.type == ConditionType.UNLESS else value
            results.append({"expression": condition.expression, "result": holds})
            actions.extend(condition.on_true if holds else condition.on_false)

        return TaskResult(
            success=True,
            output={
                "condition_met": any(r["result"] for r in results),
                "results": results,
                "actions": [a.model_dump(mode="json") for a in actions],
                "evaluated_at": utc_now().isoformat(),
            },
            actions=actions,
        )


# ─── Timers ───────────────────────────────────────────────────

class DelayTask(BaseTask):
    task_type = StepType.DELAY.value
    display_name = "Delay"
    description = "Pause the execution for a number of minutes"
    config_model = DelayConfig

    @classmethod
    def declared_wait_minutes(cls, config: DelayConfig) -> float:
        return config.delay_minutes

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: DelayConfig = ctx.config
        seconds = ctx.settings.minutes_to_seconds(config.delay_minutes)
        cancelled = await ctx.sleep(seconds)
        return TaskResult(
            success=True,
            output={
                "delay_minutes": config.delay_minutes,
                "actual_delay_seconds": seconds,
                "cancelled": cancelled,
            },
        )


# ─── Data ─────────────────────────────────────────────────────

class DataValidationTask(BaseTask):
    """Fail if any checked variable is null or an empty string."""

    task_type = StepType.DATA_VALIDATION.value
    display_name = "Validate Data"
    description = "Check that execution variables are present"
    config_model = DataValidationConfig

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: DataValidationConfig = ctx.config
        names = config.required_variables if config.required_variables is not None else list(ctx.variables)

        results = []
        for name in names:
            value = ctx.variables.get(name)
            valid = value is not None and value != ""
            results.append({
                "field": name,
                "is_valid": valid,
                "message": "Valid" if valid else "Missing or empty value",
            })

        invalid = [r["field"] for r in results if not r["is_valid"]]
        output = {"is_valid": not invalid, "validation_results": results}
        if invalid:
            return TaskResult.failure(
                f"Data validation failed for: {', '.join(invalid)}",
                code=ErrorCode.DATA_VALIDATION_FAILED.value,
                retryable=False,
                output=output,
            )
        return TaskResult(success=True, output=output)


# ─── Fallback ─────────────────────────────────────────────────

class CustomActionTask(BaseTask):
    """Default handler for step types with nothing registered.

    Records the resolved config as output. Register a real handler with
    ``TaskRegistry.register`` to give a type behaviour.
    """

    task_type = StepType.CUSTOM_ACTION.value
    display_name = "Custom Action"
    description = "Pass-through step"

    async def execute(self, ctx: StepContext) -> TaskResult:
        return TaskResult(
            success=True,
            output={
                "step_type": ctx.step.type.value,
                "config": ctx.config.model_dump(mode="json", exclude_none=True),
                "message": "Custom step executed",
            },
        )


CONTROL_TASK_TYPES = {
    StepType.START: StartTask,
    StepType.END: EndTask,
    StepType.APPROVAL_GATE: ApprovalGateTask,
    StepType.CONDITIONAL_BRANCH: ConditionalBranchTask,
    StepType.DELAY: DelayTask,
    StepType.DATA_VALIDATION: DataValidationTask,
    StepType.CUSTOM_ACTION: CustomActionTask,
}
