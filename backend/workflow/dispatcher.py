"""Step dispatcher.

Resolves a step's handler by type, substitutes ``{{variable}}`` templates
into its config, validates the result against the step type's config
model and runs the handler under the step timeout.
"""

import asyncio
from typing import Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from app.config import Settings, get_settings
from core.constants import ErrorCode
from core.exceptions import StepExecutionError, StepTimeoutError
from tasks.base_task import StepContext, TaskResult
from tasks.capabilities import Capabilities
from tasks.registry import TaskRegistry, get_task_registry
from workflow.expressions import ExpressionEvaluator
from workflow.models import WorkflowExecution, WorkflowStep
from workflow.step_configs import StepConfig, parse_step_config

logger = structlog.get_logger(__name__)


class StepDispatcher:
    """Executes individual workflow steps by delegating to registered handlers."""

    def __init__(
        self,
        task_registry: Optional[TaskRegistry] = None,
        capabilities: Optional[Capabilities] = None,
        settings: Optional[Settings] = None,
    ):
        self._registry = task_registry or get_task_registry()
        self._capabilities = capabilities or Capabilities()
        self._settings = settings or get_settings()

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    @property
    def registry(self) -> TaskRegistry:
        return self._registry

    def timeout_for(self, step: WorkflowStep, config: Optional[StepConfig] = None) -> float:
        """Handler budget: the step timeout plus any wait its config declares."""
        timeout = step.timeout_seconds or self._settings.DEFAULT_STEP_TIMEOUT_SECONDS
        task_class = self._registry.get(step.type)
        if isinstance(config, task_class.config_model):
            timeout += self._settings.minutes_to_seconds(task_class.declared_wait_minutes(config))
        return timeout

    async def dispatch(
        self,
        execution: WorkflowExecution,
        step: WorkflowStep,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TaskResult:
        """Run one step and return its successful result.

        Raises:
            StepTimeoutError: if the handler does not return within the step timeout
            StepExecutionError: if the config is invalid or the handler fails
        """
        resolved = ExpressionEvaluator.resolve_config(step.config, execution.variables)
        try:
            config = parse_step_config(step.type, resolved)
        except PydanticValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise StepExecutionError(
                f"Invalid config for step '{step.id}': {problems}",
                code=ErrorCode.VALIDATION.value,
                retryable=False,
            )

        task = self._registry.create_instance(step.type)
        ctx = StepContext(
            execution_id=execution.id,
            workflow_id=execution.workflow_definition_id,
            step=step,
            config=config,
            variables=dict(execution.variables),
            context=execution.context,
            capabilities=self._capabilities,
            settings=self._settings,
            cancel_event=cancel_event or asyncio.Event(),
        )

        timeout = self.timeout_for(step, config)
        try:
            result = await asyncio.wait_for(task.run(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("step_timed_out", execution_id=execution.id, step_id=step.id, timeout_seconds=timeout)
            raise StepTimeoutError(f"Step '{step.display_name}' timed out after {timeout}s", timeout_seconds=timeout)

        if not result.success:
            raise StepExecutionError(
                result.error or f"Step '{step.display_name}' failed",
                code=result.error_code,
                retryable=result.retryable,
                details={"output": result.output} if result.output else result.metadata,
            )

        if config.output_variable:
            result.variables[config.output_variable] = result.output
        return result
