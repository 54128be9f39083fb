"""
Base task interface for all step handlers.

Every step type (document generation, notification, approval gate, etc.)
is handled by a BaseTask subclass implementing execute(). The dispatcher
calls run(), which adds timing and turns exceptions into a failed
TaskResult.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

import structlog

from app.config import Settings
from core.constants import ErrorCode
from core.exceptions import StepExecutionError
from tasks.capabilities import Capabilities
from workflow.models import ExecutionContext, StepAction, WorkflowStep
from workflow.step_configs import StepConfig

logger = structlog.get_logger(__name__)


@dataclass
class StepContext:
    """Everything a handler may read while running one step."""

    execution_id: str
    workflow_id: str
    step: WorkflowStep
    config: StepConfig
    variables: Dict[str, Any]
    context: ExecutionContext
    capabilities: Capabilities
    settings: Settings
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless the execution is cancelled first.

        Returns:
            True if the sleep was cut short by cancellation
        """
        if seconds <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


class TaskResult:
    """Standardized result from a step handler."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        error_code: str = ErrorCode.EXECUTION_ERROR.value,
        retryable: bool = True,
        waiting: bool = False,
        actions: Optional[List[StepAction]] = None,
        variables: Optional[Dict[str, Any]] = None,
        metrics: Optional[Dict[str, int]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.error_code = error_code
        self.retryable = retryable
        # Step is suspended until an external event resumes it
        self.waiting = waiting
        # Branch actions for the driver to apply
        self.actions = actions or []
        # Variable updates merged into the execution
        self.variables = variables or {}
        # Increments applied to ExecutionMetrics counters
        self.metrics = metrics or {}
        self.metadata = metadata or {}
        self.duration_ms = duration_ms

    @classmethod
    def failure(cls, error: str, code: str = ErrorCode.EXECUTION_ERROR.value, retryable: bool = True, **kwargs) -> "TaskResult":
        return cls(success=False, error=error, error_code=code, retryable=retryable, **kwargs)


class BaseTask(ABC):
    """
    Abstract base class for all step handlers.

    Subclasses must implement:
    - execute(ctx) -> TaskResult
    - task_type (class attribute, a StepType value)
    - display_name (class attribute)
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"
    config_model: Type[StepConfig] = StepConfig

    @abstractmethod
    async def execute(self, ctx: StepContext) -> TaskResult:
        """
        Execute the step.

        Args:
            ctx: Step context with the resolved, typed config and the
                 execution's variables and capabilities

        Returns:
            TaskResult with output or error
        """
        pass

    async def run(self, ctx: StepContext) -> TaskResult:
        """
        Run the task with timing and error handling.

        This is the entry point called by the step dispatcher.
        """
        start = time.monotonic()
        log = logger.bind(
            task_type=self.task_type,
            execution_id=ctx.execution_id,
            step_id=ctx.step.id,
        )
        try:
            log.debug("task_starting", task_name=self.display_name)
            result = await self.execute(ctx)
            result.duration_ms = (time.monotonic() - start) * 1000
            log.debug(
                "task_completed",
                success=result.success,
                waiting=result.waiting,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except StepExecutionError as e:
            duration_ms = (time.monotonic() - start) * 1000
            log.warning("task_failed", error=e.message, code=e.code, duration_ms=round(duration_ms, 2))
            return TaskResult.failure(e.message, e.code, e.retryable, metadata=e.details, duration_ms=duration_ms)

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            log.error(
                "task_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
            )
            return TaskResult.failure(str(e) or type(e).__name__, duration_ms=duration_ms)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """Return JSON schema for the step's configuration."""
        return cls.config_model.model_json_schema()

    @classmethod
    def declared_wait_minutes(cls, config: StepConfig) -> float:
        """Minutes the step itself asks to wait; added to its timeout budget."""
        return 0.0
