"""Step retry strategies.

A step is re-attempted inline only when its author asked for it, through
``step.max_retries`` or ``settings.on_error == RETRY``. Retries happen
before the execution is put into ERROR; once it is, only an explicit
``retry`` call resumes it.

Usage:
    strategy = RetryStrategy.for_step(step, definition.settings, seconds_per_minute=60)
    output = await execute_with_retry(dispatch, strategy, execution, step)
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from core.constants import OnErrorPolicy
from core.exceptions import StepExecutionError
from workflow.models import WorkflowSettings, WorkflowStep

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryStrategy:
    """How often a failing step is re-attempted and how long to wait in between."""
    max_retries: int = 0
    delay: float = 0.0

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: fail immediately."""
        return cls()

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay (seconds) between retries."""
        return cls(max_retries=max(0, max_retries), delay=max(0.0, delay))

    @classmethod
    def for_step(
        cls,
        step: WorkflowStep,
        settings: WorkflowSettings,
        seconds_per_minute: float = 60.0,
    ) -> 'RetryStrategy':
        """Strategy for one step of a definition.

        ``step.max_retries`` wins; otherwise the workflow-level ``max_retries``
        applies when the on-error policy is RETRY. The delay between attempts
        is ``settings.retry_delay`` minutes.
        """
        max_retries = step.max_retries
        if not max_retries and settings.on_error == OnErrorPolicy.RETRY:
            max_retries = settings.max_retries
        if max_retries <= 0:
            return cls.none()
        return cls.fixed(max_retries, settings.retry_delay * seconds_per_minute)

    @property
    def enabled(self) -> bool:
        return self.max_retries > 0

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Decide whether to retry after ``attempt`` failed attempts.

        Step errors carry their own ``retryable`` hint; anything else is
        treated as a transient timeout or connection failure only.
        """
        if attempt > self.max_retries:
            return False

        if error is None:
            return True

        if isinstance(error, StepExecutionError):
            return error.retryable

        return isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError))


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    stop_event: Optional[asyncio.Event] = None,
    **kwargs,
):
    """Execute a coroutine function with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional async callback(attempt, error, delay) called before each retry.
        stop_event: Once set, the last error is raised instead of retrying.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception once the strategy gives up.
    """
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1

            if not strategy.should_retry(attempt, e):
                raise

            if stop_event is not None and stop_event.is_set():
                logger.info("step_retry_abandoned", attempt=attempt, error=str(e))
                raise

            logger.info(
                "step_retry_scheduled",
                attempt=attempt,
                max_retries=strategy.max_retries,
                delay_seconds=strategy.delay,
                error=str(e),
            )

            if on_retry:
                try:
                    await on_retry(attempt, e, strategy.delay)
                except Exception as cb_error:
                    logger.warning("on_retry_callback_failed", error=str(cb_error))

            if stop_event is None:
                if strategy.delay > 0:
                    await asyncio.sleep(strategy.delay)
                continue

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=strategy.delay)
            except asyncio.TimeoutError:
                continue
            logger.info("step_retry_abandoned", attempt=attempt, error=str(e))
            raise
