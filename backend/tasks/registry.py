"""
Step Handler Registry — maps step types to their handler classes.

Built-in handlers are registered on construction. Any step type without
a handler resolves to CustomActionTask so that every non-parallel type
is executable.
"""

from typing import Dict, Optional, Type, Union

from core.constants import StepType
from tasks.base_task import BaseTask
from tasks.implementations.assignment_task import ASSIGNMENT_TASK_TYPES
from tasks.implementations.control_task import CONTROL_TASK_TYPES, CustomActionTask
from tasks.implementations.document_task import DOCUMENT_TASK_TYPES
from tasks.implementations.http_task import HTTP_TASK_TYPES
from tasks.implementations.notification_task import NOTIFICATION_TASK_TYPES


class TaskRegistry:
    """Central registry for all step handler implementations."""

    fallback: Type[BaseTask] = CustomActionTask

    def __init__(self):
        self._tasks: Dict[StepType, Type[BaseTask]] = {}
        self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in step handlers."""
        # Markers, approval, branching, delay, data checks
        for step_type, task_class in CONTROL_TASK_TYPES.items():
            self.register(step_type, task_class)

        # Document generation
        for step_type, task_class in DOCUMENT_TASK_TYPES.items():
            self.register(step_type, task_class)

        # Email / SMS / Slack
        for step_type, task_class in NOTIFICATION_TASK_TYPES.items():
            self.register(step_type, task_class)

        # External API calls
        for step_type, task_class in HTTP_TASK_TYPES.items():
            self.register(step_type, task_class)

        # Task assignment
        for step_type, task_class in ASSIGNMENT_TASK_TYPES.items():
            self.register(step_type, task_class)

    def register(self, step_type: Union[StepType, str], task_class: Type[BaseTask]):
        """Register (or replace) the handler for a step type."""
        self._tasks[StepType(step_type)] = task_class

    def get(self, step_type: Union[StepType, str]) -> Type[BaseTask]:
        """Get the handler class for a step type, falling back to CustomActionTask."""
        return self._tasks.get(StepType(step_type), self.fallback)

    def has_handler(self, step_type: Union[StepType, str]) -> bool:
        return StepType(step_type) in self._tasks

    def create_instance(self, step_type: Union[StepType, str]) -> BaseTask:
        """Create a new handler instance for a step type."""
        return self.get(step_type)()

    def describe(self, step_type: Union[StepType, str]) -> dict:
        """Metadata and config schema of the handler a step type resolves to."""
        step_type = StepType(step_type)
        cls = self.get(step_type)
        return {
            "task_type": step_type.value,
            "handler": cls.__name__,
            "display_name": cls.display_name,
            "description": cls.description,
            "config_schema": cls.get_config_schema(),
        }

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        return [self.describe(step_type) for step_type in self._tasks]


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton task registry."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry
