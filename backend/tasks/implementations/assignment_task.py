"""Task assignment step."""

from core.constants import ErrorCode, StepType
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.step_configs import TaskAssignmentConfig


class TaskAssignmentTask(BaseTask):
    """Hand a work item to people or roles via the task_assigner capability.

    Assignees come from the config, falling back to the step's own
    ``assigned_to`` / ``assigned_roles``.
    """

    task_type = StepType.TASK_ASSIGNMENT.value
    display_name = "Assign Task"
    description = "Create a task for users or roles"
    config_model = TaskAssignmentConfig

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: TaskAssignmentConfig = ctx.config
        assigned_to = list(config.assigned_to or ctx.step.assigned_to)
        assigned_roles = list(config.assigned_roles or ctx.step.assigned_roles)
        if not assigned_to and not assigned_roles:
            return TaskResult.failure(
                f"Step '{ctx.step.id}' has no assignees",
                code=ErrorCode.VALIDATION.value,
                retryable=False,
            )

        assigner = ctx.capabilities.require("task_assigner")
        title = config.title or ctx.step.display_name
        created = await assigner.assign(
            assigned_to,
            assigned_roles,
            title,
            config.description,
            config.due_in_days,
            {
                "execution_id": ctx.execution_id,
                "workflow_id": ctx.workflow_id,
                "step_id": ctx.step.id,
                "case_id": ctx.context.case_id,
                "client_id": ctx.context.client_id,
            },
        )

        return TaskResult(
            success=True,
            output={
                "assigned_to": assigned_to,
                "assigned_roles": assigned_roles,
                "title": title,
                **created,
            },
            metrics={"tasks_assigned": 1},
        )


ASSIGNMENT_TASK_TYPES = {
    StepType.TASK_ASSIGNMENT: TaskAssignmentTask,
}
