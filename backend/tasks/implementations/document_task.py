"""Document generation step."""

from core.constants import StepType
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.step_configs import DocumentGenerationConfig


class DocumentGenerationTask(BaseTask):
    """Render a document template with the execution's variables.

    Config:
        templateId: Template to render (required)
        outputFormat: List of formats, e.g. ["PDF", "DOCX"] (required)
        documentName: Optional file name
        data: Extra values merged over the execution variables
    """

    task_type = StepType.DOCUMENT_GENERATION.value
    display_name = "Generate Document"
    description = "Render a document from a template"
    config_model = DocumentGenerationConfig

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: DocumentGenerationConfig = ctx.config
        renderer = ctx.capabilities.require("documents")

        rendered = await renderer.render(
            config.template_id,
            list(config.output_format),
            {**ctx.variables, **config.data},
            config.document_name,
        )

        return TaskResult(
            success=True,
            output={
                "template_id": config.template_id,
                "formats": list(config.output_format),
                **rendered,
            },
            metrics={"documents_generated": 1},
        )


DOCUMENT_TASK_TYPES = {
    StepType.DOCUMENT_GENERATION: DocumentGenerationTask,
}
