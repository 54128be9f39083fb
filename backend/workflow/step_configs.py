"""Typed configuration payloads per step type.

A step's ``config`` is stored as authored (it may carry ``{{variable}}``
templates). The definition validator checks it against the model for the
step's type; the dispatcher validates it again after template substitution
and hands the typed model to the handler.

Keys are accepted in either snake_case or camelCase (``templateId``).
"""

import re
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel, to_snake

from core.constants import ApprovalType, StepType

TEMPLATE_TOKEN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


class StepConfig(BaseModel):
    """Base for every step config. Unknown keys are kept."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    # Variable that receives the step output once the step completes
    output_variable: Optional[str] = None


class DocumentGenerationConfig(StepConfig):
    template_id: str
    output_format: list[str] = Field(min_length=1)
    document_name: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationConfig(StepConfig):
    recipients: list[str] = Field(min_length=1)
    subject: Optional[str] = None
    message: str


class ApprovalGateConfig(StepConfig):
    approvers: list[str] = Field(min_length=1)
    approval_type: ApprovalType
    # Minutes before the gate approves itself; absent means wait for a person
    auto_approve_after: Optional[float] = Field(default=None, ge=0)


class ApiCallConfig(StepConfig):
    endpoint: str
    method: str
    headers: dict[str, str] = Field(default_factory=dict)
    payload: Any = None


class DelayConfig(StepConfig):
    delay_minutes: float = Field(ge=0)


class TaskAssignmentConfig(StepConfig):
    # Either list may be empty here; the step-level assignment can supply it
    assigned_to: list[str] = Field(default_factory=list)
    assigned_roles: list[str] = Field(default_factory=list)
    title: Optional[str] = None
    description: Optional[str] = None
    due_in_days: Optional[int] = Field(default=None, ge=0)


class DataValidationConfig(StepConfig):
    # Restrict the check to these names; None means every current variable
    required_variables: Optional[list[str]] = None


STEP_CONFIG_MODELS: dict[StepType, Type[StepConfig]] = {
    StepType.DOCUMENT_GENERATION: DocumentGenerationConfig,
    StepType.EMAIL_NOTIFICATION: NotificationConfig,
    StepType.SMS_NOTIFICATION: NotificationConfig,
    StepType.SLACK_NOTIFICATION: NotificationConfig,
    StepType.APPROVAL_GATE: ApprovalGateConfig,
    StepType.API_CALL: ApiCallConfig,
    StepType.DELAY: DelayConfig,
    StepType.TASK_ASSIGNMENT: TaskAssignmentConfig,
    StepType.DATA_VALIDATION: DataValidationConfig,
}


def config_model_for(step_type: StepType) -> Type[StepConfig]:
    return STEP_CONFIG_MODELS.get(step_type, StepConfig)


def contains_template(value: Any) -> bool:
    """True if any string inside ``value`` carries a ``{{...}}`` token."""
    if isinstance(value, str):
        return TEMPLATE_TOKEN.search(value) is not None
    if isinstance(value, dict):
        return any(contains_template(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_template(v) for v in value)
    return False


def required_keys(model: Type[StepConfig]) -> list[str]:
    return [name for name, info in model.model_fields.items() if info.is_required()]


def check_step_config(step_type: StepType, config: dict[str, Any]) -> list[str]:
    """Return human-readable problems with an authored step config.

    Values holding templates cannot be type-checked until the execution's
    variables are known, so for those keys only presence is checked.
    """
    model = config_model_for(step_type)
    problems = []

    for name in required_keys(model):
        alias = model.model_fields[name].alias
        if name not in config and (alias is None or alias not in config):
            problems.append(f"missing required config key '{alias or name}'")
    if problems:
        return problems

    templated = {to_snake(key) for key, value in config.items() if contains_template(value)}
    candidate = {
        key: (None if to_snake(key) in templated else value)
        for key, value in config.items()
    }
    try:
        model.model_validate(candidate)
    except PydanticValidationError as exc:
        for err in exc.errors():
            if err["loc"] and to_snake(str(err["loc"][0])) in templated:
                continue
            loc = ".".join(str(part) for part in err["loc"])
            problems.append(f"config '{loc}': {err['msg']}")
    return problems


def parse_step_config(step_type: StepType, config: dict[str, Any]) -> StepConfig:
    """Validate a fully resolved config into its typed model."""
    return config_model_for(step_type).model_validate(config)
