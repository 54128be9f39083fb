"""Definition validator.

Checks the structural invariants of a workflow definition. Every problem
is collected so an author sees the full list at once. Runs on create and
on every update against the complete merged definition.
"""

import re
from datetime import date, datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from core.constants import ActionType, StepType, UNSUPPORTED_STEP_TYPES, VariableType
from core.exceptions import ConflictError, ExpressionError, ValidationError
from workflow.expressions import ExpressionEvaluator
from workflow.models import ValidationIssue, WorkflowDefinition, WorkflowVariable
from workflow.step_configs import check_step_config

logger = structlog.get_logger(__name__)

_TARGETED_ACTIONS = (ActionType.GOTO, ActionType.SKIP, ActionType.RETRY)


def validate_definition(definition: WorkflowDefinition) -> list[ValidationIssue]:
    """Return every structural problem in ``definition`` (empty list if valid)."""
    issues: list[ValidationIssue] = []

    def add(code: str, message: str, step_id: str = None, field: str = None) -> None:
        issues.append(ValidationIssue(code=code, message=message, step_id=step_id, field=field))

    if not definition.name or not definition.name.strip():
        add("EMPTY_NAME", "Workflow name is required", field="name")

    if not definition.steps:
        add("NO_STEPS", "Workflow must contain at least one step", field="steps")
        return issues

    # Unique ids
    seen: set[str] = set()
    for step in definition.steps:
        if step.id in seen:
            add("DUPLICATE_STEP_ID", f"Step id '{step.id}' is used more than once", step_id=step.id)
        seen.add(step.id)
    step_ids = seen

    # START / END presence
    starts = [s.id for s in definition.steps if s.type == StepType.START]
    if not starts:
        add("MISSING_START", "Workflow must contain a START step", field="steps")
    elif len(starts) > 1:
        add("MULTIPLE_START", f"Workflow has more than one START step: {', '.join(starts)}", field="steps")
    if not any(s.type == StepType.END for s in definition.steps):
        add("MISSING_END", "Workflow must contain an END step", field="steps")

    for step in definition.steps:
        for dep in step.dependencies:
            if dep not in step_ids:
                add("UNKNOWN_DEPENDENCY", f"Step '{step.id}' depends on unknown step '{dep}'", step_id=step.id, field="dependencies")
            elif dep == step.id:
                add("SELF_DEPENDENCY", f"Step '{step.id}' depends on itself", step_id=step.id, field="dependencies")
        for succ in step.successors:
            if succ not in step_ids:
                add("UNKNOWN_SUCCESSOR", f"Step '{step.id}' has unknown successor '{succ}'", step_id=step.id, field="successors")

        if step.type in UNSUPPORTED_STEP_TYPES:
            add(
                "UNSUPPORTED_STEP_TYPE",
                f"Step type '{step.type.value}' is not supported; steps run sequentially",
                step_id=step.id,
                field="type",
            )

        for index, condition in enumerate(step.conditions):
            field = f"conditions[{index}]"
            if not condition.on_true and not condition.on_false:
                add("EMPTY_CONDITION_ACTIONS", f"Condition {index} of step '{step.id}' has no actions", step_id=step.id, field=field)
            try:
                ExpressionEvaluator.parse(condition.expression)
            except ExpressionError as e:
                add("INVALID_EXPRESSION", e.message, step_id=step.id, field=f"{field}.expression")
            for action in [*condition.on_true, *condition.on_false]:
                if action.type in _TARGETED_ACTIONS and action.target not in step_ids:
                    add(
                        "UNKNOWN_ACTION_TARGET",
                        f"Action '{action.type.value}' in step '{step.id}' targets unknown step '{action.target}'",
                        step_id=step.id,
                        field=field,
                    )
                if action.type == ActionType.SET_VARIABLE and not action.target:
                    add("MISSING_ACTION_TARGET", f"SET_VARIABLE in step '{step.id}' needs a target variable", step_id=step.id, field=field)

        for problem in check_step_config(step.type, step.config):
            add("INVALID_STEP_CONFIG", f"Step '{step.id}': {problem}", step_id=step.id, field="config")

        if step.type == StepType.TASK_ASSIGNMENT:
            has_assignee = (
                step.assigned_to
                or step.assigned_roles
                or step.config.get("assigned_to")
                or step.config.get("assignedTo")
                or step.config.get("assigned_roles")
                or step.config.get("assignedRoles")
            )
            if not has_assignee:
                add("MISSING_ASSIGNEE", f"Step '{step.id}' needs assignedTo or assignedRoles", step_id=step.id, field="config")

    names: set[str] = set()
    for variable in definition.variables:
        if variable.name in names:
            add("DUPLICATE_VARIABLE", f"Variable '{variable.name}' is declared more than once", field="variables")
        names.add(variable.name)
        if variable.validation and variable.validation.pattern:
            try:
                re.compile(variable.validation.pattern)
            except re.error as e:
                add("INVALID_PATTERN", f"Variable '{variable.name}' has an invalid pattern: {e}", field="variables")

    return issues


def ensure_valid(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Raise if ``definition`` has any structural problem.

    Raises:
        ConflictError: if step ids collide
        ValidationError: for every other problem
    """
    issues = validate_definition(definition)
    if not issues:
        return definition

    logger.info(
        "definition_rejected",
        workflow_id=definition.id or None,
        issue_codes=[i.code for i in issues],
    )
    if any(i.code == "DUPLICATE_STEP_ID" for i in issues):
        raise ConflictError("Workflow definition has duplicate step ids", issues=issues)
    raise ValidationError(f"Workflow definition is invalid ({len(issues)} problem(s))", issues=issues)


def parse_definition(payload: dict[str, Any]) -> WorkflowDefinition:
    """Build a definition from a raw payload, reporting schema errors as issues."""
    try:
        return WorkflowDefinition.model_validate(payload)
    except PydanticValidationError as exc:
        issues = [
            ValidationIssue(
                code="SCHEMA",
                message=err["msg"],
                field=".".join(str(part) for part in err["loc"]),
            )
            for err in exc.errors()
        ]
        raise ValidationError("Workflow definition does not match the schema", issues=issues)


# ─── Execution variables ──────────────────────────────────────

_TYPE_CHECKS = {
    VariableType.STRING: lambda v: isinstance(v, str),
    VariableType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    VariableType.BOOLEAN: lambda v: isinstance(v, bool),
    VariableType.DATE: lambda v: isinstance(v, (str, date)),
    VariableType.OBJECT: lambda v: isinstance(v, dict),
    VariableType.ARRAY: lambda v: isinstance(v, list),
}


def _check_variable(variable: WorkflowVariable, value: Any) -> list[str]:
    problems = []
    if not _TYPE_CHECKS[variable.type](value):
        return [f"expected {variable.type.value}, got {type(value).__name__}"]
    if variable.type == VariableType.DATE and isinstance(value, str):
        try:
            datetime.fromisoformat(value)
        except ValueError:
            problems.append("is not an ISO-8601 date")

    rule = variable.validation
    if rule is None:
        return problems

    if rule.pattern and isinstance(value, str) and not re.fullmatch(rule.pattern, value):
        problems.append(f"does not match pattern {rule.pattern!r}")
    if isinstance(value, (str, list)):
        if rule.min_length is not None and len(value) < rule.min_length:
            problems.append(f"is shorter than {rule.min_length}")
        if rule.max_length is not None and len(value) > rule.max_length:
            problems.append(f"is longer than {rule.max_length}")
    if variable.type == VariableType.NUMBER:
        if rule.min_value is not None and value < rule.min_value:
            problems.append(f"is less than {rule.min_value}")
        if rule.max_value is not None and value > rule.max_value:
            problems.append(f"is greater than {rule.max_value}")
    if rule.allowed_values is not None and value not in rule.allowed_values:
        problems.append(f"is not one of {rule.allowed_values}")
    return problems


def validate_variables(definition: WorkflowDefinition, provided: dict[str, Any]) -> dict[str, Any]:
    """Check request variables against the definition's declarations.

    Declared defaults fill in absent values. Undeclared variables pass
    through untouched.

    Returns:
        The variable mapping to seed the execution with

    Raises:
        ValidationError: listing every missing or invalid variable
    """
    values = dict(provided)
    issues: list[ValidationIssue] = []

    for variable in definition.variables:
        if values.get(variable.name) is None:
            if variable.default_value is not None:
                values[variable.name] = variable.default_value
            elif variable.required:
                issues.append(ValidationIssue(
                    code="MISSING_VARIABLE",
                    message=f"Required variable '{variable.name}' was not provided",
                    field=f"variables.{variable.name}",
                ))
                continue
            else:
                continue

        for problem in _check_variable(variable, values[variable.name]):
            issues.append(ValidationIssue(
                code="INVALID_VARIABLE",
                message=f"Variable '{variable.name}' {problem}",
                field=f"variables.{variable.name}",
            ))

    if issues:
        raise ValidationError(f"Execution variables are invalid ({len(issues)} problem(s))", issues=issues)
    return values
