"""Workflow definition and execution data model.

Definitions are reusable templates (a graph of steps plus metadata).
Executions are single runs of a definition and are only ever mutated by
the execution driver in ``workflow.engine``.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.constants import (
    ActionType,
    ConditionOperator,
    ConditionType,
    ErrorSeverity,
    ErrorType,
    ExecutionStatus,
    LogicalOperator,
    OnErrorPolicy,
    StepStatus,
    StepType,
    TERMINAL_STATUSES,
    TriggerType,
    VariableScope,
    VariableType,
    WorkflowComplexity,
    WorkflowPriority,
    WorkflowType,
)
from core.utils import generate_id, utc_now


# ─── Definition ───────────────────────────────────────────────

class VariableValidation(BaseModel):
    """Constraints applied to a variable value when an execution is requested."""

    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    allowed_values: Optional[list[Any]] = None


class WorkflowVariable(BaseModel):
    name: str
    type: VariableType = VariableType.STRING
    description: str = ""
    default_value: Any = None
    required: bool = False
    validation: Optional[VariableValidation] = None
    scope: VariableScope = VariableScope.GLOBAL


class StepAction(BaseModel):
    """One action taken by a branch condition."""

    type: ActionType
    target: Optional[str] = None  # step id for GOTO/SKIP/RETRY, variable name for SET_VARIABLE
    value: Any = None
    message: Optional[str] = None


class StepCondition(BaseModel):
    type: ConditionType = ConditionType.IF
    expression: str
    on_true: list[StepAction] = Field(default_factory=list)
    on_false: list[StepAction] = Field(default_factory=list)


class WorkflowStep(BaseModel):
    """A node in the definition's step graph."""

    id: str
    name: str = ""
    description: str = ""
    type: StepType
    config: dict[str, Any] = Field(default_factory=dict)
    conditions: list[StepCondition] = Field(default_factory=list)
    assigned_to: list[str] = Field(default_factory=list)
    assigned_roles: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    successors: list[str] = Field(default_factory=list)
    max_retries: int = Field(default=0, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class TriggerCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: LogicalOperator = LogicalOperator.AND


class WorkflowTrigger(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("trg"))
    type: TriggerType
    name: str = ""
    conditions: list[TriggerCondition] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0


class WorkflowSettings(BaseModel):
    """Execution settings. Durations are in workflow minutes."""

    timeout: Optional[float] = Field(default=None, gt=0)
    max_retries: int = Field(default=0, ge=0)
    retry_delay: float = Field(default=0.0, ge=0)
    max_parallel_steps: int = Field(default=1, ge=1)
    max_concurrent_executions: Optional[int] = Field(default=None, ge=1)
    on_error: OnErrorPolicy = OnErrorPolicy.STOP
    error_notification_recipients: list[str] = Field(default_factory=list)


class WorkflowPermissions(BaseModel):
    """Role or user ids allowed per operation; enforced by the caller, not the engine."""

    can_view: list[str] = Field(default_factory=list)
    can_edit: list[str] = Field(default_factory=list)
    can_execute: list[str] = Field(default_factory=list)
    can_delete: list[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """A stored workflow template."""

    id: str = ""
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    type: WorkflowType = WorkflowType.CUSTOM
    category: str = "general"
    tags: list[str] = Field(default_factory=list)
    priority: WorkflowPriority = WorkflowPriority.MEDIUM
    complexity: WorkflowComplexity = WorkflowComplexity.SIMPLE
    steps: list[WorkflowStep] = Field(default_factory=list)
    variables: list[WorkflowVariable] = Field(default_factory=list)
    triggers: list[WorkflowTrigger] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    permissions: WorkflowPermissions = Field(default_factory=WorkflowPermissions)
    is_active: bool = True
    is_template: bool = False
    is_public: bool = False
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    usage_count: int = 0
    revision: int = 0

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ─── Execution ────────────────────────────────────────────────

class ExecutionContext(BaseModel):
    """Caller identity and correlation ids captured when the execution is requested."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    user_roles: list[str] = Field(default_factory=list)
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    case_id: Optional[str] = None
    client_id: Optional[str] = None
    matter_id: Optional[str] = None
    document_ids: list[str] = Field(default_factory=list)
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    custom_data: dict[str, Any] = Field(default_factory=dict)


class ApprovalRecord(BaseModel):
    approved_by: str
    approved: bool
    comment: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class StepRun(BaseModel):
    """Bookkeeping for one step inside one execution."""

    step_id: str
    step_name: str
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    attempts: int = 0
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    approvals: list[ApprovalRecord] = Field(default_factory=list)


class ExecutionMetrics(BaseModel):
    total_steps: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    retry_attempts: int = 0
    total_duration_ms: Optional[int] = None
    step_durations: dict[str, int] = Field(default_factory=dict)
    api_calls_made: int = 0
    documents_generated: int = 0
    notifications_sent: int = 0
    tasks_assigned: int = 0


class WorkflowError(BaseModel):
    """Structured error recorded on an execution. Carries no stack information."""

    id: str = Field(default_factory=lambda: generate_id("err"))
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    type: ErrorType = ErrorType.EXECUTION
    severity: ErrorSeverity = ErrorSeverity.HIGH
    timestamp: datetime = Field(default_factory=utc_now)
    retryable: bool = True
    retry_count: int = 0


class WorkflowWarning(BaseModel):
    id: str = Field(default_factory=lambda: generate_id("wrn"))
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    code: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class WorkflowExecution(BaseModel):
    """One run of a workflow definition."""

    id: str
    workflow_definition_id: str
    workflow_name: str
    workflow_version: str
    triggered_by: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL_START
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    priority: WorkflowPriority = WorkflowPriority.MEDIUM
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    duration: Optional[int] = None  # ms
    # Set when a failed execution is retried; workflow timeout counts from here
    resumed_at: Optional[datetime] = None
    current_step: Optional[str] = None
    next_steps: list[str] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    skip_requests: list[str] = Field(default_factory=list)
    step_runs: dict[str, StepRun] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    output: dict[str, Any] = Field(default_factory=dict)
    errors: list[WorkflowError] = Field(default_factory=list)
    warnings: list[WorkflowWarning] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    retry_count: int = 0
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_completed_step(self) -> Optional[str]:
        return self.completed_steps[-1] if self.completed_steps else None


# ─── Requests / responses ─────────────────────────────────────

class ExecuteWorkflowRequest(BaseModel):
    workflow_id: str
    trigger_type: TriggerType = TriggerType.MANUAL_START
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    priority: Optional[WorkflowPriority] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)


class ExecuteWorkflowResponse(BaseModel):
    execution_id: str
    status: ExecutionStatus
    message: str
    estimated_duration: Optional[int] = None  # ms
    next_steps: list[str] = Field(default_factory=list)
    errors: list[WorkflowError] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    """One structural problem found in a definition."""

    code: str
    message: str
    step_id: Optional[str] = None
    field: Optional[str] = None
