"""Constants and enums for the workflow automation engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    ACTIVE = "active"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


# Executions in these states still reference their definition.
NON_TERMINAL_STATUSES = (ExecutionStatus.ACTIVE, ExecutionStatus.WAITING_APPROVAL)
TERMINAL_STATUSES = (
    ExecutionStatus.COMPLETED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.ERROR,
)


class StepStatus(str, Enum):
    """Status of a single step run inside an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    WAITING_APPROVAL = "waiting_approval"
    TIMEOUT = "timeout"


class StepType(str, Enum):
    """Closed vocabulary of step kinds."""

    START = "start"
    END = "end"

    # Documents
    DOCUMENT_GENERATION = "document_generation"
    DOCUMENT_REVIEW = "document_review"
    DOCUMENT_SIGNATURE = "document_signature"

    # Communication
    EMAIL_NOTIFICATION = "email_notification"
    SMS_NOTIFICATION = "sms_notification"
    SLACK_NOTIFICATION = "slack_notification"
    CALENDAR_EVENT = "calendar_event"

    # Work items
    TASK_ASSIGNMENT = "task_assignment"
    DATA_COLLECTION = "data_collection"
    DATA_VALIDATION = "data_validation"
    APPROVAL_GATE = "approval_gate"

    # Flow control
    CONDITIONAL_BRANCH = "conditional_branch"
    PARALLEL_SPLIT = "parallel_split"
    PARALLEL_JOIN = "parallel_join"
    LOOP = "loop"
    RETRY = "retry"
    ERROR_HANDLER = "error_handler"

    # Integrations
    API_CALL = "api_call"
    DATABASE_QUERY = "database_query"
    FILE_TRANSFER = "file_transfer"
    WEBHOOK_TRIGGER = "webhook_trigger"

    # Timers
    DELAY = "delay"
    DEADLINE_CHECK = "deadline_check"
    SCHEDULE_TRIGGER = "schedule_trigger"

    # Extension points
    CUSTOM_ACTION = "custom_action"
    SCRIPT_EXECUTION = "script_execution"


NOTIFICATION_STEP_TYPES = (
    StepType.EMAIL_NOTIFICATION,
    StepType.SMS_NOTIFICATION,
    StepType.SLACK_NOTIFICATION,
)

# Declared in the vocabulary but rejected by the validator; the drive loop is
# strictly sequential and has no join barrier.
UNSUPPORTED_STEP_TYPES = (StepType.PARALLEL_SPLIT, StepType.PARALLEL_JOIN)


class WorkflowType(str, Enum):
    """Business classification of a workflow definition."""

    CLIENT_ONBOARDING = "client_onboarding"
    CASE_INTAKE = "case_intake"
    DOCUMENT_APPROVAL = "document_approval"
    CONTRACT_NEGOTIATION = "contract_negotiation"
    DEADLINE_MANAGEMENT = "deadline_management"
    BILLING_PROCESS = "billing_process"
    COMPLIANCE_CHECK = "compliance_check"
    DISCOVERY_PROCESS = "discovery_process"
    SETTLEMENT_PROCESS = "settlement_process"
    COURT_FILING = "court_filing"
    CLIENT_COMMUNICATION = "client_communication"
    DOCUMENT_REVIEW = "document_review"
    CUSTOM = "custom"


class WorkflowStatus(str, Enum):
    """Definition-level status used as a list filter."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class WorkflowPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


class WorkflowComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    ENTERPRISE = "enterprise"


# Multiplier applied to the base duration estimate.
COMPLEXITY_MULTIPLIERS: dict[WorkflowComplexity, float] = {
    WorkflowComplexity.SIMPLE: 1.0,
    WorkflowComplexity.MODERATE: 1.5,
    WorkflowComplexity.COMPLEX: 2.0,
    WorkflowComplexity.ENTERPRISE: 3.0,
}


class TriggerCategory(str, Enum):
    EVENT = "event"
    SCHEDULE = "schedule"
    MANUAL = "manual"
    WEBHOOK = "webhook"
    SYSTEM = "system"


class TriggerType(str, Enum):
    """Cause that initiated an execution."""

    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_SIGNED = "document_signed"
    DOCUMENT_EXPIRED = "document_expired"
    CASE_CREATED = "case_created"
    CASE_UPDATED = "case_updated"
    CLIENT_REGISTERED = "client_registered"
    DEADLINE_APPROACHING = "deadline_approaching"
    PAYMENT_RECEIVED = "payment_received"
    CONTRACT_EXECUTED = "contract_executed"
    SCHEDULE = "schedule"
    RECURRING = "recurring"
    MANUAL_START = "manual_start"
    API_TRIGGER = "api_trigger"
    EMAIL_RECEIVED = "email_received"
    WEBHOOK = "webhook"
    FILE_WATCHER = "file_watcher"
    USER_LOGIN = "user_login"
    SYSTEM_ERROR = "system_error"
    THRESHOLD_EXCEEDED = "threshold_exceeded"

    @property
    def category(self) -> TriggerCategory:
        return TRIGGER_CATEGORIES.get(self, TriggerCategory.EVENT)


TRIGGER_CATEGORIES: dict[TriggerType, TriggerCategory] = {
    TriggerType.SCHEDULE: TriggerCategory.SCHEDULE,
    TriggerType.RECURRING: TriggerCategory.SCHEDULE,
    TriggerType.MANUAL_START: TriggerCategory.MANUAL,
    TriggerType.API_TRIGGER: TriggerCategory.MANUAL,
    TriggerType.WEBHOOK: TriggerCategory.WEBHOOK,
    TriggerType.EMAIL_RECEIVED: TriggerCategory.WEBHOOK,
    TriggerType.FILE_WATCHER: TriggerCategory.SYSTEM,
    TriggerType.USER_LOGIN: TriggerCategory.SYSTEM,
    TriggerType.SYSTEM_ERROR: TriggerCategory.SYSTEM,
    TriggerType.THRESHOLD_EXCEEDED: TriggerCategory.SYSTEM,
}


class ConditionOperator(str, Enum):
    """Operators usable in trigger conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class ConditionType(str, Enum):
    """Kinds of step branch condition."""

    IF = "if"
    UNLESS = "unless"
    WHEN = "when"
    WHILE = "while"


class ActionType(str, Enum):
    """Actions a branch condition can take."""

    GOTO = "goto"
    SKIP = "skip"
    STOP = "stop"
    RETRY = "retry"
    NOTIFY = "notify"
    SET_VARIABLE = "set_variable"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"


class VariableScope(str, Enum):
    GLOBAL = "global"
    STEP = "step"
    EXECUTION = "execution"


class OnErrorPolicy(str, Enum):
    """What the driver does when a step fails."""

    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"
    NOTIFY = "notify"


class ApprovalType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    UNANIMOUS = "unanimous"


class ErrorType(str, Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    INTEGRATION = "integration"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode(str, Enum):
    """Machine-readable error codes surfaced to callers."""

    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INVALID_STATE = "INVALID_STATE"
    INACTIVE = "INACTIVE"
    STEP_EXECUTION = "STEP_EXECUTION"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    TIMEOUT = "TIMEOUT"
    WORKFLOW_TIMEOUT = "WORKFLOW_TIMEOUT"
    EXPRESSION_ERROR = "EXPRESSION_ERROR"
    DATA_VALIDATION_FAILED = "DATA_VALIDATION_FAILED"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    CAPABILITY_NOT_CONFIGURED = "CAPABILITY_NOT_CONFIGURED"
    INTEGRATION_ERROR = "INTEGRATION_ERROR"
    SYSTEM = "SYSTEM"


class AnalyticsPeriod(str, Enum):
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"
    LAST_YEAR = "last_year"
    CUSTOM = "custom"


PERIOD_DAYS: dict[AnalyticsPeriod, int] = {
    AnalyticsPeriod.LAST_7_DAYS: 7,
    AnalyticsPeriod.LAST_30_DAYS: 30,
    AnalyticsPeriod.LAST_90_DAYS: 90,
    AnalyticsPeriod.LAST_YEAR: 365,
}


class RecommendationType(str, Enum):
    RELIABILITY = "reliability"
    PERFORMANCE = "performance"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"
