"""Custom exceptions for the workflow automation engine."""

from typing import Any, Optional

from core.constants import ErrorCode


class WorkflowEngineError(Exception):
    """Base exception for the workflow automation engine."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str = ErrorCode.SYSTEM.value,
        issues: Optional[list[Any]] = None,
    ):
        """Initialize exception with message, status code and error code.

        Args:
            message: Exception message
            status_code: HTTP status code
            code: Machine-readable error code
            issues: Individual problems behind the error, if any
        """
        self.message = message
        self.status_code = status_code
        self.code = code
        self.issues = list(issues or [])
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.issues:
            data["issues"] = [
                issue.model_dump() if hasattr(issue, "model_dump") else issue
                for issue in self.issues
            ]
        return data


class ValidationError(WorkflowEngineError):
    """Definition or request is malformed."""

    def __init__(self, message: str = "Validation failed", issues: Optional[list[Any]] = None):
        """Initialize ValidationError with 422 status code."""
        super().__init__(message, 422, ErrorCode.VALIDATION.value, issues)


class NotFoundError(WorkflowEngineError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404, ErrorCode.NOT_FOUND.value)


class ConflictError(WorkflowEngineError):
    """Resource conflict exception."""

    def __init__(
        self,
        message: str = "Resource conflict",
        code: str = ErrorCode.CONFLICT.value,
        issues: Optional[list[Any]] = None,
    ):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409, code, issues)


class ConcurrencyError(ConflictError):
    """A stale revision was written; the caller should reload and reapply."""

    def __init__(self, message: str = "Record was modified concurrently"):
        super().__init__(message, ErrorCode.CONCURRENT_MODIFICATION.value)


class InvalidStateError(WorkflowEngineError):
    """Operation is illegal for the current status."""

    def __init__(self, message: str = "Invalid state", code: str = ErrorCode.INVALID_STATE.value):
        """Initialize InvalidStateError with 409 status code."""
        super().__init__(message, 409, code)


class StepExecutionError(WorkflowEngineError):
    """A step handler failed.

    Captured by the execution driver into the execution's error list,
    never returned to the caller of ``execute``.
    """

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.EXECUTION_ERROR.value,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, 500, code)
        self.retryable = retryable
        self.details = details or {}


class StepTimeoutError(StepExecutionError):
    """A step handler did not return within its timeout."""

    def __init__(self, message: str, timeout_seconds: Optional[float] = None):
        super().__init__(
            message,
            code=ErrorCode.TIMEOUT.value,
            retryable=True,
            details={"timeout_seconds": timeout_seconds},
        )


class ExpressionError(WorkflowEngineError):
    """A branch expression could not be parsed or evaluated."""

    def __init__(self, message: str):
        super().__init__(message, 422, ErrorCode.EXPRESSION_ERROR.value)


class InternalError(WorkflowEngineError):
    """Unexpected internal failure."""

    def __init__(self, message: str = "Internal error"):
        super().__init__(message, 500, ErrorCode.SYSTEM.value)
