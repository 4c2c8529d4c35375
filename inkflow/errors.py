"""Error taxonomy for the inkflow engine."""

from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for engine errors.

    ``retryable`` marks errors the retry manager may treat as transient.
    """

    code = "WORKFLOW_ERROR"

    def __init__(
        self, message: str, code: Optional[str] = None, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.retryable = retryable


class ValidationError(WorkflowError):
    """Malformed definition or illegal operation. Never retried."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class InvalidTransitionError(ValidationError):
    """A state change was requested from a state that does not allow it."""

    code = "INVALID_TRANSITION"


class ExpressionError(ValidationError):
    """A condition expression could not be parsed or evaluated."""

    code = "EXPRESSION_ERROR"


class StepExecutionError(WorkflowError):
    """Wraps a failed step and carries the step id."""

    code = "STEP_EXECUTION_ERROR"

    def __init__(self, message: str, step_id: str, retryable: bool = False) -> None:
        super().__init__(message, retryable=retryable)
        self.step_id = step_id


class WorkflowTimeoutError(WorkflowError):
    """A configured timeout elapsed (await-signature, approval-gate)."""

    code = "TIMEOUT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True)


class ApprovalError(WorkflowError):
    """Approval-specific failures, e.g. a duplicate response."""

    code = "APPROVAL_ERROR"

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message, retryable=retryable)


class ExecutionCancelledError(WorkflowError):
    """Raised inside a step when its execution was cancelled meanwhile."""

    code = "EXECUTION_CANCELLED"

    def __init__(self, execution_id: str) -> None:
        super().__init__(f"Execution {execution_id} was cancelled")
        self.execution_id = execution_id


__all__ = [
    "WorkflowError",
    "ValidationError",
    "InvalidTransitionError",
    "ExpressionError",
    "StepExecutionError",
    "WorkflowTimeoutError",
    "ApprovalError",
    "ExecutionCancelledError",
]
