"""inkflow: workflow execution engine for multi-party document signing."""

from .approvals import ApprovalGate, required_approvals
from .context import ExecutionContext
from .contracts import StepResult, StepType, WorkflowDefinition
from .documents import DocumentService, InMemoryDocumentService
from .events import EventEmitter, EventPayload, EventType
from .expressions import ExpressionEvaluator, evaluate_condition
from .orchestrator import WorkflowExecutor
from .persistence import get_repository
from .webhooks import WebhookConfig, WebhookDelivery

__version__ = "0.1.0"
__all__ = [
    "ApprovalGate",
    "DocumentService",
    "EventEmitter",
    "EventPayload",
    "EventType",
    "ExecutionContext",
    "ExpressionEvaluator",
    "InMemoryDocumentService",
    "StepResult",
    "StepType",
    "WebhookConfig",
    "WebhookDelivery",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "evaluate_condition",
    "get_repository",
    "required_approvals",
]
