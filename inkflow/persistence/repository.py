"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..state_machine import ExecutionStatus
from .models import (
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    ExecutionRecord,
    StepRecord,
    WorkflowRecord,
)


class WorkflowRepository(Protocol):
    """Protocol for engine persistence backends."""

    async def save_workflow(self, workflow: WorkflowRecord) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self) -> list[WorkflowRecord]:
        """Return all stored workflows."""

    async def create_execution(self, execution: ExecutionRecord) -> None:
        """Persist a new execution row."""

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Retrieve an execution by id."""

    async def update_execution(
        self,
        execution_id: str,
        expected_status: Optional[ExecutionStatus] = None,
        **changes: Any,
    ) -> bool:
        """Apply ``changes``; with ``expected_status`` only if the row still has it.

        Returns ``True`` when a row was updated.
        """

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        """Return executions, optionally filtered by status."""

    async def create_step_record(self, record: StepRecord) -> None:
        """Append a step record."""

    async def update_step_record(self, record_id: str, **changes: Any) -> bool:
        """Update a non-terminal step record. Terminal records are left alone."""

    async def get_step_record(self, record_id: str) -> StepRecord | None:
        """Retrieve a step record by id."""

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        """Return step records in creation order."""

    async def create_approval_request(self, request: ApprovalRequest) -> None:
        """Persist a new approval request."""

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        """Retrieve an approval request by id."""

    async def list_approval_requests(
        self, execution_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        """Return approval requests, optionally for one execution."""

    async def add_approval_response(self, response: ApprovalResponse) -> ApprovalRequest:
        """Store a response and bump the matching counter in one atomic step.

        Raises:
            ApprovalError: unknown or non-pending request, or a second
                response from the same approver.
        """

    async def resolve_approval_request(
        self, request_id: str, status: ApprovalStatus
    ) -> bool:
        """Move a pending request to ``status``. Returns ``False`` if not pending."""

    async def list_approval_responses(self, request_id: str) -> list[ApprovalResponse]:
        """Return responses for a request in arrival order."""
