"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from ..errors import ApprovalError
from ..state_machine import ExecutionStatus
from .models import (
    TERMINAL_STEP_STATUSES,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    ExecutionRecord,
    StepRecord,
    WorkflowRecord,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowRecord] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._steps: Dict[str, StepRecord] = {}
        self._approvals: Dict[str, ApprovalRequest] = {}
        self._responses: List[ApprovalResponse] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowRecord) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[WorkflowRecord]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    async def create_execution(self, execution: ExecutionRecord) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(
        self,
        execution_id: str,
        expected_status: Optional[ExecutionStatus] = None,
        **changes: Any,
    ) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return False
            if expected_status is not None and execution.status != expected_status:
                return False
            changes.setdefault("updated_at", utcnow())
            self._executions[execution_id] = execution.model_copy(
                update=changes, deep=True
            )
            return True

    async def list_executions(
        self, status: Optional[ExecutionStatus] = None
    ) -> list[ExecutionRecord]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if status is None or e.status == status
        ]

    # ------------------------------------------------------------------
    async def create_step_record(self, record: StepRecord) -> None:
        self._steps[record.id] = record.model_copy(deep=True)

    async def update_step_record(self, record_id: str, **changes: Any) -> bool:
        record = self._steps.get(record_id)
        if record is None or record.status in TERMINAL_STEP_STATUSES:
            return False
        self._steps[record_id] = record.model_copy(update=changes, deep=True)
        return True

    async def get_step_record(self, record_id: str) -> StepRecord | None:
        record = self._steps.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        # dicts keep insertion order, which is creation order
        return [
            r.model_copy(deep=True)
            for r in self._steps.values()
            if r.execution_id == execution_id
        ]

    # ------------------------------------------------------------------
    async def create_approval_request(self, request: ApprovalRequest) -> None:
        self._approvals[request.id] = request.model_copy(deep=True)

    async def get_approval_request(self, request_id: str) -> ApprovalRequest | None:
        request = self._approvals.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def list_approval_requests(
        self, execution_id: Optional[str] = None
    ) -> list[ApprovalRequest]:
        return [
            r.model_copy(deep=True)
            for r in self._approvals.values()
            if execution_id is None or r.execution_id == execution_id
        ]

    async def add_approval_response(self, response: ApprovalResponse) -> ApprovalRequest:
        async with self._lock:
            request = self._approvals.get(response.request_id)
            if request is None:
                raise ApprovalError(f"Approval request {response.request_id} not found")
            if request.status != ApprovalStatus.PENDING:
                raise ApprovalError(
                    f"Approval request {request.id} is already {request.status.value}"
                )
            for existing in self._responses:
                if (
                    existing.request_id == response.request_id
                    and existing.approver_id == response.approver_id
                ):
                    raise ApprovalError(
                        f"Approver {response.approver_id} already responded to "
                        f"request {response.request_id}"
                    )
            self._responses.append(response.model_copy(deep=True))
            if response.decision == ApprovalDecision.APPROVED:
                request.current_approvals += 1
            else:
                request.current_rejections += 1
            return request.model_copy(deep=True)

    async def resolve_approval_request(
        self, request_id: str, status: ApprovalStatus
    ) -> bool:
        async with self._lock:
            request = self._approvals.get(request_id)
            if request is None or request.status != ApprovalStatus.PENDING:
                return False
            request.status = status
            request.resolved_at = utcnow()
            return True

    async def list_approval_responses(self, request_id: str) -> list[ApprovalResponse]:
        return [
            r.model_copy(deep=True) for r in self._responses if r.request_id == request_id
        ]
