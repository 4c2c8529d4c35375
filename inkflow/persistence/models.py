"""Data models for persisted engine state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..contracts import ApprovalMode, WorkflowDefinition, WorkflowStatus
from ..state_machine import ExecutionStatus, StepStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowRecord(BaseModel):
    """A stored workflow definition."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    definition: WorkflowDefinition
    created_at: datetime = Field(default_factory=utcnow)


class ExecutionRecord(BaseModel):
    """One run of a workflow against one document."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    document_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_index: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class StepRecord(BaseModel):
    """Audit row for one entered step. Not modified once terminal."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_id: str
    step_index: int
    step_type: str
    status: StepStatus = StepStatus.PENDING
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class ApprovalRequest(BaseModel):
    """Quorum bookkeeping for an approval-gate step."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_record_id: Optional[str] = None
    step_id: str
    approvers: List[str]
    mode: ApprovalMode
    status: ApprovalStatus = ApprovalStatus.PENDING
    required_approvals: int
    current_approvals: int = 0
    current_rejections: int = 0
    expires_at: Optional[datetime] = None
    escalation_user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def responses(self) -> int:
        return self.current_approvals + self.current_rejections

    @property
    def outstanding(self) -> int:
        """Approvers who have not voted yet."""
        return len(self.approvers) - self.responses


class ApprovalResponse(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    approver_id: str
    decision: ApprovalDecision
    comment: Optional[str] = None
    responded_at: datetime = Field(default_factory=utcnow)


TERMINAL_STEP_STATUSES = {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}
