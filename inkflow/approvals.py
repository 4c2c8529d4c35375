"""Multi-approver quorum tracking for approval-gate steps."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .contracts import ApprovalGateConfig, ApprovalMode
from .errors import ApprovalError
from .events import EventEmitter, EventType, execution_event
from .persistence.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    ExecutionRecord,
    utcnow,
)
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

_RESOLUTION_EVENTS = {
    ApprovalStatus.APPROVED: EventType.APPROVAL_APPROVED,
    ApprovalStatus.REJECTED: EventType.APPROVAL_REJECTED,
    ApprovalStatus.EXPIRED: EventType.APPROVAL_EXPIRED,
}


def required_approvals(mode: ApprovalMode | str, approver_count: int) -> int:
    """Number of approvals that settle a request as approved.

    ``any`` needs one, ``all`` needs every approver and ``majority`` needs
    ``ceil(n / 2)``.
    """
    mode = ApprovalMode(mode)
    if mode == ApprovalMode.ANY:
        return 1
    if mode == ApprovalMode.ALL:
        return approver_count
    return math.ceil(approver_count / 2)


def evaluate_request(request: ApprovalRequest, now: datetime) -> ApprovalStatus:
    """Quorum outcome for ``request`` as of ``now``.

    Expiry wins over everything else; a request is rejected as soon as the
    approvers who have not voted can no longer lift it to the quorum.
    """
    if request.status != ApprovalStatus.PENDING:
        return request.status
    if request.expires_at is not None and now > request.expires_at:
        return ApprovalStatus.EXPIRED
    if request.current_approvals >= request.required_approvals:
        return ApprovalStatus.APPROVED
    if request.current_approvals + request.outstanding < request.required_approvals:
        return ApprovalStatus.REJECTED
    return ApprovalStatus.PENDING


class ApprovalGate:
    """Opens approval requests and records approver decisions.

    Resolution is a conditional update from ``pending``, so whichever caller
    settles a request emits its ``approval.*`` event exactly once.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        emitter: Optional[EventEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.emitter = emitter
        self._clock = clock

    async def open_request(
        self,
        execution: ExecutionRecord,
        step_id: str,
        config: ApprovalGateConfig,
        step_record_id: Optional[str] = None,
    ) -> ApprovalRequest:
        now = self._clock()
        expires_at = (
            now + timedelta(milliseconds=config.timeout)
            if config.timeout is not None
            else None
        )
        request = ApprovalRequest(
            execution_id=execution.id,
            step_record_id=step_record_id,
            step_id=step_id,
            approvers=list(config.approvers),
            mode=config.mode,
            required_approvals=required_approvals(config.mode, len(config.approvers)),
            expires_at=expires_at,
            escalation_user_id=config.escalation_user_id,
            created_at=now,
        )
        await self.repository.create_approval_request(request)
        logger.info(
            f"Opened approval request {request.id} for step {step_id} "
            f"({request.mode.value}, {request.required_approvals}/{len(request.approvers)})"
        )
        if self.emitter is not None:
            await self.emitter.emit(
                execution_event(
                    EventType.APPROVAL_REQUESTED,
                    execution,
                    step_id=step_id,
                    approval_request_id=request.id,
                    data={
                        "approvers": request.approvers,
                        "mode": request.mode.value,
                        "requiredApprovals": request.required_approvals,
                        "expiresAt": expires_at.isoformat() if expires_at else None,
                    },
                )
            )
        return request

    async def record_response(
        self,
        request_id: str,
        approver_id: str,
        decision: ApprovalDecision | str,
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        """Count one approver's decision and settle the request if possible.

        Raises:
            ApprovalError: the request is unknown or no longer pending, the
                approver is not on the list, or already responded.
        """
        request = await self.repository.get_approval_request(request_id)
        if request is None:
            raise ApprovalError(f"Approval request {request_id} not found")
        if request.status != ApprovalStatus.PENDING:
            raise ApprovalError(
                f"Approval request {request_id} is already {request.status.value}"
            )
        if approver_id not in request.approvers:
            raise ApprovalError(
                f"User {approver_id} is not an approver for request {request_id}"
            )

        response = ApprovalResponse(
            request_id=request_id,
            approver_id=approver_id,
            decision=ApprovalDecision(decision),
            comment=comment,
            responded_at=self._clock(),
        )
        request = await self.repository.add_approval_response(response)
        logger.info(
            f"Approver {approver_id} {response.decision.value} request {request_id} "
            f"({request.current_approvals} approved, {request.current_rejections} rejected)"
        )
        return await self._settle(request)

    async def check_status(self, request_id: str) -> ApprovalRequest:
        """Re-evaluate a request without a new vote, e.g. to detect expiry."""
        request = await self.repository.get_approval_request(request_id)
        if request is None:
            raise ApprovalError(f"Approval request {request_id} not found")
        return await self._settle(request)

    async def withdraw(self, execution_id: str) -> List[str]:
        """Expire the execution's pending requests so later votes are refused.

        No ``approval.*`` event is emitted; the execution's own event covers it.
        """
        withdrawn = []
        for request in await self.repository.list_approval_requests(execution_id):
            if request.status != ApprovalStatus.PENDING:
                continue
            if await self.repository.resolve_approval_request(
                request.id, ApprovalStatus.EXPIRED
            ):
                logger.info(f"Withdrew approval request {request.id}")
                withdrawn.append(request.id)
        return withdrawn

    async def _settle(self, request: ApprovalRequest) -> ApprovalRequest:
        outcome = evaluate_request(request, self._clock())
        if outcome == ApprovalStatus.PENDING or outcome == request.status:
            return request
        if await self.repository.resolve_approval_request(request.id, outcome):
            logger.info(f"Approval request {request.id} resolved as {outcome.value}")
            await self._announce(request, outcome)
        # re-read: a concurrent response may have resolved it first
        return await self.repository.get_approval_request(request.id)

    async def _announce(self, request: ApprovalRequest, outcome: ApprovalStatus) -> None:
        if self.emitter is None:
            return
        execution = await self.repository.get_execution(request.execution_id)
        if execution is None:
            return
        await self.emitter.emit(
            execution_event(
                _RESOLUTION_EVENTS[outcome],
                execution,
                step_id=request.step_id,
                approval_request_id=request.id,
                data={
                    "approvals": request.current_approvals,
                    "rejections": request.current_rejections,
                    "requiredApprovals": request.required_approvals,
                },
            )
        )
