"""Step execution: one state machine and one StepRecord per entered step."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from .approvals import ApprovalGate
from .constants import CANCELLED_MESSAGE, PARALLEL_DONE_KEY
from .context import ExecutionContext
from .contracts import (
    ApprovalGateStep,
    AwaitSignatureStep,
    ConditionalBranchStep,
    ParallelStep,
    SendDocumentStep,
    StepResult,
    StepType,
    Suspension,
    SuspensionKind,
    WaitStep,
    WorkflowDefinition,
    WorkflowStep,
)
from .documents import DocumentService
from .errors import (
    ExecutionCancelledError,
    StepExecutionError,
    ValidationError,
    WorkflowTimeoutError,
)
from .events import EventEmitter, EventType, execution_event
from .expressions import evaluate_condition
from .persistence.models import ExecutionRecord, StepRecord, utcnow
from .persistence.repository import WorkflowRepository
from .state_machine import ExecutionStatus, StepStateMachine
from .utils.retry import RetryManager

logger = logging.getLogger(__name__)


@dataclass
class StepInvocation:
    """Everything a handler may look at while running one step."""

    execution: ExecutionRecord
    definition: WorkflowDefinition
    step: WorkflowStep
    context: ExecutionContext
    record: StepRecord


Handler = Callable[[StepInvocation], Awaitable[StepResult]]


def parse_until(value: str) -> datetime:
    """Parse an ISO-8601 ``until`` value; naive timestamps are taken as UTC."""
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"Invalid wait-until timestamp: {value}") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class StepExecutor:
    """Runs single steps on behalf of the workflow executor."""

    def __init__(
        self,
        repository: WorkflowRepository,
        emitter: EventEmitter,
        approvals: ApprovalGate,
        documents: DocumentService,
        retry: Optional[RetryManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.emitter = emitter
        self.approvals = approvals
        self.documents = documents
        self.retry = retry or RetryManager()
        self._clock = clock
        self._handlers: Dict[StepType, Handler] = {
            StepType.SEND_DOCUMENT: self._send_document,
            StepType.AWAIT_SIGNATURE: self._await_signature,
            StepType.APPROVAL_GATE: self._approval_gate,
            StepType.CONDITIONAL_BRANCH: self._conditional_branch,
            StepType.PARALLEL: self._parallel,
            StepType.WAIT: self._wait,
        }

    async def execute(
        self,
        execution: ExecutionRecord,
        definition: WorkflowDefinition,
        step: WorkflowStep,
        index: int,
        context: ExecutionContext,
        record: Optional[StepRecord] = None,
    ) -> StepResult:
        """Run ``step`` and persist its record.

        A ``waiting`` ``record`` is resumed instead of creating a new one.

        Raises:
            StepExecutionError: the handler failed; the record is ``failed``.
            ExecutionCancelledError: the execution was cancelled mid-step.
        """
        if record is None:
            record = StepRecord(
                execution_id=execution.id,
                step_id=step.id,
                step_index=index,
                step_type=step.step_type.value,
                created_at=self._clock(),
            )
            await self.repository.create_step_record(record)
            machine = StepStateMachine(record.status)
            await self.emitter.emit(
                execution_event(
                    EventType.STEP_STARTED,
                    execution,
                    step_id=step.id,
                    data={"stepType": step.step_type.value, "stepIndex": index},
                )
            )
            machine.require("start")
        else:
            machine = StepStateMachine(record.status)
            machine.require("resume")
        await self.repository.update_step_record(record.id, status=machine.state)
        record.status = machine.state

        invocation = StepInvocation(execution, definition, step, context, record)
        try:
            result = await self._handlers[step.step_type](invocation)
        except asyncio.CancelledError:
            # parallel siblings are cancelled once the first one finishes
            if machine.transition("skip"):
                await self.repository.update_step_record(
                    record.id, status=machine.state, completed_at=self._clock()
                )
            raise
        except ExecutionCancelledError:
            if machine.transition("skip"):
                await self.repository.update_step_record(
                    record.id,
                    status=machine.state,
                    error_message=CANCELLED_MESSAGE,
                    completed_at=self._clock(),
                )
            raise
        except Exception as exc:
            await self._fail(execution, step, record, machine, exc)
            raise StepExecutionError(
                f"Step {step.id} failed: {exc}",
                step.id,
                retryable=getattr(exc, "retryable", False),
            ) from exc

        if result.suspension is not None and result.suspension.holds_step:
            machine.require("suspend")
            await self.repository.update_step_record(
                record.id, status=machine.state, result=result.data
            )
            logger.info(f"Step {step.id} of execution {execution.id} is waiting")
            return result

        machine.require("complete")
        await self.repository.update_step_record(
            record.id,
            status=machine.state,
            result=result.data,
            completed_at=self._clock(),
        )
        await self.emitter.emit(
            execution_event(
                EventType.STEP_COMPLETED, execution, step_id=step.id, data=result.data
            )
        )
        return result

    async def _fail(
        self,
        execution: ExecutionRecord,
        step: WorkflowStep,
        record: StepRecord,
        machine: StepStateMachine,
        error: Exception,
    ) -> None:
        logger.error(f"Step {step.id} of execution {execution.id} failed: {error}")
        machine.require("fail")
        await self.repository.update_step_record(
            record.id,
            status=machine.state,
            error_message=str(error),
            completed_at=self._clock(),
        )
        await self.emitter.emit(
            execution_event(
                EventType.STEP_FAILED,
                execution,
                step_id=step.id,
                data={"error": str(error)},
            )
        )

    async def _ensure_active(self, execution_id: str) -> None:
        """Abort before a side effect if the execution was cancelled meanwhile."""
        current = await self.repository.get_execution(execution_id)
        if current is None or current.status == ExecutionStatus.FAILED:
            raise ExecutionCancelledError(execution_id)

    # ------------------------------------------------------------------
    # Handlers
    async def _send_document(self, run: StepInvocation) -> StepResult:
        step: SendDocumentStep = run.step  # type: ignore[assignment]
        config = step.config
        await self._ensure_active(run.execution.id)
        delivery = await self.retry.execute(
            lambda: self.documents.send_document(
                run.execution.document_id,
                config.recipient_email,
                recipient_name=config.recipient_name,
                message=config.custom_message,
                template=config.template,
            )
        )
        await self.emitter.emit(
            execution_event(
                EventType.DOCUMENT_SENT,
                run.execution,
                step_id=step.id,
                data={"recipientEmail": config.recipient_email},
            )
        )
        return StepResult(
            data={"sent": True, "recipient_email": config.recipient_email, **delivery}
        )

    async def _await_signature(self, run: StepInvocation) -> StepResult:
        step: AwaitSignatureStep = run.step  # type: ignore[assignment]
        config = step.config
        signed = await self.retry.execute(
            lambda: self.documents.is_signed(
                run.execution.document_id, config.recipient_id
            )
        )
        if signed:
            return StepResult(data={"signed": True, "recipient_id": config.recipient_id})

        deadline = None
        if config.timeout is not None:
            deadline = run.record.created_at + timedelta(milliseconds=config.timeout)
            if self._clock() > deadline:
                await self.emitter.emit(
                    execution_event(
                        EventType.TIMEOUT_REACHED,
                        run.execution,
                        step_id=step.id,
                        data={"recipientId": config.recipient_id, "timeout": config.timeout},
                    )
                )
                raise WorkflowTimeoutError(
                    f"Signature from {config.recipient_id} not received within "
                    f"{config.timeout}ms"
                )

        # reminder_interval is recorded for callers; no reminders are sent
        return StepResult(
            data={
                "signed": False,
                "recipient_id": config.recipient_id,
                "reminder_interval": config.reminder_interval,
            },
            suspension=Suspension(
                kind=SuspensionKind.SIGNATURE,
                step_id=step.id,
                recipient_id=config.recipient_id,
                resume_at=deadline,
                since=self._clock(),
            ),
        )

    async def _approval_gate(self, run: StepInvocation) -> StepResult:
        step: ApprovalGateStep = run.step  # type: ignore[assignment]
        await self._ensure_active(run.execution.id)
        request = await self.approvals.open_request(
            run.execution, step.id, step.config, step_record_id=run.record.id
        )
        return StepResult(
            data={
                "approval_request_id": request.id,
                "required_approvals": request.required_approvals,
            },
            suspension=Suspension(
                kind=SuspensionKind.APPROVAL,
                step_id=step.id,
                approval_request_id=request.id,
                resume_at=request.expires_at,
                since=self._clock(),
            ),
        )

    async def _conditional_branch(self, run: StepInvocation) -> StepResult:
        step: ConditionalBranchStep = run.step  # type: ignore[assignment]
        config = step.config
        outcome = evaluate_condition(config.condition, run.context)
        next_step = config.then_step if outcome else config.else_step
        logger.debug(f"Condition {config.condition!r} -> {outcome}, next: {next_step}")
        return StepResult(
            data={"condition": config.condition, "result": outcome, "next_step": next_step},
            next_step_id=next_step,
        )

    async def _parallel(self, run: StepInvocation) -> StepResult:
        step: ParallelStep = run.step  # type: ignore[assignment]
        config = step.config
        children = [run.definition.get_step(child_id) for child_id in config.steps]
        tasks: Dict[str, asyncio.Task] = {
            child.id: asyncio.create_task(
                self.execute(
                    run.execution,
                    run.definition,
                    child,
                    run.definition.index_of(child.id),
                    run.context,
                )
            )
            for child in children
        }
        try:
            if config.wait_for_all:
                await asyncio.gather(*tasks.values())
            else:
                done, _ = await asyncio.wait(
                    tasks.values(), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    # surfaces the first child's failure
                    task.result()
        finally:
            for task in tasks.values():
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

        completed: List[str] = []
        results = {}
        for child_id, task in tasks.items():
            if task.cancelled() or task.exception() is not None:
                continue
            completed.append(child_id)
            results[child_id] = task.result().data
            run.context.set(f"step_{child_id}_result", task.result().data)

        handled = run.context.get_metadata(PARALLEL_DONE_KEY, [])
        run.context.set_metadata(
            PARALLEL_DONE_KEY, handled + [c for c in config.steps if c not in handled]
        )
        return StepResult(
            data={
                "completed": completed,
                "cancelled": [c for c in config.steps if c not in completed],
                "results": results,
            }
        )

    async def _wait(self, run: StepInvocation) -> StepResult:
        step: WaitStep = run.step  # type: ignore[assignment]
        config = step.config
        if config.until:
            resume_at = parse_until(config.until)
        else:
            resume_at = self._clock() + timedelta(milliseconds=config.duration)
        return StepResult(
            data={"resume_at": resume_at.isoformat()},
            suspension=Suspension(
                kind=SuspensionKind.TIMER,
                step_id=step.id,
                resume_at=resume_at,
                since=self._clock(),
            ),
        )
