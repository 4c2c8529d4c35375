"""Workflow executor: drives executions through their steps."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .approvals import ApprovalGate
from .config import InkflowConfig
from .constants import (
    CANCELLED_MESSAGE,
    DEFAULT_MAX_STEP_VISITS,
    PARALLEL_DONE_KEY,
    SUSPENSION_KEY,
)
from .context import ExecutionContext
from .contracts import (
    StepType,
    Suspension,
    SuspensionKind,
    WorkflowDefinition,
    WorkflowStatus,
)
from .documents import DocumentService, InMemoryDocumentService
from .errors import (
    ExecutionCancelledError,
    InvalidTransitionError,
    ValidationError,
    WorkflowError,
)
from .events import EventEmitter, EventType, execution_event
from .persistence import get_repository
from .persistence.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    ExecutionRecord,
    StepRecord,
    WorkflowRecord,
    utcnow,
)
from .persistence.repository import WorkflowRepository
from .state_machine import ExecutionStateMachine, ExecutionStatus, StepStatus
from .steps import StepExecutor
from .utils.retry import RetryManager
from .webhooks import WebhookDelivery

logger = logging.getLogger(__name__)

# Slack added to timer delays so the due check runs strictly after resume_at.
_TIMER_SLACK = 0.01


class Verdict(str, Enum):
    WAIT = "wait"
    CONTINUE = "continue"
    FAIL = "fail"


class WorkflowExecutor:
    """Starts, advances and controls workflow executions.

    Each execution runs in its own asyncio task. Suspended executions hold no
    task; they are resumed by approval responses, signature notifications,
    timers, ``advance`` or ``sweep``.
    """

    def __init__(
        self,
        repository: Optional[WorkflowRepository] = None,
        emitter: Optional[EventEmitter] = None,
        documents: Optional[DocumentService] = None,
        retry: Optional[RetryManager] = None,
        clock: Callable[[], datetime] = utcnow,
        max_step_visits: int = DEFAULT_MAX_STEP_VISITS,
    ) -> None:
        self.repository = repository or get_repository()
        self.emitter = emitter or EventEmitter()
        self.documents = documents or InMemoryDocumentService()
        self.approvals = ApprovalGate(self.repository, self.emitter, clock)
        self.steps = StepExecutor(
            self.repository,
            self.emitter,
            self.approvals,
            self.documents,
            retry=retry,
            clock=clock,
        )
        self.max_step_visits = max_step_visits
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_config(
        cls,
        config: InkflowConfig,
        repository: Optional[WorkflowRepository] = None,
        documents: Optional[DocumentService] = None,
    ) -> "WorkflowExecutor":
        emitter = EventEmitter(WebhookDelivery(timeout=config.webhook_timeout))
        for webhook in config.webhooks:
            emitter.register_webhook(webhook)
        return cls(
            repository=repository or get_repository(config=config),
            emitter=emitter,
            documents=documents,
            retry=RetryManager(config.step_retry),
            max_step_visits=config.max_step_visits,
        )

    # ------------------------------------------------------------------
    # Workflows
    async def register_workflow(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        name: str = "",
        workflow_id: Optional[str] = None,
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
    ) -> WorkflowRecord:
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.from_data(definition)
        definition.validate_structure()
        record = WorkflowRecord(name=name, status=status, definition=definition)
        if workflow_id:
            record.id = workflow_id
        await self.repository.save_workflow(record)
        logger.info(f"Registered workflow {record.id} ({len(definition.steps)} steps)")
        return record

    # ------------------------------------------------------------------
    # Execution lifecycle
    async def start(
        self,
        workflow_id: str,
        document_id: str,
        user_id: str,
        initial_variables: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create an execution and schedule its step loop.

        Returns the execution id without waiting for the loop.

        Raises:
            ValidationError: unknown or inactive workflow, or an invalid
                definition. No execution row is created in that case.
        """
        workflow = await self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise ValidationError(f"Workflow {workflow_id} not found")
        if workflow.status != WorkflowStatus.ACTIVE:
            raise ValidationError(f"Workflow {workflow_id} is not active")
        workflow.definition.validate_structure()

        context = ExecutionContext(
            workflow_id,
            document_id,
            user_id,
            variables={**workflow.definition.variables, **(initial_variables or {})},
        )
        execution = ExecutionRecord(
            workflow_id=workflow_id,
            document_id=document_id,
            user_id=user_id,
            context=context.to_snapshot(),
            started_at=self._clock(),
            updated_at=self._clock(),
        )
        await self.repository.create_execution(execution)
        logger.info(f"Started execution {execution.id} of workflow {workflow_id}")
        await self.emitter.emit(execution_event(EventType.WORKFLOW_STARTED, execution))
        self._spawn(execution.id, "start")
        return execution.id

    async def advance(self, execution_id: str) -> bool:
        """Re-check a paused execution's suspension and act on it.

        Returns ``True`` when the execution left the paused state (resumed
        or failed).
        """
        execution = await self._require_execution(execution_id)
        if execution.status != ExecutionStatus.PAUSED:
            return False
        verdict, message = await self._check_suspension(execution)
        if verdict == Verdict.WAIT:
            return False
        if verdict == Verdict.FAIL:
            return await self._fail_suspended(execution, message)
        self._spawn(execution_id, "resume")
        return True

    async def record_approval_response(
        self,
        request_id: str,
        approver_id: str,
        decision: Union[ApprovalDecision, str],
        comment: Optional[str] = None,
    ) -> ApprovalRequest:
        request = await self.approvals.record_response(
            request_id, approver_id, decision, comment
        )
        if request.status != ApprovalStatus.PENDING:
            await self.advance(request.execution_id)
        return request

    async def notify_document_signed(self, document_id: str, recipient_id: str) -> List[str]:
        """Resume executions waiting on ``recipient_id`` to sign ``document_id``."""
        resumed = []
        for execution in await self.repository.list_executions(ExecutionStatus.PAUSED):
            if execution.document_id != document_id:
                continue
            suspension = self._suspension_of(execution)
            if (
                suspension is None
                or suspension.kind != SuspensionKind.SIGNATURE
                or suspension.recipient_id != recipient_id
            ):
                continue
            await self.emitter.emit(
                execution_event(
                    EventType.DOCUMENT_SIGNED,
                    execution,
                    step_id=suspension.step_id,
                    data={"recipientId": recipient_id},
                )
            )
            if await self.advance(execution.id):
                resumed.append(execution.id)
        return resumed

    # ------------------------------------------------------------------
    # Operator controls
    async def pause(self, execution_id: str) -> None:
        """Pause a running execution at its next step boundary."""
        execution = await self._require_execution(execution_id)
        machine = ExecutionStateMachine(execution.status)
        machine.require("pause")
        if not await self.repository.update_execution(
            execution_id, expected_status=execution.status, status=machine.state
        ):
            raise InvalidTransitionError(f"Execution {execution_id} changed state")
        logger.info(f"Paused execution {execution_id}")
        await self.emitter.emit(
            execution_event(
                EventType.WORKFLOW_PAUSED,
                execution,
                data={"reason": SuspensionKind.MANUAL.value},
            )
        )

    async def resume(self, execution_id: str) -> bool:
        """Resume a paused execution.

        Operator pauses resume unconditionally; executions suspended on an
        approval, timer or signature are only re-checked, as with ``advance``.
        """
        execution = await self._require_execution(execution_id)
        if not ExecutionStateMachine(execution.status).can_transition("resume"):
            raise InvalidTransitionError(
                f"Cannot resume execution {execution_id} from '{execution.status.value}'"
            )
        if self._suspension_of(execution) is not None:
            return await self.advance(execution_id)
        self._spawn(execution_id, "resume")
        return True

    async def cancel(self, execution_id: str) -> None:
        """Fail a non-terminal execution with the cancellation message."""
        execution = await self._require_execution(execution_id)
        machine = ExecutionStateMachine(execution.status)
        machine.require("fail")
        changes: Dict[str, Any] = {
            "status": machine.state,
            "error_message": CANCELLED_MESSAGE,
            "completed_at": self._clock(),
        }
        index = await self._suspended_index(execution)
        if index is not None:
            changes["current_step_index"] = index
        if not await self.repository.update_execution(
            execution_id, expected_status=execution.status, **changes
        ):
            raise InvalidTransitionError(f"Execution {execution_id} changed state")
        self._cancel_timer(execution_id)
        await self.approvals.withdraw(execution_id)
        for record in await self.repository.list_step_records(execution_id):
            if record.status == StepStatus.WAITING:
                await self.repository.update_step_record(
                    record.id,
                    status=StepStatus.FAILED,
                    error_message=CANCELLED_MESSAGE,
                    completed_at=self._clock(),
                )
        logger.info(f"Cancelled execution {execution_id}")
        await self.emitter.emit(execution_event(EventType.WORKFLOW_CANCELLED, execution))

    async def retry(self, execution_id: str) -> None:
        """Re-run a failed execution from its current step index."""
        execution = await self._require_execution(execution_id)
        if not ExecutionStateMachine(execution.status).can_transition("retry"):
            raise InvalidTransitionError(
                f"Cannot retry execution {execution_id} from '{execution.status.value}'"
            )
        logger.info(
            f"Retrying execution {execution_id} from step {execution.current_step_index}"
        )
        self._spawn(execution_id, "retry")

    async def sweep(self) -> List[str]:
        """Advance every paused execution whose wait is over.

        Covers timers lost to a restart and approvals that expired unnoticed.
        """
        advanced = []
        for execution in await self.repository.list_executions(ExecutionStatus.PAUSED):
            if await self.advance(execution.id):
                advanced.append(execution.id)
        if advanced:
            logger.info(f"Sweep advanced {len(advanced)} execution(s)")
        return advanced

    # ------------------------------------------------------------------
    # Reads and background work
    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await self.repository.get_execution(execution_id)

    async def get_step_records(self, execution_id: str) -> List[StepRecord]:
        return await self.repository.list_step_records(execution_id)

    async def get_approval_request(self, request_id: str) -> Optional[ApprovalRequest]:
        return await self.repository.get_approval_request(request_id)

    def _background(self, execution_ids, include_timers: bool) -> List[asyncio.Task]:
        sources = [self._tasks, self._timers] if include_timers else [self._tasks]
        return [
            task
            for source in sources
            for execution_id in execution_ids
            if (task := source.get(execution_id)) is not None and not task.done()
        ]

    async def join(self, execution_id: str, include_timers: bool = True) -> None:
        """Wait until no step loop (and, optionally, timer) works on ``execution_id``.

        Re-raises the exception of the last step loop, if it failed.
        """
        while pending := self._background([execution_id], include_timers):
            await asyncio.wait(pending)
        task = self._tasks.get(execution_id)
        if task is not None and not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def drain(self, include_timers: bool = True) -> None:
        """Wait for all step loops, armed timers and webhook deliveries."""
        while pending := self._background(
            set(self._tasks) | set(self._timers), include_timers
        ):
            await asyncio.wait(pending)
        await self.emitter.drain()

    async def aclose(self) -> None:
        for timer in list(self._timers.values()):
            timer.cancel()
        await asyncio.gather(*self._timers.values(), return_exceptions=True)
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.emitter.aclose()

    # ------------------------------------------------------------------
    # Step loop
    def _spawn(self, execution_id: str, event: str) -> None:
        task = asyncio.create_task(self._run(execution_id, event))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda t: self._on_task_done(execution_id, t))

    def _on_task_done(self, execution_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Execution {execution_id} failed: {error}")

    async def _run(self, execution_id: str, event: str) -> None:
        # one loop per execution at a time; a second resume waits its turn
        async with self._locks[execution_id]:
            if not await self._enter_running(execution_id, event):
                return
            while True:
                suspended = await self._step_loop(execution_id)
                if not suspended:
                    return
                # a response may have arrived while the step was suspending
                execution = await self.repository.get_execution(execution_id)
                verdict, message = await self._check_suspension(execution)
                if verdict == Verdict.FAIL:
                    await self._fail_suspended(execution, message)
                    return
                if verdict == Verdict.WAIT:
                    self._arm_timer(execution)
                    return
                if not await self._enter_running(execution_id, "resume"):
                    return

    async def _enter_running(self, execution_id: str, event: str) -> bool:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            return False
        machine = ExecutionStateMachine(execution.status)
        if not machine.transition(event):
            return False
        context = ExecutionContext.from_snapshot(execution.context)
        context.delete_metadata(SUSPENSION_KEY)
        changes: Dict[str, Any] = {"status": machine.state, "context": context.to_snapshot()}
        if event == "retry":
            changes.update(error_message=None, completed_at=None)
        if not await self.repository.update_execution(
            execution_id, expected_status=execution.status, **changes
        ):
            return False
        self._cancel_timer(execution_id)
        if event != "start":
            await self.emitter.emit(
                execution_event(
                    EventType.WORKFLOW_RESUMED, execution, data={"reason": event}
                )
            )
        return True

    async def _step_loop(self, execution_id: str) -> bool:
        """Run steps until the end, a suspension or a stop request.

        Returns ``True`` when the execution was suspended.
        """
        execution = await self.repository.get_execution(execution_id)
        workflow = await self.repository.get_workflow(execution.workflow_id)
        if workflow is None:
            await self._fail(execution, f"Workflow {execution.workflow_id} not found")
            return False
        definition = workflow.definition
        context = ExecutionContext.from_snapshot(execution.context)
        index = execution.current_step_index
        visits = 0

        while index < len(definition.steps):
            # progress is saved before every boundary check so a stopped
            # execution resumes after its last finished step
            await self.repository.update_execution(
                execution_id, current_step_index=index, context=context.to_snapshot()
            )
            current = await self.repository.get_execution(execution_id)
            if current.status != ExecutionStatus.RUNNING:
                logger.info(
                    f"Execution {execution_id} is {current.status.value}; "
                    f"stopping before step {index}"
                )
                return False

            step = definition.steps[index]
            if step.id in context.get_metadata(PARALLEL_DONE_KEY, []):
                index += 1
                continue

            visits += 1
            if visits > self.max_step_visits:
                error = WorkflowError(
                    f"Execution exceeded {self.max_step_visits} step visits",
                    code="STEP_LIMIT_EXCEEDED",
                )
                await self._fail(current, error.message, context, index)
                raise error

            waiting = None
            if step.step_type == StepType.AWAIT_SIGNATURE:
                waiting = await self._waiting_record(execution_id, step.id)
            try:
                result = await self.steps.execute(
                    current, definition, step, index, context, record=waiting
                )
            except ExecutionCancelledError:
                logger.info(f"Execution {execution_id} was cancelled during step {step.id}")
                return False
            except Exception as exc:
                if await self._fail(current, str(exc), context, index):
                    raise
                return False

            if result.suspension is not None:
                if not result.suspension.holds_step:
                    context.set(f"step_{step.id}_result", result.data)
                next_index = index if result.suspension.holds_step else index + 1
                return await self._suspend(current, result.suspension, context, next_index)

            context.set(f"step_{step.id}_result", result.data)
            if result.next_step_id:
                target = definition.index_of(result.next_step_id)
                if target == -1:
                    logger.warning(
                        f"Step {step.id} jumped to unknown step {result.next_step_id}; "
                        "continuing sequentially"
                    )
                    target = index + 1
                index = target
            else:
                index += 1

        completed = await self.repository.update_execution(
            execution_id,
            expected_status=ExecutionStatus.RUNNING,
            status=ExecutionStatus.COMPLETED,
            current_step_index=index,
            context=context.to_snapshot(),
            completed_at=self._clock(),
        )
        if completed:
            logger.info(f"Execution {execution_id} completed")
            await self.emitter.emit(
                execution_event(EventType.WORKFLOW_COMPLETED, execution)
            )
        else:
            # paused or cancelled during the last step; resume must not re-run it
            await self.repository.update_execution(
                execution_id, current_step_index=index, context=context.to_snapshot()
            )
        return False

    async def _suspend(
        self,
        execution: ExecutionRecord,
        suspension: Suspension,
        context: ExecutionContext,
        next_index: int,
    ) -> bool:
        context.set_metadata(SUSPENSION_KEY, suspension.model_dump(mode="json"))
        machine = ExecutionStateMachine(ExecutionStatus.RUNNING)
        machine.require("pause")
        if not await self.repository.update_execution(
            execution.id,
            expected_status=ExecutionStatus.RUNNING,
            status=machine.state,
            current_step_index=next_index,
            context=context.to_snapshot(),
        ):
            # paused or cancelled by an operator meanwhile; keep the progress
            await self.repository.update_execution(
                execution.id, current_step_index=next_index, context=context.to_snapshot()
            )
            return False
        logger.info(
            f"Execution {execution.id} suspended on {suspension.kind.value} "
            f"at step {suspension.step_id}"
        )
        await self.emitter.emit(
            execution_event(
                EventType.WORKFLOW_PAUSED,
                execution,
                step_id=suspension.step_id,
                data={"reason": suspension.kind.value},
            )
        )
        return True

    async def _fail(
        self,
        execution: ExecutionRecord,
        message: str,
        context: Optional[ExecutionContext] = None,
        index: Optional[int] = None,
        expected: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> bool:
        machine = ExecutionStateMachine(expected)
        machine.require("fail")
        changes: Dict[str, Any] = {
            "status": machine.state,
            "error_message": message,
            "completed_at": self._clock(),
        }
        if context is not None:
            changes["context"] = context.to_snapshot()
        if index is not None:
            changes["current_step_index"] = index
        if not await self.repository.update_execution(
            execution.id, expected_status=expected, **changes
        ):
            return False
        logger.error(f"Execution {execution.id} failed: {message}")
        await self.emitter.emit(
            execution_event(
                EventType.WORKFLOW_FAILED, execution, data={"error": message}
            )
        )
        return True

    # ------------------------------------------------------------------
    # Suspension handling
    def _suspension_of(self, execution: ExecutionRecord) -> Optional[Suspension]:
        data = ExecutionContext.from_snapshot(execution.context).get_metadata(SUSPENSION_KEY)
        return Suspension.model_validate(data) if data else None

    async def _check_suspension(
        self, execution: ExecutionRecord
    ) -> Tuple[Verdict, Optional[str]]:
        if execution.status != ExecutionStatus.PAUSED:
            return Verdict.WAIT, None
        suspension = self._suspension_of(execution)
        if suspension is None or suspension.kind == SuspensionKind.MANUAL:
            return Verdict.WAIT, None

        if suspension.kind == SuspensionKind.APPROVAL:
            request = await self.approvals.check_status(suspension.approval_request_id)
            if request.status == ApprovalStatus.APPROVED:
                return Verdict.CONTINUE, None
            if request.status == ApprovalStatus.REJECTED:
                return Verdict.FAIL, f"Approval for step {suspension.step_id} was rejected"
            if request.status == ApprovalStatus.EXPIRED:
                return Verdict.FAIL, f"Approval for step {suspension.step_id} expired"
            return Verdict.WAIT, None

        due = suspension.resume_at is not None and self._clock() >= suspension.resume_at
        if suspension.kind == SuspensionKind.TIMER:
            return (Verdict.CONTINUE if due else Verdict.WAIT), None

        # signature: re-enter the waiting step once signed or timed out
        signed = await self.documents.is_signed(
            execution.document_id, suspension.recipient_id
        )
        return (Verdict.CONTINUE if signed or due else Verdict.WAIT), None

    async def _suspended_index(self, execution: ExecutionRecord) -> Optional[int]:
        """Position of the step a paused execution is suspended on, if any.

        Failing at this index makes ``retry`` re-open the gate or wait rather
        than skip past it.
        """
        if execution.status != ExecutionStatus.PAUSED:
            return None
        suspension = self._suspension_of(execution)
        if suspension is None or not suspension.step_id:
            return None
        workflow = await self.repository.get_workflow(execution.workflow_id)
        position = workflow.definition.index_of(suspension.step_id) if workflow else -1
        return position if position != -1 else None

    async def _fail_suspended(self, execution: ExecutionRecord, message: str) -> bool:
        index = await self._suspended_index(execution)
        self._cancel_timer(execution.id)
        return await self._fail(
            execution, message, index=index, expected=ExecutionStatus.PAUSED
        )

    async def _waiting_record(self, execution_id: str, step_id: str) -> Optional[StepRecord]:
        for record in reversed(await self.repository.list_step_records(execution_id)):
            if record.step_id == step_id and record.status == StepStatus.WAITING:
                return record
        return None

    # ------------------------------------------------------------------
    # Timers
    def _arm_timer(self, execution: ExecutionRecord) -> None:
        suspension = self._suspension_of(execution)
        if suspension is None or suspension.resume_at is None:
            return
        self._cancel_timer(execution.id)
        delay = max((suspension.resume_at - self._clock()).total_seconds(), 0.0)
        self._timers[execution.id] = asyncio.create_task(
            self._fire_timer(execution.id, delay + _TIMER_SLACK)
        )
        logger.debug(f"Timer for execution {execution.id} fires in {delay:.3f}s")

    def _cancel_timer(self, execution_id: str) -> None:
        timer = self._timers.pop(execution_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _fire_timer(self, execution_id: str, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self.advance(execution_id)
        finally:
            if self._timers.get(execution_id) is asyncio.current_task():
                del self._timers[execution_id]

    async def _require_execution(self, execution_id: str) -> ExecutionRecord:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ValidationError(f"Execution {execution_id} not found")
        return execution
