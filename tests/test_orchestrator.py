import asyncio

import pytest

from inkflow.constants import CANCELLED_MESSAGE
from inkflow.errors import (
    ApprovalError,
    InvalidTransitionError,
    StepExecutionError,
    ValidationError,
    WorkflowError,
)
from inkflow.events import EventType
from inkflow.persistence import ApprovalStatus
from inkflow.state_machine import ExecutionStatus, StepStatus


def _gate(step_id="legal", approvers=("legal", "finance"), mode="all", timeout=None):
    config = {"approvers": list(approvers), "mode": mode}
    if timeout is not None:
        config["timeout"] = timeout
    return {"id": step_id, "type": "approval-gate", "config": config}


def _branch(step_id, condition, then_step, else_step=None):
    config = {"condition": condition, "thenStep": then_step}
    if else_step:
        config["elseStep"] = else_step
    return {"id": step_id, "type": "conditional-branch", "config": config}


async def _run(executor, steps, variables=None):
    workflow = await executor.register_workflow({"steps": steps}, name="test")
    execution_id = await executor.start(workflow.id, "doc-1", "user-1", variables)
    await executor.join(execution_id)
    return execution_id


async def _step_ids(executor, execution_id):
    return [r.step_id for r in await executor.get_step_records(execution_id)]


# ---------------------------------------------------------------------------
# Sequencing


@pytest.mark.asyncio
async def test_linear_workflow_completes(executor, documents, events, make_send_step):
    execution_id = await _run(executor, [make_send_step("a"), make_send_step("b")])

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.current_step_index == 2
    assert execution.completed_at is not None
    assert execution.context["variables"]["step_a_result"]["sent"] is True

    records = await executor.get_step_records(execution_id)
    assert [(r.step_id, r.status) for r in records] == [
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.COMPLETED),
    ]
    assert [d.recipient_email for d in documents.sent] == ["a@example.com", "b@example.com"]

    assert [e.event_name for e in events] == [
        "workflow.started",
        "step.started",
        "document.sent",
        "step.completed",
        "step.started",
        "document.sent",
        "step.completed",
        "workflow.completed",
    ]
    assert all(e.execution_id == execution_id for e in events)


@pytest.mark.asyncio
async def test_initial_variables_override_defaults(executor, make_send_step):
    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a")], "variables": {"amount": 1, "currency": "EUR"}}
    )
    execution_id = await executor.start(workflow.id, "doc-1", "user-1", {"amount": 99})
    await executor.join(execution_id)

    variables = (await executor.get_execution(execution_id)).context["variables"]
    assert variables["amount"] == 99
    assert variables["currency"] == "EUR"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "amount, expected",
    [(5000, ["route", "final"]), (10, ["route", "review", "final"])],
)
async def test_branch_without_else_falls_through(executor, make_send_step, amount, expected):
    steps = [
        _branch("route", "amount > 1000", "final"),
        make_send_step("review"),
        make_send_step("final"),
    ]
    execution_id = await _run(executor, steps, {"amount": amount})

    assert await _step_ids(executor, execution_id) == expected
    variables = (await executor.get_execution(execution_id)).context["variables"]
    assert variables["step_route_result"]["result"] is (amount > 1000)


@pytest.mark.asyncio
async def test_branch_can_jump_backwards(executor, make_send_step):
    steps = [
        make_send_step("intro"),
        _branch("route", "step_fix_result == null", "fix", "done"),
        _branch("fix", "true", "route"),
        make_send_step("done"),
    ]
    execution_id = await _run(executor, steps)

    assert await _step_ids(executor, execution_id) == [
        "intro",
        "route",
        "fix",
        "route",
        "done",
    ]
    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_on_success_is_not_followed(executor, make_send_step):
    steps = [
        make_send_step("a", onSuccess="c"),
        make_send_step("b"),
        make_send_step("c"),
    ]
    execution_id = await _run(executor, steps)
    assert await _step_ids(executor, execution_id) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_invalid_definition_creates_nothing(executor, repo, make_send_step):
    with pytest.raises(ValidationError):
        await executor.register_workflow({"steps": [make_send_step("a"), make_send_step("a")]})
    assert await repo.list_workflows() == []

    with pytest.raises(ValidationError):
        await executor.start("missing", "doc-1", "user-1")
    assert await repo.list_executions() == []


@pytest.mark.asyncio
async def test_inactive_workflow_cannot_start(executor, repo, make_send_step):
    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a")]}, status="inactive"
    )
    with pytest.raises(ValidationError, match="not active"):
        await executor.start(workflow.id, "doc-1", "user-1")
    assert await repo.list_executions() == []


@pytest.mark.asyncio
async def test_step_visit_limit_fails_execution(make_executor):
    executor = make_executor(max_step_visits=5)
    workflow = await executor.register_workflow({"steps": [_branch("loop", "true", "loop")]})
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")

    with pytest.raises(WorkflowError) as exc_info:
        await executor.join(execution_id)
    assert exc_info.value.code == "STEP_LIMIT_EXCEEDED"

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert len(await executor.get_step_records(execution_id)) == 5


# ---------------------------------------------------------------------------
# Approval gates


@pytest.mark.asyncio
async def test_approval_gate_pauses_until_quorum(executor, events, make_send_step):
    execution_id = await _run(
        executor, [make_send_step("draft"), _gate(), make_send_step("countersign")]
    )

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert execution.current_step_index == 2
    (request,) = await executor.repository.list_approval_requests(execution_id)
    assert request.required_approvals == 2

    await executor.record_approval_response(request.id, "legal", "approved")
    await executor.join(execution_id)
    assert (await executor.get_execution(execution_id)).status == ExecutionStatus.PAUSED

    request = await executor.record_approval_response(request.id, "finance", "approved")
    assert request.status == ApprovalStatus.APPROVED
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert await _step_ids(executor, execution_id) == ["draft", "legal", "countersign"]

    names = [e.event_name for e in events]
    assert names.count("approval.requested") == 1
    assert names.count("approval.approved") == 1
    assert names.index("workflow.paused") < names.index("approval.approved")
    assert names.index("approval.approved") < names.index("workflow.resumed")
    assert names[-1] == "workflow.completed"


@pytest.mark.asyncio
async def test_rejection_fails_and_retry_reopens_gate(executor, events, make_send_step):
    execution_id = await _run(executor, [_gate(), make_send_step("countersign")])
    (request,) = await executor.repository.list_approval_requests(execution_id)

    await executor.record_approval_response(request.id, "finance", "rejected", "no budget")
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Approval for step legal was rejected"
    assert execution.current_step_index == 0
    assert "approval.rejected" in [e.event_name for e in events]

    await executor.retry(execution_id)
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert execution.error_message is None
    requests = await executor.repository.list_approval_requests(execution_id)
    assert [r.status for r in requests] == [ApprovalStatus.REJECTED, ApprovalStatus.PENDING]


@pytest.mark.asyncio
async def test_cancel_on_gate_then_retry_reopens_gate(executor, documents, make_send_step):
    execution_id = await _run(executor, [_gate(), make_send_step("countersign")])
    (request,) = await executor.repository.list_approval_requests(execution_id)

    await executor.cancel(execution_id)
    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.current_step_index == 0

    request = await executor.get_approval_request(request.id)
    assert request.status == ApprovalStatus.EXPIRED
    with pytest.raises(ApprovalError):
        await executor.record_approval_response(request.id, "legal", "approved")

    await executor.retry(execution_id)
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert documents.sent == []
    requests = await executor.repository.list_approval_requests(execution_id)
    assert [r.status for r in requests] == [ApprovalStatus.EXPIRED, ApprovalStatus.PENDING]


@pytest.mark.asyncio
async def test_approval_expiry_fails_execution(executor, events, make_send_step):
    execution_id = await _run(executor, [_gate(timeout=20), make_send_step("countersign")])

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Approval for step legal expired"

    (request,) = await executor.repository.list_approval_requests(execution_id)
    assert request.status == ApprovalStatus.EXPIRED
    assert request.current_approvals == 0
    assert "approval.expired" in [e.event_name for e in events]
    assert "approval.approved" not in [e.event_name for e in events]


@pytest.mark.asyncio
async def test_concurrent_approvals_resume_once(executor, events, make_send_step):
    execution_id = await _run(
        executor, [_gate(approvers=("a", "b", "c"), mode="any"), make_send_step("next")]
    )
    (request,) = await executor.repository.list_approval_requests(execution_id)

    await asyncio.gather(
        *(
            executor.record_approval_response(request.id, approver, "approved")
            for approver in ("a", "b", "c")
        ),
        return_exceptions=True,
    )
    await executor.drain()

    names = [e.event_name for e in events]
    assert names.count("approval.approved") == 1
    assert names.count("workflow.resumed") == 1
    assert names.count("workflow.completed") == 1
    assert await _step_ids(executor, execution_id) == ["legal", "next"]


# ---------------------------------------------------------------------------
# Timers and signatures


@pytest.mark.asyncio
async def test_wait_step_resumes_after_duration(executor, events, make_send_step):
    execution_id = await _run(
        executor,
        [make_send_step("a"), {"id": "cool-off", "type": "wait", "config": {"duration": 20}}, make_send_step("b")],
    )

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert await _step_ids(executor, execution_id) == ["a", "cool-off", "b"]
    paused = [e for e in events if e.event == EventType.WORKFLOW_PAUSED]
    assert paused[0].data == {"reason": "timer"}
    assert "workflow.resumed" in [e.event_name for e in events]


@pytest.mark.asyncio
async def test_wait_until_in_the_past_continues(executor, make_send_step):
    execution_id = await _run(
        executor,
        [
            {"id": "hold", "type": "wait", "config": {"duration": 0, "until": "2000-01-01T00:00:00Z"}},
            make_send_step("b"),
        ],
    )
    assert (await executor.get_execution(execution_id)).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_signature_notification_resumes_waiting_step(
    executor, documents, events, make_send_step
):
    steps = [
        make_send_step("send"),
        {"id": "sign", "type": "await-signature", "config": {"recipientId": "signer-1"}},
        make_send_step("archive"),
    ]
    execution_id = await _run(executor, steps)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert execution.current_step_index == 1
    records = await executor.get_step_records(execution_id)
    assert records[-1].status == StepStatus.WAITING

    assert await executor.notify_document_signed("doc-1", "someone-else") == []
    assert not await executor.advance(execution_id)

    documents.mark_signed("doc-1", "signer-1")
    assert await executor.notify_document_signed("doc-1", "signer-1") == [execution_id]
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    records = await executor.get_step_records(execution_id)
    assert [(r.step_id, r.status) for r in records] == [
        ("send", StepStatus.COMPLETED),
        ("sign", StepStatus.COMPLETED),
        ("archive", StepStatus.COMPLETED),
    ]
    assert records[1].result["signed"] is True
    assert "document.signed" in [e.event_name for e in events]


@pytest.mark.asyncio
async def test_signature_timeout_fails_step(executor, events):
    steps = [
        {
            "id": "sign",
            "type": "await-signature",
            "config": {"recipientId": "signer-1", "timeout": 20},
        }
    ]
    workflow = await executor.register_workflow({"steps": steps})
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")

    with pytest.raises(StepExecutionError) as exc_info:
        await executor.join(execution_id)
    assert exc_info.value.step_id == "sign"

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert "not received within 20ms" in execution.error_message
    (record,) = await executor.get_step_records(execution_id)
    assert record.status == StepStatus.FAILED
    assert "timeout.reached" in [e.event_name for e in events]


# ---------------------------------------------------------------------------
# Parallel blocks


@pytest.mark.asyncio
async def test_parallel_children_run_once(executor, documents, make_send_step):
    steps = [
        {"id": "fan", "type": "parallel", "config": {"steps": ["buyer", "seller"]}},
        make_send_step("buyer"),
        make_send_step("seller"),
        make_send_step("notary"),
    ]
    execution_id = await _run(executor, steps)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    ids = await _step_ids(executor, execution_id)
    assert sorted(ids) == ["buyer", "fan", "notary", "seller"]
    assert ids[0] == "fan"
    assert ids[-1] == "notary"
    assert sorted(d.recipient_email for d in documents.sent) == [
        "buyer@example.com",
        "notary@example.com",
        "seller@example.com",
    ]
    fan_result = execution.context["variables"]["step_fan_result"]
    assert sorted(fan_result["completed"]) == ["buyer", "seller"]
    assert fan_result["cancelled"] == []


@pytest.mark.asyncio
async def test_parallel_first_completed_cancels_siblings(
    make_executor, gated_documents, make_send_step
):
    documents = gated_documents(blocked={"slow@example.com"})
    executor = make_executor(documents=documents)
    steps = [
        {
            "id": "fan",
            "type": "parallel",
            "config": {"steps": ["fast", "slow"], "waitForAll": False},
        },
        make_send_step("fast"),
        make_send_step("slow"),
        make_send_step("after"),
    ]
    execution_id = await _run(executor, steps)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    statuses = {r.step_id: r.status for r in await executor.get_step_records(execution_id)}
    assert statuses == {
        "fan": StepStatus.COMPLETED,
        "fast": StepStatus.COMPLETED,
        "slow": StepStatus.SKIPPED,
        "after": StepStatus.COMPLETED,
    }
    assert [d.recipient_email for d in documents.sent] == ["fast@example.com", "after@example.com"]
    fan_result = execution.context["variables"]["step_fan_result"]
    assert fan_result["completed"] == ["fast"]
    assert fan_result["cancelled"] == ["slow"]


# ---------------------------------------------------------------------------
# Operator controls


@pytest.mark.asyncio
async def test_cancel_stops_at_next_boundary(
    make_executor, gated_documents, make_send_step
):
    documents = gated_documents()
    executor = make_executor(documents=documents)
    received = []
    executor.emitter.on_any(received.append)

    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a"), make_send_step("b")]}
    )
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")
    await documents.entered.wait()

    await executor.cancel(execution_id)
    documents.gate.set()
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == CANCELLED_MESSAGE
    assert execution.current_step_index == 1
    assert await _step_ids(executor, execution_id) == ["a"]
    assert [d.recipient_email for d in documents.sent] == ["a@example.com"]
    assert "workflow.cancelled" in [e.event_name for e in received]
    assert "workflow.completed" not in [e.event_name for e in received]


@pytest.mark.asyncio
async def test_cancel_fails_waiting_signature_step(executor):
    steps = [{"id": "sign", "type": "await-signature", "config": {"recipientId": "r"}}]
    execution_id = await _run(executor, steps)

    await executor.cancel(execution_id)
    (record,) = await executor.get_step_records(execution_id)
    assert record.status == StepStatus.FAILED
    assert record.error_message == CANCELLED_MESSAGE
    assert await executor.notify_document_signed("doc-1", "r") == []


@pytest.mark.asyncio
async def test_manual_pause_and_resume(make_executor, gated_documents, make_send_step):
    documents = gated_documents()
    executor = make_executor(documents=documents)
    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a"), make_send_step("b")]}
    )
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")
    await documents.entered.wait()

    await executor.pause(execution_id)
    documents.gate.set()
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert execution.current_step_index == 1
    assert len(documents.sent) == 1
    # an operator pause is not lifted by re-checking
    assert not await executor.advance(execution_id)
    assert await executor.sweep() == []

    assert await executor.resume(execution_id)
    await executor.join(execution_id)
    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert len(documents.sent) == 2


@pytest.mark.asyncio
async def test_pause_during_last_step_does_not_resend(
    make_executor, gated_documents, make_send_step
):
    documents = gated_documents()
    executor = make_executor(documents=documents)
    workflow = await executor.register_workflow({"steps": [make_send_step("only")]})
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")
    await documents.entered.wait()

    await executor.pause(execution_id)
    documents.gate.set()
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.PAUSED
    assert execution.current_step_index == 1
    assert execution.context["variables"]["step_only_result"]["sent"] is True

    assert await executor.resume(execution_id)
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert len(documents.sent) == 1
    assert await _step_ids(executor, execution_id) == ["only"]


@pytest.mark.asyncio
async def test_step_failure_fails_execution(
    make_executor, flaky_documents, make_send_step
):
    documents = flaky_documents([ValueError("bad recipient")])
    executor = make_executor(documents=documents)
    received = []
    executor.emitter.on_any(received.append)
    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a"), make_send_step("b")]}
    )
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")

    with pytest.raises(StepExecutionError):
        await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error_message == "Step a failed: bad recipient"
    (record,) = await executor.get_step_records(execution_id)
    assert record.status == StepStatus.FAILED
    assert record.error_message == "bad recipient"
    names = [e.event_name for e in received]
    assert names[-2:] == ["step.failed", "workflow.failed"]
    assert documents.calls == 1


@pytest.mark.asyncio
async def test_transient_send_failures_are_retried(
    make_executor, flaky_documents, make_send_step
):
    documents = flaky_documents([ConnectionError("connection refused")])
    executor = make_executor(documents=documents)
    execution_id = await _run(executor, [make_send_step("a")])

    assert (await executor.get_execution(execution_id)).status == ExecutionStatus.COMPLETED
    assert documents.calls == 2


@pytest.mark.asyncio
async def test_operator_retry_resumes_from_failed_step(
    make_executor, flaky_documents, make_send_step
):
    documents = flaky_documents([ValueError("template missing")])
    executor = make_executor(documents=documents)
    workflow = await executor.register_workflow(
        {"steps": [make_send_step("a"), make_send_step("b")]}
    )
    execution_id = await executor.start(workflow.id, "doc-1", "user-1")
    with pytest.raises(StepExecutionError):
        await executor.join(execution_id)

    await executor.retry(execution_id)
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.error_message is None
    records = await executor.get_step_records(execution_id)
    assert [(r.step_id, r.status) for r in records] == [
        ("a", StepStatus.FAILED),
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.COMPLETED),
    ]


@pytest.mark.asyncio
async def test_invalid_operator_transitions(executor, make_send_step):
    execution_id = await _run(executor, [make_send_step("a")])

    with pytest.raises(InvalidTransitionError):
        await executor.retry(execution_id)
    with pytest.raises(InvalidTransitionError):
        await executor.resume(execution_id)
    with pytest.raises(InvalidTransitionError):
        await executor.pause(execution_id)
    with pytest.raises(InvalidTransitionError):
        await executor.cancel(execution_id)
    assert not await executor.advance(execution_id)

    with pytest.raises(ValidationError, match="not found"):
        await executor.pause("missing")
