from datetime import datetime, timedelta, timezone

import pytest

from inkflow.approvals import ApprovalGate, evaluate_request, required_approvals
from inkflow.contracts import ApprovalGateConfig, ApprovalMode
from inkflow.errors import ApprovalError
from inkflow.events import EventEmitter, EventType
from inkflow.persistence import ApprovalRequest, ApprovalStatus, ExecutionRecord


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def gate(repo, clock, emitted):
    emitter = EventEmitter()
    emitter.on_any(emitted.append)
    return ApprovalGate(repo, emitter, clock)


@pytest.fixture
def execution():
    return ExecutionRecord(workflow_id="wf-1", document_id="doc-1", user_id="user-1")


async def _open(gate, repo, execution, approvers, mode, timeout=None):
    await repo.create_execution(execution)
    config = ApprovalGateConfig(approvers=approvers, mode=mode, timeout=timeout)
    return await gate.open_request(execution, "legal-review", config)


@pytest.mark.parametrize(
    "mode, count, expected",
    [
        ("any", 3, 1),
        ("all", 3, 3),
        ("majority", 3, 2),
        ("majority", 4, 2),
        ("majority", 1, 1),
        (ApprovalMode.ALL, 1, 1),
    ],
)
def test_required_approvals(mode, count, expected):
    assert required_approvals(mode, count) == expected


@pytest.mark.asyncio
async def test_majority_approves_after_quorum(gate, repo, execution, emitted):
    request = await _open(gate, repo, execution, ["a", "b", "c"], "majority")
    assert request.required_approvals == 2

    request = await gate.record_response(request.id, "a", "approved")
    assert request.status == ApprovalStatus.PENDING
    request = await gate.record_response(request.id, "b", "approved", "looks fine")
    assert request.status == ApprovalStatus.APPROVED
    assert request.current_approvals == 2
    assert request.resolved_at is not None

    names = [e.event_name for e in emitted]
    assert names == ["approval.requested", "approval.approved"]
    assert emitted[0].data["requiredApprovals"] == 2
    assert emitted[1].approval_request_id == request.id


@pytest.mark.asyncio
async def test_all_mode_rejects_on_first_rejection(gate, repo, execution, emitted):
    request = await _open(gate, repo, execution, ["a", "b"], "all")
    request = await gate.record_response(request.id, "b", "rejected", "missing clause")
    assert request.status == ApprovalStatus.REJECTED
    assert emitted[-1].event == EventType.APPROVAL_REJECTED


@pytest.mark.asyncio
async def test_any_mode_waits_while_quorum_is_still_reachable(gate, repo, execution):
    request = await _open(gate, repo, execution, ["a", "b"], "any")
    request = await gate.record_response(request.id, "a", "rejected")
    assert request.status == ApprovalStatus.PENDING
    request = await gate.record_response(request.id, "b", "rejected")
    assert request.status == ApprovalStatus.REJECTED


@pytest.mark.asyncio
async def test_expired_request_is_not_approved(gate, repo, execution, clock, emitted):
    request = await _open(gate, repo, execution, ["a", "b"], "any", timeout=60_000)
    assert request.expires_at == clock.now + timedelta(minutes=1)

    clock.advance(minutes=2)
    request = await gate.check_status(request.id)
    assert request.status == ApprovalStatus.EXPIRED
    assert emitted[-1].event == EventType.APPROVAL_EXPIRED

    with pytest.raises(ApprovalError):
        await gate.record_response(request.id, "a", "approved")
    stored = await repo.get_approval_request(request.id)
    assert stored.current_approvals == 0


@pytest.mark.asyncio
async def test_expiry_wins_over_late_quorum(gate, repo, execution, clock):
    request = await _open(gate, repo, execution, ["a", "b"], "all", timeout=1_000)
    await gate.record_response(request.id, "a", "approved")
    clock.advance(seconds=5)
    # the second vote lands before anyone noticed the deadline passed
    request = await gate.record_response(request.id, "b", "approved")
    assert request.status == ApprovalStatus.EXPIRED
    assert request.current_approvals == 2


def test_evaluate_request_leaves_resolved_requests_alone(clock):
    request = ApprovalRequest(
        execution_id="e",
        step_id="s",
        approvers=["a"],
        mode="any",
        required_approvals=1,
        status=ApprovalStatus.REJECTED,
        current_approvals=1,
    )
    assert evaluate_request(request, clock()) == ApprovalStatus.REJECTED


@pytest.mark.asyncio
async def test_duplicate_response_is_rejected(gate, repo, execution):
    request = await _open(gate, repo, execution, ["a", "b", "c"], "all")
    await gate.record_response(request.id, "a", "approved")
    with pytest.raises(ApprovalError):
        await gate.record_response(request.id, "a", "rejected")

    stored = await repo.get_approval_request(request.id)
    assert stored.current_approvals == 1
    assert stored.current_rejections == 0
    assert len(await repo.list_approval_responses(request.id)) == 1


@pytest.mark.asyncio
async def test_unknown_approver_is_rejected(gate, repo, execution):
    request = await _open(gate, repo, execution, ["a"], "any")
    with pytest.raises(ApprovalError):
        await gate.record_response(request.id, "mallory", "approved")


@pytest.mark.asyncio
async def test_unknown_request_is_rejected(gate):
    with pytest.raises(ApprovalError):
        await gate.record_response("nope", "a", "approved")


@pytest.mark.asyncio
async def test_resolution_event_emitted_once(gate, repo, execution, emitted):
    request = await _open(gate, repo, execution, ["a", "b", "c"], "any")
    await gate.record_response(request.id, "a", "approved")
    await gate.check_status(request.id)
    await gate.check_status(request.id)
    assert [e.event_name for e in emitted].count("approval.approved") == 1


def test_approval_config_rejects_duplicate_approvers():
    with pytest.raises(ValueError):
        ApprovalGateConfig(approvers=["a", "a"], mode="all")