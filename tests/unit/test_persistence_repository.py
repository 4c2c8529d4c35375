import asyncio

import pytest

from inkflow.contracts import WorkflowDefinition
from inkflow.errors import ApprovalError
from inkflow.persistence import (
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    ExecutionRecord,
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    StepRecord,
    WorkflowRecord,
    get_repository,
)
from inkflow.state_machine import ExecutionStatus, StepStatus


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowRepository()
        return
    repo = SQLiteWorkflowRepository(tmp_path / "inkflow.db")
    yield repo
    repo.close()


def _workflow():
    definition = WorkflowDefinition.from_data(
        {
            "steps": [
                {
                    "id": "send",
                    "type": "send-document",
                    "config": {"recipientEmail": "ada@example.com"},
                }
            ],
            "variables": {"amount": 10},
        }
    )
    return WorkflowRecord(name="NDA", definition=definition)


async def _execution(store):
    workflow = _workflow()
    await store.save_workflow(workflow)
    execution = ExecutionRecord(
        workflow_id=workflow.id,
        document_id="doc-1",
        user_id="user-1",
        context={"variables": {"amount": 10}, "metadata": {}},
    )
    await store.create_execution(execution)
    return execution


async def _request(store, execution, approvers=("a", "b")):
    request = ApprovalRequest(
        execution_id=execution.id,
        step_id="legal",
        approvers=list(approvers),
        mode="all",
        required_approvals=len(approvers),
    )
    await store.create_approval_request(request)
    return request


@pytest.mark.asyncio
async def test_workflow_roundtrip(store):
    workflow = _workflow()
    await store.save_workflow(workflow)

    stored = await store.get_workflow(workflow.id)
    assert stored.name == "NDA"
    assert stored.definition.steps[0].config.recipient_email == "ada@example.com"
    assert stored.definition.variables == {"amount": 10}
    assert [w.id for w in await store.list_workflows()] == [workflow.id]
    assert await store.get_workflow("missing") is None

    workflow.name = "NDA v2"
    await store.save_workflow(workflow)
    assert (await store.get_workflow(workflow.id)).name == "NDA v2"


@pytest.mark.asyncio
async def test_execution_compare_and_set(store):
    execution = await _execution(store)

    assert await store.update_execution(
        execution.id, expected_status=ExecutionStatus.PENDING, status=ExecutionStatus.RUNNING
    )
    # a second writer holding the stale status loses
    assert not await store.update_execution(
        execution.id, expected_status=ExecutionStatus.PENDING, status=ExecutionStatus.FAILED
    )
    assert await store.update_execution(
        execution.id, current_step_index=1, context={"variables": {"amount": 11}}
    )

    stored = await store.get_execution(execution.id)
    assert stored.status == ExecutionStatus.RUNNING
    assert stored.current_step_index == 1
    assert stored.context == {"variables": {"amount": 11}}
    assert stored.updated_at >= execution.updated_at
    assert not await store.update_execution("missing", status=ExecutionStatus.FAILED)


@pytest.mark.asyncio
async def test_list_executions_by_status(store):
    first = await _execution(store)
    second = await _execution(store)
    await store.update_execution(second.id, status=ExecutionStatus.PAUSED)

    paused = await store.list_executions(ExecutionStatus.PAUSED)
    assert [e.id for e in paused] == [second.id]
    assert {e.id for e in await store.list_executions()} == {first.id, second.id}


@pytest.mark.asyncio
async def test_terminal_step_records_are_immutable(store):
    execution = await _execution(store)
    record = StepRecord(
        execution_id=execution.id, step_id="send", step_index=0, step_type="send-document"
    )
    await store.create_step_record(record)

    assert await store.update_step_record(record.id, status=StepStatus.RUNNING)
    assert await store.update_step_record(
        record.id, status=StepStatus.COMPLETED, result={"sent": True}
    )
    assert not await store.update_step_record(record.id, status=StepStatus.FAILED)

    stored = await store.get_step_record(record.id)
    assert stored.status == StepStatus.COMPLETED
    assert stored.result == {"sent": True}


@pytest.mark.asyncio
async def test_step_records_keep_creation_order(store):
    execution = await _execution(store)
    for index, step_id in enumerate(["c", "a", "b"]):
        await store.create_step_record(
            StepRecord(
                execution_id=execution.id,
                step_id=step_id,
                step_index=index,
                step_type="send-document",
            )
        )
    records = await store.list_step_records(execution.id)
    assert [r.step_id for r in records] == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_approval_response_bumps_counters(store):
    execution = await _execution(store)
    request = await _request(store, execution)

    updated = await store.add_approval_response(
        ApprovalResponse(request_id=request.id, approver_id="a", decision="approved")
    )
    assert updated.current_approvals == 1
    updated = await store.add_approval_response(
        ApprovalResponse(request_id=request.id, approver_id="b", decision="rejected")
    )
    assert (updated.current_approvals, updated.current_rejections) == (1, 1)

    responses = await store.list_approval_responses(request.id)
    assert [r.approver_id for r in responses] == ["a", "b"]
    assert [r.id for r in await store.list_approval_requests(execution.id)] == [request.id]


@pytest.mark.asyncio
async def test_duplicate_approval_response_changes_nothing(store):
    execution = await _execution(store)
    request = await _request(store, execution)
    await store.add_approval_response(
        ApprovalResponse(request_id=request.id, approver_id="a", decision="approved")
    )

    with pytest.raises(ApprovalError):
        await store.add_approval_response(
            ApprovalResponse(request_id=request.id, approver_id="a", decision="rejected")
        )

    stored = await store.get_approval_request(request.id)
    assert (stored.current_approvals, stored.current_rejections) == (1, 0)
    assert len(await store.list_approval_responses(request.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_responses_are_all_counted(store):
    execution = await _execution(store)
    approvers = [f"approver-{n}" for n in range(8)]
    request = await _request(store, execution, approvers)

    await asyncio.gather(
        *(
            store.add_approval_response(
                ApprovalResponse(request_id=request.id, approver_id=a, decision="approved")
            )
            for a in approvers
        )
    )
    stored = await store.get_approval_request(request.id)
    assert stored.current_approvals == len(approvers)


@pytest.mark.asyncio
async def test_resolve_only_from_pending(store):
    execution = await _execution(store)
    request = await _request(store, execution)

    assert await store.resolve_approval_request(request.id, ApprovalStatus.APPROVED)
    assert not await store.resolve_approval_request(request.id, ApprovalStatus.EXPIRED)
    stored = await store.get_approval_request(request.id)
    assert stored.status == ApprovalStatus.APPROVED
    assert stored.resolved_at is not None

    with pytest.raises(ApprovalError):
        await store.add_approval_response(
            ApprovalResponse(request_id=request.id, approver_id="a", decision="approved")
        )


def test_get_repository_defaults_to_memory():
    assert isinstance(get_repository(), InMemoryWorkflowRepository)
    assert get_repository() is get_repository()


def test_get_repository_uses_env_sqlite_url(tmp_path, monkeypatch):
    monkeypatch.setenv("INKFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    repo = get_repository()
    assert isinstance(repo, SQLiteWorkflowRepository)
    repo.close()


def test_get_repository_rejects_unknown_scheme():
    with pytest.raises(ValueError):
        get_repository("mysql://localhost/inkflow")
