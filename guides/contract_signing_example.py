"""Contract signing workflow with an approval gate and a signature wait."""

import asyncio

from inkflow import EventType, InMemoryDocumentService, WorkflowExecutor
from inkflow.persistence import InMemoryWorkflowRepository

CONTRACT_WORKFLOW = {
    "version": "1.0",
    "variables": {"amount": 0},
    "steps": [
        {
            "id": "send-contract",
            "type": "send-document",
            "config": {"recipientEmail": "buyer@example.com", "recipientName": "Buyer"},
        },
        {
            "id": "route",
            "type": "conditional-branch",
            "config": {"condition": "amount >= 10000", "thenStep": "legal", "elseStep": "sign"},
        },
        {
            "id": "legal",
            "type": "approval-gate",
            "config": {"approvers": ["legal", "finance", "ceo"], "mode": "majority"},
        },
        {"id": "sign", "type": "await-signature", "config": {"recipientId": "buyer"}},
        {
            "id": "archive",
            "type": "send-document",
            "config": {"recipientEmail": "archive@example.com"},
        },
    ],
}


async def main():
    documents = InMemoryDocumentService()
    executor = WorkflowExecutor(
        repository=InMemoryWorkflowRepository(), documents=documents
    )
    executor.emitter.on_any(lambda event: print(f"  📣 {event.event_name}"))
    executor.emitter.on(
        EventType.APPROVAL_REQUESTED,
        lambda event: print(f"  📝 approvers: {event.data['approvers']}"),
    )

    workflow = await executor.register_workflow(CONTRACT_WORKFLOW, name="Contract")
    print(f"✅ Workflow registered: {workflow.id}")

    execution_id = await executor.start(
        workflow.id, "doc-42", "owner-1", {"amount": 25000}
    )
    await executor.join(execution_id)
    execution = await executor.get_execution(execution_id)
    print(f"⏸️  Execution {execution_id} is {execution.status.value}")

    (request,) = await executor.repository.list_approval_requests(execution_id)
    for approver in ("legal", "ceo"):
        request = await executor.record_approval_response(request.id, approver, "approved")
        print(f"👍 {approver} approved -> request {request.status.value}")
    await executor.join(execution_id)

    documents.mark_signed("doc-42", "buyer")
    await executor.notify_document_signed("doc-42", "buyer")
    await executor.join(execution_id)

    execution = await executor.get_execution(execution_id)
    print(f"🏁 Execution {execution_id} is {execution.status.value}")
    for record in await executor.get_step_records(execution_id):
        print(f"  - {record.step_id}: {record.status.value}")

    await executor.aclose()


if __name__ == "__main__":
    asyncio.run(main())
