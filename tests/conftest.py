"""Shared fixtures for engine tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import pytest

import inkflow.persistence as persistence
from inkflow.documents import InMemoryDocumentService
from inkflow.events import EventPayload
from inkflow.orchestrator import WorkflowExecutor
from inkflow.persistence import InMemoryWorkflowRepository
from inkflow.utils.retry import RetryManager, RetryPolicy


class GatedDocumentService(InMemoryDocumentService):
    """Holds ``send_document`` until ``gate`` is set.

    Only recipients in ``blocked`` are held; ``None`` holds everyone.
    """

    def __init__(self, blocked: Optional[Iterable[str]] = None) -> None:
        super().__init__()
        self.blocked = set(blocked) if blocked is not None else None
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def send_document(self, document_id, recipient_email, **kwargs):
        if self.blocked is None or recipient_email in self.blocked:
            self.entered.set()
            await self.gate.wait()
        return await super().send_document(document_id, recipient_email, **kwargs)


class FlakyDocumentService(InMemoryDocumentService):
    """Raises the queued errors, one per call, before delivering normally."""

    def __init__(self, errors: Optional[List[Exception]] = None) -> None:
        super().__init__()
        self.errors = list(errors or [])
        self.calls = 0

    async def send_document(self, document_id, recipient_email, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return await super().send_document(document_id, recipient_email, **kwargs)


def send_step(step_id: str, email: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    return {
        "id": step_id,
        "type": "send-document",
        "name": f"Send {step_id}",
        "config": {"recipientEmail": email or f"{step_id}@example.com"},
        **extra,
    }


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("INKFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    # keep a stray config.yaml in the working directory out of the tests
    monkeypatch.setenv("INKFLOW_CONFIG", str(tmp_path / "missing-config.yaml"))


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def documents() -> InMemoryDocumentService:
    return InMemoryDocumentService()


@pytest.fixture
def make_executor(repo):
    def factory(documents=None, repository=None, **kwargs) -> WorkflowExecutor:
        kwargs.setdefault("retry", RetryManager(RetryPolicy(initial_delay=0)))
        return WorkflowExecutor(
            repository=repository or repo,
            documents=documents or InMemoryDocumentService(),
            **kwargs,
        )

    return factory


@pytest.fixture
def executor(make_executor, documents) -> WorkflowExecutor:
    return make_executor(documents=documents)


@pytest.fixture
def events(executor) -> List[EventPayload]:
    received: List[EventPayload] = []
    executor.emitter.on_any(received.append)
    return received


@pytest.fixture
def make_send_step():
    return send_step


@pytest.fixture
def gated_documents():
    return GatedDocumentService


@pytest.fixture
def flaky_documents():
    return FlakyDocumentService
