"""In-process lifecycle events and their fan-out to webhooks."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .persistence.models import ExecutionRecord, utcnow
from .webhooks import WebhookConfig, WebhookDelivery

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_CANCELLED = "workflow.cancelled"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    STEP_FAILED = "step.failed"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_APPROVED = "approval.approved"
    APPROVAL_REJECTED = "approval.rejected"
    APPROVAL_EXPIRED = "approval.expired"
    DOCUMENT_SENT = "document.sent"
    DOCUMENT_SIGNED = "document.signed"
    TIMEOUT_REACHED = "timeout.reached"


class EventPayload(BaseModel):
    """Body of one event, as handed to handlers and POSTed to webhooks."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: Optional[str] = None
    document_id: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @property
    def event_name(self) -> str:
        return self.event.value

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


EventHandler = Callable[[EventPayload], Union[None, Awaitable[None]]]


class EventEmitter:
    """Dispatches events to registered handlers and subscribed webhooks.

    Handler errors are logged and never reach the emitting workflow. Webhook
    deliveries run as background tasks; ``drain`` waits for them.
    """

    def __init__(self, delivery: Optional[WebhookDelivery] = None) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._global_handlers: List[EventHandler] = []
        self._webhooks: Dict[str, WebhookConfig] = {}
        self._delivery = delivery or WebhookDelivery()
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Handlers
    def on(self, event: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers[EventType(event).value]
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: EventType | str, handler: EventHandler) -> None:
        handlers = self._handlers.get(EventType(event).value, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_any(self, handler: EventHandler) -> None:
        if handler not in self._global_handlers:
            self._global_handlers.append(handler)

    def off_any(self, handler: EventHandler) -> None:
        if handler in self._global_handlers:
            self._global_handlers.remove(handler)

    async def _call(self, handler: EventHandler, payload: EventPayload) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Error in event handler for {payload.event_name}")

    async def emit(self, payload: EventPayload) -> None:
        for handler in list(self._handlers.get(payload.event_name, [])):
            await self._call(handler, payload)
        for handler in list(self._global_handlers):
            await self._call(handler, payload)
        self._send_to_webhooks(payload)

    # ------------------------------------------------------------------
    # Webhooks
    def register_webhook(self, webhook: WebhookConfig) -> None:
        self._webhooks[webhook.id] = webhook

    def unregister_webhook(self, webhook_id: str) -> None:
        self._webhooks.pop(webhook_id, None)

    def get_webhook(self, webhook_id: str) -> Optional[WebhookConfig]:
        return self._webhooks.get(webhook_id)

    def get_webhooks(self) -> List[WebhookConfig]:
        return list(self._webhooks.values())

    def _send_to_webhooks(self, payload: EventPayload) -> None:
        for webhook in self._webhooks.values():
            if not webhook.wants(payload.event_name):
                continue
            task = asyncio.create_task(self._delivery.deliver(webhook, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight webhook deliveries."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()
        self._webhooks.clear()

    async def aclose(self) -> None:
        await self.drain()
        await self._delivery.aclose()


def execution_event(
    event: EventType, execution: ExecutionRecord, **fields: Any
) -> EventPayload:
    """Build a payload carrying the ids of ``execution``."""
    return EventPayload(
        event=event,
        user_id=execution.user_id,
        document_id=execution.document_id,
        workflow_id=execution.workflow_id,
        execution_id=execution.id,
        **fields,
    )
