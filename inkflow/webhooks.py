"""Signed, retried HTTP delivery of lifecycle events."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import uuid
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import (
    HEADER_DELIVERY,
    HEADER_EVENT,
    HEADER_SIGNATURE,
    WEBHOOK_TIMEOUT,
    WEBHOOK_USER_AGENT,
)
from .utils.retry import RetryPolicy, compute_backoff

if TYPE_CHECKING:
    from .events import EventPayload

logger = logging.getLogger(__name__)


class WebhookConfig(BaseModel):
    """An external endpoint subscribed to a set of event types."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    url: str
    events: List[str] = Field(default_factory=list)
    secret: Optional[str] = None
    enabled: bool = True
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    def wants(self, event: str) -> bool:
        return self.enabled and event in self.events


def sign_payload(body: str, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


class WebhookDeliveryError(Exception):
    """A single delivery attempt was not accepted by the receiver."""


class WebhookDelivery:
    """POSTs event payloads to webhooks, retrying per each webhook's policy.

    Failures never propagate: after the last attempt they are logged and
    ``deliver`` returns ``False``.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = WEBHOOK_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def build_headers(self, webhook: WebhookConfig, event: str, body: str) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": WEBHOOK_USER_AGENT,
            HEADER_EVENT: event,
            HEADER_DELIVERY: str(uuid.uuid4()),
        }
        if webhook.secret:
            headers[HEADER_SIGNATURE] = sign_payload(body, webhook.secret)
        return headers

    async def _attempt(self, webhook: WebhookConfig, event: str, body: str) -> None:
        response = await self._get_client().post(
            webhook.url,
            content=body.encode(),
            headers=self.build_headers(webhook, event, body),
        )
        if not response.is_success:
            raise WebhookDeliveryError(f"Webhook returned status {response.status_code}")

    async def deliver(self, webhook: WebhookConfig, payload: "EventPayload") -> bool:
        body = payload.to_json()
        policy = webhook.retry
        for attempt in range(1, policy.max_attempts + 1):
            try:
                await self._attempt(webhook, payload.event_name, body)
                logger.debug(f"Delivered {payload.event_name} to {webhook.url}")
                return True
            except (httpx.HTTPError, WebhookDeliveryError) as exc:
                if attempt >= policy.max_attempts:
                    logger.error(
                        f"Error sending webhook {webhook.id} to {webhook.url} "
                        f"after {attempt} attempts: {exc}"
                    )
                    return False
                delay = compute_backoff(
                    attempt, policy.initial_delay, policy.backoff_multiplier
                )
                logger.warning(
                    f"Webhook {webhook.id} attempt {attempt} failed: {exc}; "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
            except Exception:
                # bad URL or payload; another attempt would fail the same way
                logger.exception(
                    f"Error sending webhook {webhook.id} to {webhook.url} "
                    f"on attempt {attempt}"
                )
                return False
        return False

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
