"""Boundary to the document subsystem (storage, delivery, signatures)."""

from __future__ import annotations

import abc
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from .persistence.models import new_id, utcnow


@dataclass
class SentDocument:
    """One delivery handed to the document subsystem."""

    document_id: str
    recipient_email: str
    recipient_name: Optional[str] = None
    message: Optional[str] = None
    template: Optional[str] = None
    delivery_id: str = field(default_factory=new_id)
    sent_at: Any = field(default_factory=utcnow)


class DocumentService(metaclass=abc.ABCMeta):
    """What the engine needs from the document subsystem."""

    @abc.abstractmethod
    async def send_document(
        self,
        document_id: str,
        recipient_email: str,
        recipient_name: Optional[str] = None,
        message: Optional[str] = None,
        template: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send ``document_id`` to a recipient and return delivery details."""
        raise NotImplementedError

    @abc.abstractmethod
    async def is_signed(self, document_id: str, recipient_id: str) -> bool:
        """Whether ``recipient_id`` has signed ``document_id``."""
        raise NotImplementedError


class InMemoryDocumentService(DocumentService):
    """Records deliveries and signatures in process memory for tests and demos."""

    def __init__(self) -> None:
        self.sent: List[SentDocument] = []
        self._signed: Set[Tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    async def send_document(
        self,
        document_id: str,
        recipient_email: str,
        recipient_name: Optional[str] = None,
        message: Optional[str] = None,
        template: Optional[str] = None,
    ) -> Dict[str, Any]:
        delivery = SentDocument(
            document_id=document_id,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            message=message,
            template=template,
        )
        async with self._lock:
            self.sent.append(delivery)
        return {
            "deliveryId": delivery.delivery_id,
            "recipientEmail": recipient_email,
            "sentAt": delivery.sent_at.isoformat(),
        }

    async def is_signed(self, document_id: str, recipient_id: str) -> bool:
        return (document_id, recipient_id) in self._signed

    def mark_signed(self, document_id: str, recipient_id: str) -> None:
        self._signed.add((document_id, recipient_id))

    def sent_to(self, recipient_email: str) -> List[SentDocument]:
        return [d for d in self.sent if d.recipient_email == recipient_email]
