"""
Ports (interfaces) used by the relay pipeline.

The pipeline only depends on these contracts, never on how conversations are
obtained or how notifications are delivered.
"""

from typing import List, Optional, Protocol

from pydantic import BaseModel

from dwag_relay.domain.conversation import Conversation


class OutboundMessage(BaseModel):
    """Payload handed to the delivery transport."""
    author_label: str
    body_text: str


class InboundSource(Protocol):
    """Source of conversations to poll."""

    async def list_conversations(self, since_ms: Optional[int] = None) -> List[Conversation]:
        ...


class ReplySink(Protocol):
    """Channel for answering a conversation the command arrived on."""

    async def send_reply(self, conversation_id: str, text: str) -> bool:
        ...


class DeliveryTransport(Protocol):
    """Outbound notification delivery. Returns the HTTP status."""

    async def send(self, destination: str, message: OutboundMessage) -> int:
        ...
