"""
HTTP inbox client.

Reads normalized conversations from an inbox service and posts command
replies back to the conversation they came from.
"""

import logging
from typing import List, Optional

import httpx
from pydantic import ValidationError

from dwag_relay.domain.conversation import Conversation
from dwag_relay.domain.errors import TransportUnavailable

logger = logging.getLogger(__name__)


class HttpInboxClient:
    """Inbound source and reply sink backed by an HTTP inbox service."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
        )

    async def list_conversations(self, since_ms: Optional[int] = None) -> List[Conversation]:
        """
        Fetch conversations with their items, oldest to newest.

        Args:
            since_ms: Optional hint; the inbox may return older items too

        Returns:
            Parsed conversations

        Raises:
            TransportUnavailable: The inbox could not be read
        """
        params = {"since": since_ms} if since_ms is not None else None
        try:
            response = await self._client.get("/conversations", params=params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransportUnavailable(f"Inbox fetch failed: {e}") from e

        raw_conversations = payload.get("conversations", []) if isinstance(payload, dict) else payload

        conversations = []
        for raw in raw_conversations:
            try:
                conversations.append(Conversation.model_validate(raw))
            except ValidationError as e:
                # One malformed conversation must not hide the others
                logger.warning(f"Skipping malformed conversation: {e}")

        logger.info(f"Fetched {len(conversations)} conversations")
        return conversations

    async def send_reply(self, conversation_id: str, text: str) -> bool:
        """
        Post a reply into a conversation.

        Returns:
            True if the reply was accepted
        """
        try:
            response = await self._client.post(
                f"/conversations/{conversation_id}/replies",
                json={"text": text},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to send reply to {conversation_id}: {e}")
            return False

        if not response.is_success:
            logger.error(f"Reply to {conversation_id} rejected: {response.status_code}")
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class LoggingReplySink:
    """Reply sink used when no inbox is configured; replies are only logged."""

    async def send_reply(self, conversation_id: str, text: str) -> bool:
        logger.info(f"Reply for {conversation_id}: {text}")
        return True


class EmptyInboundSource:
    """Inbound source used when no inbox is configured."""

    async def list_conversations(self, since_ms: Optional[int] = None) -> List[Conversation]:
        logger.warning("No INBOX_URL configured; nothing to poll")
        return []
