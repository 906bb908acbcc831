"""
Discord webhook delivery transport.
"""

import logging
from typing import Optional

import httpx

from dwag_relay.domain.ports import OutboundMessage

logger = logging.getLogger(__name__)

# Discord rejects message content above this length
MAX_CONTENT_LENGTH = 2000


class DiscordWebhookTransport:
    """Posts messages to Discord webhook URLs.

    Only performs the HTTP call: retries, rate limiting and dedup belong to
    the dispatcher. Network errors and timeouts propagate as httpx errors.
    """

    def __init__(self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, destination: str, message: OutboundMessage) -> int:
        """
        Send a message to a webhook.

        Args:
            destination: Webhook URL
            message: Author label and body

        Returns:
            HTTP status code of the webhook response
        """
        payload = {
            "content": message.body_text[:MAX_CONTENT_LENGTH],
            # Forwarded text must never ping anyone
            "allowed_mentions": {"parse": []},
        }
        response = await self._client.post(destination, json=payload)

        if response.is_success:
            logger.info(f"Discord message sent for {message.author_label}: {response.status_code}")
        else:
            logger.error(f"Failed to send to Discord: {response.status_code} - {response.text[:200]}")
        return response.status_code

    async def close(self) -> None:
        await self._client.aclose()
