"""
Tests for the HTTP inbox client and the Discord webhook transport.
"""

import json

import httpx
import pytest

from dwag_relay.domain.errors import TransportUnavailable
from dwag_relay.domain.ports import OutboundMessage
from dwag_relay.infrastructure.discord_webhook import DiscordWebhookTransport
from dwag_relay.infrastructure.inbox_client import HttpInboxClient


def inbox_with(handler) -> HttpInboxClient:
    client = httpx.AsyncClient(base_url="https://inbox.test", transport=httpx.MockTransport(handler))
    return HttpInboxClient("https://inbox.test", client=client)


class TestHttpInboxClient:
    """Tests for HttpInboxClient."""

    @pytest.mark.asyncio
    async def test_list_conversations(self):
        seen = {}

        def handler(request):
            seen["since"] = request.url.params.get("since")
            return httpx.Response(200, json={"conversations": [
                {"conversationId": "c1", "participant": "alice", "items": [
                    {"itemId": "i1", "kind": "media", "mediaRef": "m1", "timestampMicros": 1000},
                ]},
                {"participant": "missing id"},
            ]})

        inbox = inbox_with(handler)

        conversations = await inbox.list_conversations(since_ms=42)

        assert seen["since"] == "42"
        assert len(conversations) == 1
        assert conversations[0].items[0].media_ref == "m1"
        await inbox.close()

    @pytest.mark.asyncio
    async def test_server_error_is_transport_unavailable(self):
        inbox = inbox_with(lambda request: httpx.Response(503))

        with pytest.raises(TransportUnavailable):
            await inbox.list_conversations()
        await inbox.close()

    @pytest.mark.asyncio
    async def test_send_reply(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(201)

        inbox = inbox_with(handler)

        assert await inbox.send_reply("c1", "✅ Saved!") is True
        assert captured == {"path": "/conversations/c1/replies", "body": {"text": "✅ Saved!"}}
        await inbox.close()

    @pytest.mark.asyncio
    async def test_rejected_reply(self):
        inbox = inbox_with(lambda request: httpx.Response(403))

        assert await inbox.send_reply("c1", "hi") is False
        await inbox.close()


class TestDiscordWebhookTransport:
    """Tests for DiscordWebhookTransport."""

    @pytest.mark.asyncio
    async def test_posts_content_without_mentions(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(204)

        transport = DiscordWebhookTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        status = await transport.send(
            "https://discord.test/webhooks/skit",
            OutboundMessage(author_label="alice", body_text="@everyone " + "x" * 3000),
        )

        assert status == 204
        assert captured["url"] == "https://discord.test/webhooks/skit"
        assert captured["body"]["allowed_mentions"] == {"parse": []}
        assert len(captured["body"]["content"]) == 2000
        await transport.close()

    @pytest.mark.asyncio
    async def test_returns_error_status(self):
        transport = DiscordWebhookTransport(
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(429, text="slow down")))
        )

        status = await transport.send("https://discord.test/webhooks/skit", OutboundMessage(author_label="a", body_text="b"))

        assert status == 429
        await transport.close()
