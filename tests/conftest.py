"""
Pytest configuration and fixtures for dwag relay tests.
"""

from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from dwag_relay.domain.models import Base
from dwag_relay.domain.ledger import ProcessedItem, SentPair, CycleState  # noqa: F401
from dwag_relay.domain.conversation import Conversation, InboundItem, ItemKind
from dwag_relay.infrastructure.dedup import DedupTracker
from dwag_relay.usecases.dispatcher import NotificationDispatcher, RateLimiter
from dwag_relay.usecases.pipeline import PipelineCoordinator
from dwag_relay.usecases.tag_record_store import TagRecordStore


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MEME_WEBHOOK = "https://discord.test/webhooks/meme"
SKIT_WEBHOOK = "https://discord.test/webhooks/skit"
DEFAULT_WEBHOOK = "https://discord.test/webhooks/default"


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def test_session_factory(test_engine) -> async_sessionmaker:
    """Create a session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Session factory on a file database, one connection per session."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(test_session_factory) -> TagRecordStore:
    return TagRecordStore(test_session_factory)


@pytest_asyncio.fixture
async def tracker(test_session_factory) -> DedupTracker:
    tracker = DedupTracker(test_session_factory, cap=1000)
    await tracker.load()
    return tracker


@pytest.fixture
def mock_transport():
    """Delivery transport that accepts everything."""
    transport = AsyncMock()
    transport.send.return_value = 204
    return transport


@pytest.fixture
def mock_replies():
    """Reply sink recording every reply."""
    replies = AsyncMock()
    replies.send_reply.return_value = True
    return replies


@pytest.fixture
def dispatcher(mock_transport, tracker) -> NotificationDispatcher:
    """Dispatcher without backoff or rate limiting delays."""
    return NotificationDispatcher(
        mock_transport,
        tracker,
        routes={"meme": MEME_WEBHOOK, "skit": SKIT_WEBHOOK},
        default_endpoint=DEFAULT_WEBHOOK,
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
        rate_limiter=RateLimiter(0),
    )


class FakeInbox:
    """Inbound source serving a fixed list of conversations."""

    def __init__(self, conversations: Optional[List[Conversation]] = None):
        self.conversations = conversations or []
        self.calls = 0
        self.error: Optional[Exception] = None

    async def list_conversations(self, since_ms: Optional[int] = None) -> List[Conversation]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.conversations


@pytest.fixture
def fake_inbox() -> FakeInbox:
    return FakeInbox()


@pytest.fixture
def coordinator(fake_inbox, mock_replies, store, tracker, dispatcher) -> PipelineCoordinator:
    return PipelineCoordinator(
        fake_inbox,
        mock_replies,
        store,
        tracker,
        dispatcher,
        bot_user_id="dwag-bot",
        max_workers=1,
        clock=lambda: 1_700_000_100_000,
    )


def media_item(item_id: str, ref: str, ts_ms: int, author: str = "alice") -> InboundItem:
    return InboundItem(
        item_id=item_id,
        author_id=author,
        timestamp_micros=ts_ms * 1000,
        kind=ItemKind.MEDIA,
        media_ref=ref,
    )


def text_item(item_id: str, body: str, ts_ms: int, author: str = "alice") -> InboundItem:
    return InboundItem(
        item_id=item_id,
        author_id=author,
        timestamp_micros=ts_ms * 1000,
        kind=ItemKind.TEXT,
        text_body=body,
    )


def make_conversation(items: List[InboundItem], participant: str = "alice", conversation_id: str = "c1") -> Conversation:
    return Conversation(conversation_id=conversation_id, participant=participant, items=items)
