"""
Unit tests for NotificationDispatcher.
"""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from dwag_relay.domain.errors import StorageUnavailable
from dwag_relay.usecases.dispatcher import (
    DispatchState,
    NotificationDispatcher,
    OutboundItem,
    RateLimiter,
    shape_message,
)

from conftest import DEFAULT_WEBHOOK, MEME_WEBHOOK, SKIT_WEBHOOK


def make_item(media_ref="m1", idea="funny walk", content_type="skit", author="alice") -> OutboundItem:
    return OutboundItem(media_ref=media_ref, idea=idea, content_type=content_type, author_label=author)


class TestShapeMessage:
    """Tests for outbound message shaping."""

    def test_link_goes_on_its_own(self):
        """Test links stay bare so the preview unfurls."""
        message = shape_message(make_item(media_ref="https://www.instagram.com/reel/abc/"))

        assert message.body_text == '**alice**: https://www.instagram.com/reel/abc/\n"funny walk"'
        assert message.author_label == "alice"

    def test_opaque_reference(self):
        message = shape_message(make_item(media_ref="m1"))

        assert message.body_text == '**alice:** "funny walk" (m1)'


class TestRouting:
    """Tests for destination resolution."""

    def test_routes_by_type(self, dispatcher):
        assert dispatcher.resolve_destination("skit") == SKIT_WEBHOOK
        assert dispatcher.resolve_destination("MEME") == MEME_WEBHOOK

    def test_falls_back_to_default(self, dispatcher):
        assert dispatcher.resolve_destination("audio") == DEFAULT_WEBHOOK

    @pytest.mark.asyncio
    async def test_no_destination_is_fatal(self, mock_transport, tracker):
        dispatcher = NotificationDispatcher(mock_transport, tracker, routes={}, rate_limiter=RateLimiter(0))

        outcome = await dispatcher.dispatch(make_item(content_type="audio"))

        assert outcome.state == DispatchState.FAILED_FATAL
        mock_transport.send.assert_not_called()
        assert not await tracker.is_duplicate_pair("m1", "funny walk")


class TestDispatch:
    """Tests for dispatch outcomes."""

    @pytest.mark.asyncio
    async def test_sends_and_records_pair(self, dispatcher, mock_transport, tracker):
        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.SENT
        assert outcome.duplicate is False
        assert outcome.attempts == 1
        assert outcome.destination == SKIT_WEBHOOK
        destination, message = mock_transport.send.call_args.args
        assert destination == SKIT_WEBHOOK
        assert "funny walk" in message.body_text
        assert await tracker.is_duplicate_pair("m1", "funny walk")

    @pytest.mark.asyncio
    async def test_duplicate_pair_is_suppressed(self, dispatcher, mock_transport):
        """Test the same pair is never forwarded twice."""
        await dispatcher.dispatch(make_item())

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.SENT
        assert outcome.duplicate is True
        assert mock_transport.send.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_pair_sends_once(self, dispatcher, mock_transport):
        outcomes = await asyncio.gather(dispatcher.dispatch(make_item()), dispatcher.dispatch(make_item()))

        assert mock_transport.send.await_count == 1
        assert sorted(o.duplicate for o in outcomes) == [False, True]

    @pytest.mark.asyncio
    async def test_pair_locks_are_dropped_after_dispatch(self, dispatcher, mock_transport):
        """Test the lock map holds only pairs still in flight."""
        items = [make_item(media_ref=f"m{i}") for i in range(3)] + [make_item(media_ref="m0")]

        await asyncio.gather(*(dispatcher.dispatch(item) for item in items))
        await dispatcher.dispatch(make_item(media_ref="m0"))

        assert mock_transport.send.await_count == 3
        assert dispatcher._pair_locks == {}
        assert dispatcher._pair_users == {}

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, dispatcher, mock_transport):
        mock_transport.send.side_effect = [500, httpx.ConnectError("refused"), 204]

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.SENT
        assert outcome.attempts == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_fatal(self, dispatcher, mock_transport, tracker):
        """Test an item is abandoned after the attempt budget and not logged as sent."""
        mock_transport.send.return_value = 429

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.FAILED_FATAL
        assert mock_transport.send.await_count == 3
        assert "429" in outcome.error
        assert not await tracker.is_duplicate_pair("m1", "funny walk")

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, tracker):
        transport = AsyncMock()
        calls = []

        async def slow_then_fast(destination, message):
            calls.append(destination)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return 200

        transport.send.side_effect = slow_then_fast
        dispatcher = NotificationDispatcher(
            transport,
            tracker,
            routes={"skit": SKIT_WEBHOOK},
            backoff_base=0,
            send_timeout=0.05,
            rate_limiter=RateLimiter(0),
        )

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.SENT
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_ledger_unavailable_defers(self, dispatcher, mock_transport, tracker):
        tracker.is_duplicate_pair = AsyncMock(side_effect=StorageUnavailable("locked"))

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.FAILED_RETRYABLE
        mock_transport.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_ledger_write_failure_still_sent(self, dispatcher, tracker):
        tracker.mark_pair_sent = AsyncMock(side_effect=StorageUnavailable("locked"))

        outcome = await dispatcher.dispatch(make_item())

        assert outcome.state == DispatchState.SENT


class TestRateLimiter:
    """Tests for the per-destination rate limiter."""

    @pytest.mark.asyncio
    async def test_waits_out_the_interval(self):
        now = [100.0]
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        limiter = RateLimiter(2.0, clock=lambda: now[0], sleep=fake_sleep)

        async with limiter.slot("a"):
            pass
        now[0] += 0.5
        async with limiter.slot("a"):
            pass

        assert sleeps == [1.5]

    @pytest.mark.asyncio
    async def test_destinations_are_independent(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        limiter = RateLimiter(2.0, clock=lambda: 100.0, sleep=fake_sleep)

        async with limiter.slot("a"):
            pass
        async with limiter.slot("b"):
            pass

        assert sleeps == []

    @pytest.mark.asyncio
    async def test_failed_call_still_counts(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        limiter = RateLimiter(2.0, clock=lambda: 100.0, sleep=fake_sleep)

        with pytest.raises(RuntimeError):
            async with limiter.slot("a"):
                raise RuntimeError("boom")
        async with limiter.slot("a"):
            pass

        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_to_one_endpoint_are_spaced(self, tracker):
        """Test two workers sending different pairs to one webhook still wait out the interval."""
        now = [100.0]
        sleeps = []
        send_times = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            now[0] += seconds

        async def record_send(destination, message):
            send_times.append(now[0])
            return 204

        transport = AsyncMock()
        transport.send.side_effect = record_send
        dispatcher = NotificationDispatcher(
            transport,
            tracker,
            routes={"skit": SKIT_WEBHOOK},
            backoff_base=0,
            rate_limiter=RateLimiter(2.0, clock=lambda: now[0], sleep=fake_sleep),
        )

        outcomes = await asyncio.gather(
            dispatcher.dispatch(make_item(media_ref="m1", idea="first")),
            dispatcher.dispatch(make_item(media_ref="m2", idea="second")),
        )

        assert [o.state for o in outcomes] == [DispatchState.SENT, DispatchState.SENT]
        assert sleeps == [2.0]
        assert send_times == [100.0, 102.0]
