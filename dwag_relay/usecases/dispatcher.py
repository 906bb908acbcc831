"""
Notification dispatcher with routing, retry and rate limiting.
"""

import asyncio
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from dwag_relay.domain.errors import DispatchFatal, DispatchRetryable, StorageUnavailable
from dwag_relay.domain.ports import DeliveryTransport, OutboundMessage
from dwag_relay.infrastructure.dedup import DedupTracker, pair_fingerprint
from dwag_relay.usecases.pairing import is_link

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    """Lifecycle of one outbound item."""
    PENDING = "pending"
    SENT = "sent"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"


@dataclass
class OutboundItem:
    """An accepted (media, idea, type) triple waiting to be forwarded."""

    media_ref: str
    idea: str
    content_type: str
    author_label: str
    record_id: Optional[int] = None
    item_id: Optional[str] = None
    timestamp_ms: Optional[int] = None


@dataclass
class DispatchOutcome:
    item: OutboundItem
    state: DispatchState = DispatchState.PENDING
    attempts: int = 0
    duplicate: bool = False
    destination: Optional[str] = None
    error: Optional[str] = None


def shape_message(item: OutboundItem) -> OutboundMessage:
    """
    Build the outbound body for an item.

    Links go out bare on their own line so the receiving surface unfurls a
    preview; anything else is a single attributed text line.
    """
    if is_link(item.media_ref):
        body = f"**{item.author_label}**: {item.media_ref.strip()}\n\"{item.idea}\""
    else:
        body = f"**{item.author_label}:** \"{item.idea}\" ({item.media_ref})"
    return OutboundMessage(author_label=item.author_label, body_text=body)


class RateLimiter:
    """Minimum delay between consecutive calls to the same destination.

    Shared process-wide: calls to one destination are serialized even when
    they come from concurrent workers.
    """

    def __init__(self, min_interval: float, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_call: Dict[str, float] = {}

    @asynccontextmanager
    async def slot(self, destination: str):
        async with self._locks[destination]:
            last = self._last_call.get(destination)
            if last is not None:
                wait = self.min_interval - (self._clock() - last)
                if wait > 0:
                    await self._sleep(wait)
            try:
                yield
            finally:
                # Counted whether the call succeeded or not
                self._last_call[destination] = self._clock()


class NotificationDispatcher:
    """Forwards accepted items to their destination exactly once."""

    def __init__(
        self,
        transport: DeliveryTransport,
        tracker: DedupTracker,
        routes: Dict[str, str],
        default_endpoint: Optional[str] = None,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        min_send_interval: float = 2.0,
        send_timeout: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.transport = transport
        self.tracker = tracker
        self.routes = {kind.lower(): url for kind, url in routes.items() if url}
        self.default_endpoint = default_endpoint
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.send_timeout = send_timeout
        self.rate_limiter = rate_limiter or RateLimiter(min_send_interval)
        self._pair_locks: Dict[str, asyncio.Lock] = {}
        self._pair_users: Dict[str, int] = {}

    def resolve_destination(self, content_type: str) -> Optional[str]:
        """Endpoint for a content type, falling back to the default."""
        return self.routes.get((content_type or "").lower()) or self.default_endpoint

    async def dispatch(self, item: OutboundItem) -> DispatchOutcome:
        """
        Forward one item, unless its (media, idea) pair was already sent.

        Args:
            item: The item to forward

        Returns:
            Final outcome; never raises for delivery or ledger failures
        """
        outcome = DispatchOutcome(item=item)

        # Same pair from two workers: only one may reach the network
        async with self._pair_lock(pair_fingerprint(item.media_ref, item.idea)):
            try:
                if await self.tracker.is_duplicate_pair(item.media_ref, item.idea):
                    logger.info(f"Dedup skip for {item.media_ref} (already sent)")
                    outcome.state = DispatchState.SENT
                    outcome.duplicate = True
                    await self._mark_sent(item)
                    return outcome
            except StorageUnavailable as e:
                logger.error(f"Ledger unavailable, deferring dispatch of {item.media_ref}: {e}")
                outcome.state = DispatchState.FAILED_RETRYABLE
                outcome.error = str(e)
                return outcome

            destination = self.resolve_destination(item.content_type)
            outcome.destination = destination
            if not destination:
                outcome.state = DispatchState.FAILED_FATAL
                outcome.error = f"No webhook configured for type '{item.content_type}'"
                logger.error(f"Dispatch failed permanently: {outcome.error}")
                return outcome

            message = shape_message(item)
            try:
                outcome.attempts = await self._send_with_retry(destination, message)
            except DispatchFatal as e:
                outcome.state = DispatchState.FAILED_FATAL
                outcome.attempts = self.max_attempts
                outcome.error = str(e)
                logger.error(f"Dispatch of {item.media_ref} abandoned: {e}")
                return outcome

            outcome.state = DispatchState.SENT
            await self._mark_sent(item)
            logger.info(f"Dispatched {item.media_ref} ({item.content_type}) in {outcome.attempts} attempt(s)")
            return outcome

    @asynccontextmanager
    async def _pair_lock(self, key: str):
        """Per-pair lock, dropped once no dispatch holds or waits on it."""
        lock = self._pair_locks.setdefault(key, asyncio.Lock())
        self._pair_users[key] = self._pair_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._pair_users[key] -= 1
            if not self._pair_users[key]:
                del self._pair_users[key]
                del self._pair_locks[key]

    async def _send_with_retry(self, destination: str, message: OutboundMessage) -> int:
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(DispatchRetryable),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    await self._attempt(destination, message)
        except DispatchRetryable as e:
            raise DispatchFatal(f"Giving up after {attempts} attempt(s): {e}") from e
        return attempts

    async def _attempt(self, destination: str, message: OutboundMessage) -> None:
        """Exactly one outbound call."""
        async with self.rate_limiter.slot(destination):
            try:
                status = await asyncio.wait_for(
                    self.transport.send(destination, message),
                    timeout=self.send_timeout,
                )
            except asyncio.TimeoutError as e:
                raise DispatchRetryable("Send timed out") from e
            except (httpx.HTTPError, OSError) as e:
                raise DispatchRetryable(f"Network error: {e}") from e

        if not 200 <= status < 300:
            logger.warning(f"Webhook returned {status}, will retry if budget allows")
            raise DispatchRetryable(f"HTTP {status}", status=status)

    async def _mark_sent(self, item: OutboundItem) -> None:
        # Written only after the outcome is known
        try:
            await self.tracker.mark_pair_sent(item.media_ref, item.idea)
        except StorageUnavailable as e:
            logger.error(f"Sent {item.media_ref} but could not record it in the ledger: {e}")
