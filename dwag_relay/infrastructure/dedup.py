"""
Dedup ledger for idempotent ingestion and at-most-once dispatch.

Two independent structures:
- a bounded set of inbound item ids already evaluated (an optimization that
  avoids re-parsing and re-pairing)
- an append-only log of dispatched (media, idea) pairs, which is the
  authoritative guard against duplicate notifications
"""

import hashlib
import logging
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from dwag_relay.domain.errors import StorageUnavailable
from dwag_relay.domain.ledger import CycleState, ProcessedItem, SentPair
from dwag_relay.infrastructure.database import DatabaseSession

logger = logging.getLogger(__name__)

WATERMARK_KEY = "last_successful_cycle_ms"


def pair_fingerprint(media_ref: str, idea: str) -> str:
    """Deterministic fingerprint of a (media, idea) pair."""
    payload = f"{media_ref.strip()}\n{idea.strip()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DedupTracker:
    """Tracks evaluated inbound items and dispatched pairs across restarts."""

    def __init__(self, session_factory: async_sessionmaker, cap: int = 1000):
        self.session_factory = session_factory
        self.cap = cap
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._pending: "OrderedDict[str, None]" = OrderedDict()

    # Inbound items

    async def load(self) -> int:
        """Load the most recent persisted item ids into memory."""
        try:
            async with DatabaseSession(self.session_factory) as session:
                result = await session.execute(
                    select(ProcessedItem.item_id)
                    .order_by(ProcessedItem.id.desc())
                    .limit(self.cap)
                )
                item_ids = list(result.scalars().all())
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e

        self._seen = OrderedDict((item_id, None) for item_id in reversed(item_ids))
        logger.info(f"Loaded {len(self._seen)} processed item ids")
        return len(self._seen)

    def seen(self, item_id: str) -> bool:
        return item_id in self._seen

    def mark_seen(self, item_id: str) -> None:
        """Record an item as evaluated. Persisted on the next flush()."""
        if item_id in self._seen:
            return
        self._seen[item_id] = None
        self._pending[item_id] = None
        self._evict()

    def forget(self, item_id: str) -> None:
        """Release one item so the next cycle evaluates it again."""
        self._seen.pop(item_id, None)
        self._pending.pop(item_id, None)

    def discard_pending(self) -> None:
        """Drop every id marked since the last flush (aborted cycle)."""
        for item_id in self._pending:
            self._seen.pop(item_id, None)
        if self._pending:
            logger.info(f"Discarded {len(self._pending)} pending item ids")
        self._pending.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self) -> None:
        # Oldest half by insertion order, not strict LRU
        if len(self._seen) <= self.cap:
            return
        for item_id in list(self._seen)[: len(self._seen) // 2]:
            del self._seen[item_id]

    async def flush(self) -> int:
        """
        Persist ids marked since the last flush and prune the table.

        Returns:
            Number of ids written
        """
        pending: List[str] = list(self._pending)
        if not pending:
            return 0

        try:
            async with DatabaseSession(self.session_factory) as session:
                result = await session.execute(
                    select(ProcessedItem.item_id).where(ProcessedItem.item_id.in_(pending))
                )
                existing = set(result.scalars().all())
                now = datetime.utcnow()
                session.add_all([
                    ProcessedItem(item_id=item_id, processed_at=now)
                    for item_id in pending
                    if item_id not in existing
                ])
                await session.flush()

                total = await session.scalar(select(func.count(ProcessedItem.id)))
                if total and total > self.cap:
                    cutoff = await session.scalar(
                        select(ProcessedItem.id)
                        .order_by(ProcessedItem.id)
                        .offset(total // 2 - 1)
                        .limit(1)
                    )
                    await session.execute(delete(ProcessedItem).where(ProcessedItem.id <= cutoff))
                    logger.info(f"Evicted {total // 2} processed item ids")

                await session.commit()
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e

        self._pending.clear()
        return len(pending)

    # Dispatched pairs

    async def is_duplicate_pair(self, media_ref: str, idea: str) -> bool:
        """Check if a (media, idea) pair was already dispatched."""
        fingerprint = pair_fingerprint(media_ref, idea)
        try:
            async with DatabaseSession(self.session_factory) as session:
                result = await session.execute(
                    select(SentPair.id).where(SentPair.fingerprint == fingerprint)
                )
                return result.scalar_one_or_none() is not None
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e

    async def mark_pair_sent(self, media_ref: str, idea: str) -> bool:
        """
        Append a pair to the sent log.

        Returns:
            False when the pair was already logged
        """
        fingerprint = pair_fingerprint(media_ref, idea)
        try:
            async with DatabaseSession(self.session_factory) as session:
                session.add(SentPair(
                    fingerprint=fingerprint,
                    media_ref=media_ref,
                    idea=idea,
                    sent_at=datetime.utcnow(),
                ))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e
        return True

    # Cycle watermark

    async def load_watermark(self) -> Optional[int]:
        """Epoch millis of the last successful cycle, if any."""
        try:
            async with DatabaseSession(self.session_factory) as session:
                result = await session.execute(
                    select(CycleState.value).where(CycleState.key == WATERMARK_KEY)
                )
                return result.scalar_one_or_none()
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e

    async def save_watermark(self, value_ms: int) -> int:
        """Advance the watermark. It never moves backward."""
        try:
            async with DatabaseSession(self.session_factory) as session:
                state = await session.get(CycleState, WATERMARK_KEY)
                if state is None:
                    session.add(CycleState(key=WATERMARK_KEY, value=value_ms))
                elif value_ms > state.value:
                    state.value = value_ms
                else:
                    return state.value
                await session.commit()
        except (OperationalError, InterfaceError) as e:
            raise StorageUnavailable(str(e)) from e
        return value_ms
