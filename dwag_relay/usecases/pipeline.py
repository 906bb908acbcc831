"""
Pipeline coordinator.

One cycle, in strict order:
1) Poll conversations from the inbound source
2) Skip items already evaluated (id set and cycle watermark)
3) Parse commands and pair each "add" with the preceding media
4) Persist records and answer commands in the conversation
5) Dispatch accepted items to their webhooks
6) Persist the evaluated ids and advance the watermark

Only an inbound failure aborts a cycle; everything else is contained to the
item it happened on.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from dwag_relay.domain.commands import AddCommand
from dwag_relay.domain.conversation import Conversation, InboundItem
from dwag_relay.domain.errors import StorageUnavailable, TransportUnavailable
from dwag_relay.domain.models import User
from dwag_relay.domain.ports import InboundSource, ReplySink
from dwag_relay.infrastructure.dedup import DedupTracker
from dwag_relay.parsing.command_parser import DEFAULT_PREFIX
from dwag_relay.usecases.command_service import CommandService
from dwag_relay.usecases.dispatcher import (
    DispatchState,
    NotificationDispatcher,
    OutboundItem,
)
from dwag_relay.usecases.pairing import (
    Classification,
    ClassifiedItem,
    classify_conversation,
    find_preceding_media,
)
from dwag_relay.usecases.tag_record_store import TagRecordStore
from dwag_relay.utils.time import format_millis, now_millis

logger = logging.getLogger(__name__)

NO_MEDIA_REPLY = "⚠️ No video found to pair with your idea. Share one first, then send the add command."


class PipelineState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    DISPATCHING = "dispatching"


@dataclass
class CycleReport:
    """Counters describing one pipeline cycle."""

    started_at_ms: int = 0
    skipped: bool = False
    aborted: bool = False
    error: Optional[str] = None
    conversations: int = 0
    items_evaluated: int = 0
    records_saved: int = 0
    replies_sent: int = 0
    pairing_missing: int = 0
    storage_failures: int = 0
    sent: int = 0
    duplicates: int = 0
    failed_fatal: int = 0
    deferred: int = 0
    watermark_ms: Optional[int] = None


@dataclass
class _ConversationResult:
    outbound: List[OutboundItem] = field(default_factory=list)
    hold_ms: Optional[int] = None

    def hold(self, timestamp_ms: Optional[int]) -> None:
        """Keep the watermark before this timestamp so the item is re-evaluated."""
        if not timestamp_ms:
            return
        if self.hold_ms is None or timestamp_ms < self.hold_ms:
            self.hold_ms = timestamp_ms


def merge_conversations(conversations: List[Conversation]) -> List[Conversation]:
    """
    Collapse repeated conversations and repeated items from one fetch.

    The first occurrence of each conversation id and item id wins; items
    from later copies are appended in their original order.
    """
    merged = {}
    for conversation in conversations:
        first, items = merged.setdefault(conversation.conversation_id, (conversation, {}))
        for item in conversation.items:
            items.setdefault(item.item_id, item)
    return [first.model_copy(update={"items": list(items.values())}) for first, items in merged.values()]


class PipelineCoordinator:
    """Orchestrates polling, parsing, pairing, persistence and dispatch."""

    def __init__(
        self,
        source: InboundSource,
        replies: ReplySink,
        store: TagRecordStore,
        tracker: DedupTracker,
        dispatcher: NotificationDispatcher,
        command_service: Optional[CommandService] = None,
        prefix: str = DEFAULT_PREFIX,
        bot_user_id: Optional[str] = None,
        fetch_timeout: float = 30.0,
        max_workers: int = 4,
        clock: Callable[[], int] = now_millis
    ):
        self.source = source
        self.replies = replies
        self.store = store
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.command_service = command_service or CommandService(store, prefix=prefix)
        self.prefix = prefix
        self.bot_user_id = bot_user_id
        self.fetch_timeout = fetch_timeout
        self.max_workers = max(1, max_workers)
        self._clock = clock

        self._state = PipelineState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.last_report: Optional[CycleReport] = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def request_shutdown(self) -> None:
        """Stop after the in-flight item; no new cycles start."""
        self._shutdown.set()
        logger.info("Shutdown requested for pipeline")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no cycle is running. False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_cycle(self) -> CycleReport:
        """
        Run one polling cycle. Never raises; failures end up in the report.

        Returns:
            CycleReport for the cycle (skipped when another cycle is running)
        """
        if self._shutdown.is_set():
            logger.info("Pipeline is shutting down, cycle skipped")
            return CycleReport(started_at_ms=self._clock(), skipped=True)

        if self._cycle_lock.locked():
            logger.info("Previous cycle still running, trigger skipped")
            return CycleReport(started_at_ms=self._clock(), skipped=True)

        async with self._cycle_lock:
            self._idle.clear()
            try:
                report = await self._run_cycle()
            except Exception as e:
                logger.exception(f"Unexpected error in pipeline cycle: {e}")
                self.tracker.discard_pending()
                report = CycleReport(started_at_ms=self._clock(), aborted=True, error=str(e))
            finally:
                self._state = PipelineState.IDLE
                self._idle.set()

        self.last_report = report
        return report

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport(started_at_ms=self._clock())

        # Polling
        self._state = PipelineState.POLLING
        try:
            watermark = await self.tracker.load_watermark()
            conversations = await self._fetch(watermark)
        except (TransportUnavailable, StorageUnavailable) as e:
            logger.error(f"Cycle aborted: {e}")
            self.tracker.discard_pending()
            report.aborted = True
            report.error = str(e)
            return report

        fetched = len(conversations)
        conversations = merge_conversations(conversations)
        if len(conversations) < fetched:
            logger.warning(f"Merged {fetched - len(conversations)} repeated conversations from one fetch")
        report.conversations = len(conversations)
        logger.info(
            f"Polled {len(conversations)} conversations (watermark: {format_millis(watermark)})"
        )

        # Processing
        self._state = PipelineState.PROCESSING
        semaphore = asyncio.Semaphore(self.max_workers)

        async def process(conversation: Conversation) -> _ConversationResult:
            async with semaphore:
                return await self._process_conversation(conversation, watermark, report)

        results = await asyncio.gather(*(process(c) for c in conversations))

        outbound = [item for result in results for item in result.outbound]
        holds = [result.hold_ms for result in results if result.hold_ms is not None]

        # Dispatching
        self._state = PipelineState.DISPATCHING
        holds.extend(await self._dispatch_all(outbound, report))

        # Commit
        try:
            await self.tracker.flush()
            target = report.started_at_ms
            if holds:
                target = min(target, min(holds) - 1)
            report.watermark_ms = await self.tracker.save_watermark(target)
        except StorageUnavailable as e:
            # Pending ids stay in memory and are written on the next flush
            logger.error(f"Could not persist cycle state: {e}")
            report.error = str(e)

        logger.info(
            f"Cycle complete: {report.records_saved} saved, {report.sent} sent, "
            f"{report.duplicates} duplicates, {report.failed_fatal} failed, "
            f"{report.pairing_missing} unpaired, {report.storage_failures} storage failures"
        )
        return report

    async def _fetch(self, watermark: Optional[int]) -> List[Conversation]:
        try:
            return await asyncio.wait_for(
                self.source.list_conversations(watermark),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportUnavailable("Inbound fetch timed out") from e
        except TransportUnavailable:
            raise
        except Exception as e:
            raise TransportUnavailable(f"Inbound fetch failed: {e}") from e

    def _is_fresh(self, item: InboundItem, watermark: Optional[int]) -> bool:
        if self.bot_user_id and item.author_id == self.bot_user_id:
            return False
        if self.tracker.seen(item.item_id):
            return False
        # Items without a timestamp rely on the id set alone
        if watermark is not None and item.timestamp_micros and item.timestamp_millis <= watermark:
            return False
        return True

    async def _process_conversation(
        self,
        conversation: Conversation,
        watermark: Optional[int],
        report: CycleReport
    ) -> _ConversationResult:
        result = _ConversationResult()
        classified = classify_conversation(conversation.items, prefix=self.prefix)
        fresh = [i for i, entry in enumerate(classified) if self._is_fresh(entry.item, watermark)]
        if not fresh:
            return result

        try:
            user = await self.store.find_or_create_user(conversation.participant)
        except StorageUnavailable as e:
            logger.error(f"Skipping conversation with {conversation.participant}: {e}")
            report.storage_failures += 1
            result.hold(min(classified[i].item.timestamp_millis for i in fresh))
            return result

        for index in fresh:
            entry = classified[index]
            item = entry.item

            if self._shutdown.is_set():
                result.hold(item.timestamp_millis)
                break

            # Another worker or an earlier copy in this fetch got here first
            if self.tracker.seen(item.item_id):
                continue
            self.tracker.mark_seen(item.item_id)
            report.items_evaluated += 1

            if entry.classification != Classification.COMMAND:
                continue

            try:
                if isinstance(entry.command, AddCommand):
                    outbound = await self._handle_add(conversation, user, classified, index, report)
                    if outbound is not None:
                        result.outbound.append(outbound)
                else:
                    reply = await self.command_service.handle_command(entry.command, user)
                    await self._reply(conversation, reply, report)
            except StorageUnavailable as e:
                logger.error(f"Storage unavailable for item {item.item_id}: {e}")
                report.storage_failures += 1
                self.tracker.forget(item.item_id)
                result.hold(item.timestamp_millis)
            except Exception as e:
                logger.exception(f"Error processing item {item.item_id}: {e}")
                self.tracker.forget(item.item_id)
                result.hold(item.timestamp_millis)

        return result

    async def _handle_add(
        self,
        conversation: Conversation,
        user: User,
        classified: List[ClassifiedItem],
        index: int,
        report: CycleReport
    ) -> Optional[OutboundItem]:
        entry = classified[index]
        command: AddCommand = entry.command

        media = find_preceding_media(classified, index)
        if media is None:
            report.pairing_missing += 1
            logger.warning(
                f"No media found to pair with command from {conversation.participant}: "
                f"{entry.item.text_body!r}"
            )
            await self._reply(conversation, NO_MEDIA_REPLY, report)
            return None

        record = await self.store.save_record(
            user_id=user.id,
            source_url=media.media_ref,
            idea=command.idea,
            tag_name=command.type,
            metadata=media.item.metadata,
        )
        report.records_saved += 1
        await self._reply(
            conversation,
            f"✅ Saved! Tagged as '{command.type}' - ID: {record.id}",
            report,
        )

        return OutboundItem(
            media_ref=media.media_ref,
            idea=command.idea,
            content_type=command.type,
            author_label=conversation.participant,
            record_id=record.id,
            item_id=entry.item.item_id,
            timestamp_ms=entry.item.timestamp_millis,
        )

    async def _dispatch_all(self, outbound: List[OutboundItem], report: CycleReport) -> List[int]:
        """Dispatch items; returns timestamps that must hold the watermark."""
        holds: List[int] = []
        semaphore = asyncio.Semaphore(self.max_workers)

        async def dispatch(item: OutboundItem) -> None:
            async with semaphore:
                if self._shutdown.is_set():
                    # Left for the next run; the pair ledger prevents a double send
                    self._release(item, holds)
                    report.deferred += 1
                    return

                outcome = await self.dispatcher.dispatch(item)

            if outcome.state == DispatchState.SENT:
                if outcome.duplicate:
                    report.duplicates += 1
                else:
                    report.sent += 1
            elif outcome.state == DispatchState.FAILED_FATAL:
                report.failed_fatal += 1
            else:
                self._release(item, holds)
                report.deferred += 1

        await asyncio.gather(*(dispatch(item) for item in outbound))
        return holds

    def _release(self, item: OutboundItem, holds: List[int]) -> None:
        if item.item_id:
            self.tracker.forget(item.item_id)
        if item.timestamp_ms:
            holds.append(item.timestamp_ms)

    async def _reply(self, conversation: Conversation, text: str, report: CycleReport) -> None:
        try:
            sent = await self.replies.send_reply(conversation.conversation_id, text)
        except Exception as e:
            logger.exception(f"Failed to reply to {conversation.participant}: {e}")
            return
        if sent:
            report.replies_sent += 1
