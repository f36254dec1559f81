"""
Async queue between the webhook endpoint and the reward pipeline.

The endpoint only normalizes and enqueues, so the provider gets its response
immediately. Every accepted event is first written to ``pending_events`` and
deleted once ingested, and ``start`` requeues whatever a previous process
left there. A fixed pool of workers runs each event through the
WebhookIngestor. Transient failures (provider outages, lost database
connections) are retried with capped exponential backoff for as long as they
last. Any other error parks the event in the table until the next start.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from tipflow.core.config import settings
from tipflow.core.database import get_async_session, insert_ignoring_conflicts
from tipflow.core.exceptions import TransientExternalError
from tipflow.models.pending_event import PendingEvent
from tipflow.services.types import EngagementEvent, IngestResult
from tipflow.services.webhook_ingestor import WebhookIngestor, get_webhook_ingestor


logger = structlog.get_logger(__name__)

RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 300.0

RETRYABLE_ERRORS = (TransientExternalError, OperationalError, InterfaceError, OSError)


class ProcessingStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARKED = "parked"


@dataclass
class QueuedEvent:
    """An engagement event waiting for a worker."""
    event: EngagementEvent
    queued_at: datetime = field(default_factory=datetime.utcnow)
    attempts: int = 0
    status: ProcessingStatus = ProcessingStatus.QUEUED


class EventProcessor:
    """Worker pool draining the engagement queue."""

    def __init__(
        self,
        ingestor: Optional[WebhookIngestor] = None,
        workers: Optional[int] = None,
        retry_backoff: float = RETRY_BACKOFF_BASE_SECONDS,
        retry_backoff_max: float = RETRY_BACKOFF_MAX_SECONDS
    ):
        self.logger = logger.bind(service="event_processor")
        self._ingestor = ingestor
        self.worker_count = workers or settings.event_processor_workers
        self.retry_backoff = retry_backoff
        self.retry_backoff_max = retry_backoff_max

        self.queue: asyncio.Queue[QueuedEvent] = asyncio.Queue()
        self.active_events: Dict[str, QueuedEvent] = {}

        self._running = False
        self._should_stop = False
        self._worker_tasks: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()

        self.stats: Dict[str, Any] = {
            "total_queued": 0,
            "total_recovered": 0,
            "total_recorded": 0,
            "total_skipped": 0,
            "total_retried": 0,
            "total_parked": 0,
            "start_time": None,
            "last_processed": None,
        }

    @property
    def ingestor(self) -> WebhookIngestor:
        if self._ingestor is None:
            self._ingestor = get_webhook_ingestor()
        return self._ingestor

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            self.logger.warning("EventProcessor already running")
            return

        await self.recover()

        self._running = True
        self._should_stop = False
        self.stats["start_time"] = datetime.utcnow()
        self._worker_tasks = [
            asyncio.create_task(self._worker_loop(worker_id))
            for worker_id in range(self.worker_count)
        ]
        self.logger.info("✅ EventProcessor started", workers=self.worker_count)

    async def stop(self) -> None:
        if not self._running:
            return

        self.logger.info("Stopping EventProcessor", queue_size=self.queue.qsize())
        self._should_stop = True
        self._running = False

        tasks = self._worker_tasks + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker_tasks = []
        self._retry_tasks.clear()

        self.logger.info("EventProcessor stopped")

    async def submit(self, event: EngagementEvent) -> bool:
        """
        Store and queue an event; an event id already queued or in progress
        is accepted as-is. Raises if the event cannot be stored, so the
        webhook is not acknowledged.
        """
        if event.provider_event_id in self.active_events:
            self.logger.info("Event already queued", event_id=event.provider_event_id)
            return True

        async with get_async_session() as db:
            await db.execute(
                insert_ignoring_conflicts(db, PendingEvent).values(
                    provider_event_id=event.provider_event_id,
                    payload=event.to_payload(),
                    attempts=0,
                )
            )

        await self._enqueue(QueuedEvent(event=event))
        self.stats["total_queued"] += 1

        self.logger.info(
            "📥 Engagement queued",
            event_id=event.provider_event_id,
            action=event.action.value,
            queue_size=self.queue.qsize()
        )
        return True

    async def recover(self) -> int:
        """Queue every stored event that is not already queued here."""
        async with get_async_session() as db:
            result = await db.execute(select(PendingEvent).order_by(PendingEvent.created_at))
            stored = [(row.provider_event_id, row.payload, row.attempts) for row in result.scalars()]

        recovered = 0
        for event_id, payload, attempts in stored:
            if event_id in self.active_events:
                continue
            try:
                event = EngagementEvent.from_payload(payload)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.error("Stored event is unreadable, left in place", event_id=event_id, error=str(e))
                continue
            await self._enqueue(QueuedEvent(event=event, attempts=attempts))
            recovered += 1

        if recovered:
            self.stats["total_recovered"] += recovered
            self.logger.info("♻️ Recovered stored engagement events", count=recovered)
        return recovered

    async def join(self) -> None:
        """Wait until every queued event, retries included, has been handled."""
        while True:
            await self.queue.join()
            if not self._retry_tasks:
                return
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)

    async def _enqueue(self, item: QueuedEvent) -> None:
        self.active_events[item.event.provider_event_id] = item
        await self.queue.put(item)

    async def _worker_loop(self, worker_id: int) -> None:
        self.logger.debug("Worker started", worker_id=worker_id)

        while self._running and not self._should_stop:
            try:
                try:
                    item = await asyncio.wait_for(self.queue.get(), timeout=5.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self._process(item)
                finally:
                    self.queue.task_done()

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in worker loop", worker_id=worker_id, error=str(e))
                await asyncio.sleep(1)

        self.logger.debug("Worker stopped", worker_id=worker_id)

    async def _process(self, item: QueuedEvent) -> Optional[IngestResult]:
        event = item.event
        item.status = ProcessingStatus.PROCESSING
        item.attempts += 1

        try:
            result = await self.ingestor.process(event)
        except RETRYABLE_ERRORS as e:
            await self._note_attempt(item, e)
            self._schedule_retry(item, e)
            return None
        except Exception as e:
            await self._note_attempt(item, e)
            self._park(item, e)
            return None

        item.status = ProcessingStatus.COMPLETED
        self.active_events.pop(event.provider_event_id, None)
        await self._forget(event.provider_event_id)
        self.stats["last_processed"] = datetime.utcnow()
        if result.processed:
            self.stats["total_recorded"] += 1
            self.logger.info(
                "🎯 Reward recorded" if result.created else "Reward already recorded",
                event_id=event.provider_event_id,
                entry_id=result.entry_id
            )
        else:
            self.stats["total_skipped"] += 1
        return result

    def _retry_delay(self, attempts: int) -> float:
        return min(self.retry_backoff * 2 ** (attempts - 1), self.retry_backoff_max)

    def _schedule_retry(self, item: QueuedEvent, error: Exception) -> None:
        delay = self._retry_delay(item.attempts)
        item.status = ProcessingStatus.QUEUED
        self.stats["total_retried"] += 1
        self.logger.warning(
            "Transient failure, event requeued",
            event_id=item.event.provider_event_id,
            attempt=item.attempts,
            retry_in=delay,
            error=str(error),
            error_type=type(error).__name__
        )

        async def _requeue():
            await asyncio.sleep(delay)
            await self.queue.put(item)

        task = asyncio.create_task(_requeue())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    def _park(self, item: QueuedEvent, error: Exception) -> None:
        item.status = ProcessingStatus.PARKED
        self.active_events.pop(item.event.provider_event_id, None)
        self.stats["total_parked"] += 1
        self.logger.error(
            "💥 Failed to process engagement, kept for the next start",
            event_id=item.event.provider_event_id,
            attempts=item.attempts,
            error=str(error),
            error_type=type(error).__name__
        )

    async def _note_attempt(self, item: QueuedEvent, error: Exception) -> None:
        try:
            async with get_async_session() as db:
                await db.execute(
                    update(PendingEvent)
                    .where(PendingEvent.provider_event_id == item.event.provider_event_id)
                    .values(attempts=item.attempts, last_error=str(error)[:1000])
                )
        except SQLAlchemyError as e:
            self.logger.warning(
                "Could not record attempt on stored event",
                event_id=item.event.provider_event_id,
                error=str(e)
            )

    async def _forget(self, event_id: str) -> None:
        # A leftover row is replayed on the next start; the ledger ignores repeats
        try:
            async with get_async_session() as db:
                await db.execute(delete(PendingEvent).where(PendingEvent.provider_event_id == event_id))
        except SQLAlchemyError as e:
            self.logger.warning("Could not delete stored event", event_id=event_id, error=str(e))

    async def pending_count(self) -> int:
        async with get_async_session() as db:
            return await db.scalar(select(func.count()).select_from(PendingEvent))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "queue_size": self.queue.qsize(),
            "active_events": len(self.active_events),
            "workers": self.worker_count,
            "is_running": self._running,
        }


_event_processor: Optional[EventProcessor] = None


async def get_event_processor() -> EventProcessor:
    """Get or create the global event processor, started."""
    global _event_processor
    if _event_processor is None:
        _event_processor = EventProcessor()
        await _event_processor.start()
    return _event_processor


async def shutdown_event_processor() -> None:
    global _event_processor
    if _event_processor:
        await _event_processor.stop()
        _event_processor = None
