"""
Event Dispatcher — At-least-once delivery of durable-log events to handlers.

Each batch:
  1. Fetch up to batch_size unprocessed events, oldest first
  2. Claim each one (conditional UPDATE: unprocessed and unclaimed, or the
     previous claim's lease has run out); a lost claim is skipped
  3. Route by event_type:
       no handler            → processed, nothing else (not an error)
       handler returns       → processed
       NonRetryableError     → dead letter now, processed
       any other exception   → retry_count + 1; at max_retries dead letter
                               and processed, otherwise release for the
                               next poll (the poll interval is the backoff)

Handlers may run more than once for the same event and must be idempotent.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from database.store_base import BaseStore
from job_queue.errors import NonRetryableError
from job_queue.registry import HandlerRegistry
from models.schemas import DeadLetterEvent, Event, EventMetadata, utcnow

logger = structlog.get_logger()


class EventDispatcher:
    """Polls the event log and routes each event to its registered handler."""

    def __init__(
        self,
        store: BaseStore,
        registry: HandlerRegistry,
        max_retries: int = 5,
        batch_size: int = 20,
        worker_id: str = "event-dispatcher",
        claim_lease_s: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.worker_id = worker_id
        self.claim_lease_s = claim_lease_s
        self._clock = clock

        self.started_at = clock()
        self.last_processed_at: Optional[datetime] = None
        self._counters = {
            "total_processed": 0,
            "success_count": 0,
            "error_count": 0,
            "dead_letter_count": 0,
            "unroutable_count": 0,
        }

    # ── Batch dispatch ────────────────────────────────────────

    async def dispatch_batch(self) -> dict[str, int]:
        """
        Single poll cycle. Returns counts:
        {"fetched", "succeeded", "retrying", "dead_lettered", "unroutable", "skipped", "errors"}
        """
        stats = {"fetched": 0, "succeeded": 0, "retrying": 0, "dead_lettered": 0,
                 "unroutable": 0, "skipped": 0, "errors": 0}

        candidates = await self.store.list_unprocessed_events(self.batch_size)
        stats["fetched"] = len(candidates)

        for candidate in candidates:
            try:
                event = await self.store.claim_event(
                    candidate.id, self.worker_id, self._clock(), self.claim_lease_s,
                )
                if event is None:
                    stats["skipped"] += 1
                    continue
                outcome = await self._route(event)
                stats[outcome] += 1
            except Exception as e:
                # A store failure on one event must not stop the batch
                stats["errors"] += 1
                logger.error("event_dispatch_error",
                             event_id=candidate.id,
                             event_type=candidate.event_type,
                             error=str(e),
                             exc_info=True)

        if stats["fetched"]:
            logger.info("event_batch_dispatched", worker_id=self.worker_id, **stats)
        return stats

    async def process_event_by_id(self, event_id: str) -> dict[str, Any]:
        """Process one named event now, outside the poll schedule."""
        event = await self.store.get_event(event_id)
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        if event.processed:
            raise ValueError(f"Event {event_id} already processed")

        claimed = await self.store.claim_event(
            event_id, self.worker_id, self._clock(), self.claim_lease_s,
        )
        if claimed is None:
            raise ValueError(f"Event {event_id} is claimed by another worker")

        outcome = await self._route(claimed)
        return {"event_id": event_id, "event_type": claimed.event_type, "outcome": outcome}

    # ── Routing ───────────────────────────────────────────────

    async def _route(self, event: Event) -> str:
        handler = self.registry.get(event.event_type)
        if handler is None:
            logger.info("event_unroutable", event_id=event.id, event_type=event.event_type)
            await self._mark_processed(event, event.metadata)
            self._counters["unroutable_count"] += 1
            return "unroutable"

        try:
            await handler(event)
        except NonRetryableError as e:
            self._counters["error_count"] += 1
            logger.warning("event_handler_rejected",
                           event_id=event.id,
                           event_type=event.event_type,
                           error=str(e))
            await self._dead_letter(event, str(e), event.metadata.retry_count + 1)
            return "dead_lettered"
        except Exception as e:
            self._counters["error_count"] += 1
            return await self._handle_failure(event, e)

        await self._mark_processed(event, event.metadata)
        self._counters["success_count"] += 1
        logger.info("event_processed", event_id=event.id, event_type=event.event_type)
        return "succeeded"

    async def _handle_failure(self, event: Event, exc: Exception) -> str:
        new_count = event.metadata.retry_count + 1

        if new_count >= self.max_retries:
            await self._dead_letter(event, str(exc), new_count)
            return "dead_lettered"

        metadata = event.metadata.model_copy(update={
            "retry_count": new_count,
            "last_error": str(exc),
            "last_error_at": self._clock(),
        })
        await self.store.release_event(event.id, self.worker_id, metadata)
        self._touch()
        logger.warning("event_handler_failed",
                       event_id=event.id,
                       event_type=event.event_type,
                       retry_count=new_count,
                       max_retries=self.max_retries,
                       error=str(exc))
        return "retrying"

    async def _dead_letter(self, event: Event, error: str, retry_count: int) -> None:
        await self.store.add_dead_letter(DeadLetterEvent(
            event_id=event.id,
            event_type=event.event_type,
            payload=event.payload,
            error_message=error,
            retry_count=retry_count,
            original_created_at=event.created_at,
        ))
        metadata = event.metadata.model_copy(update={
            "retry_count": retry_count,
            "last_error": error,
            "last_error_at": self._clock(),
        })
        await self._mark_processed(event, metadata)
        self._counters["dead_letter_count"] += 1
        logger.error("event_dead_lettered",
                     event_id=event.id,
                     event_type=event.event_type,
                     retry_count=retry_count,
                     error=error)

    async def _mark_processed(self, event: Event, metadata: EventMetadata) -> None:
        now = self._clock()
        final = metadata.model_copy(update={"processed_at": now, "processed_by": self.worker_id})
        await self.store.mark_event_processed(event.id, final)
        self._touch()

    def _touch(self) -> None:
        self._counters["total_processed"] += 1
        self.last_processed_at = self._clock()

    # ── Dead-letter replay ────────────────────────────────────

    async def replay_dead_letter(self, dead_letter_id: str) -> Event:
        """Append a fresh copy of a dead-lettered event. The dead letter stays as is."""
        dead_letter = await self.store.get_dead_letter(dead_letter_id)
        if dead_letter is None:
            raise LookupError(f"Dead letter {dead_letter_id} not found")

        original = await self.store.get_event(dead_letter.event_id)
        replay = Event(
            event_type=dead_letter.event_type,
            aggregate_id=original.aggregate_id if original else "",
            aggregate_type=original.aggregate_type if original else "",
            payload=dead_letter.payload,
            metadata=EventMetadata(replayed_from=dead_letter.event_id),
            created_by="dead_letter_replay",
        )
        await self.store.append_event(replay)
        logger.info("dead_letter_replayed",
                    dead_letter_id=dead_letter_id,
                    original_event_id=dead_letter.event_id,
                    replay_event_id=replay.id)
        return replay

    # ── Introspection ─────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        return {
            **self._counters,
            "started_at": self.started_at.isoformat(),
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "worker_id": self.worker_id,
            "max_retries": self.max_retries,
            "batch_size": self.batch_size,
            "registered_event_types": self.registry.types(),
        }
