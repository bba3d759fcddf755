"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Atomic per call: no await between the status check and the write,
    so compare-and-swap holds within one event loop
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import (
    ActionLogEntry, CreditEvent, DeadLetterEvent, Event, EventMetadata,
    PriorityEntry, Task, TaskStatus, WorkflowEntity, WorkflowKind,
    SUBJECT_HOLDING_STATUSES, TASK_PRIORITY_RANK, utcnow,
)

logger = structlog.get_logger()


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Hands out copies so callers never mutate stored state directly.
    """

    def __init__(self):
        self._events: dict[str, Event] = {}                     # id → event (insertion ordered)
        self._dead_letters: dict[str, DeadLetterEvent] = {}     # id → dead letter
        self._tasks: dict[str, Task] = {}
        self._actions: list[ActionLogEntry] = []
        self._workflows: dict[tuple[str, str], WorkflowEntity] = {}   # (kind, id) → entity
        self._holds: dict[str, tuple[str, str]] = {}            # subject_id → (kind, id)
        self._priorities: dict[tuple[str, str, str], PriorityEntry] = {}
        self._credits: dict[str, CreditEvent] = {}              # idempotency_key → credit

        # Indexes
        self._dead_letter_by_event: dict[str, str] = {}         # event_id → dead letter id
        logger.info("inmemory_store_initialized")

    # ── Events ────────────────────────────────────────────

    async def append_event(self, event: Event) -> Event:
        self._events[event.id] = event.model_copy(deep=True)
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self._events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def list_unprocessed_events(self, limit: int = 20) -> list[Event]:
        pending = [e for e in self._events.values() if not e.processed]
        pending.sort(key=lambda e: e.created_at)     # stable: ties keep append order
        return [e.model_copy(deep=True) for e in pending[:limit]]

    async def claim_event(self, event_id: str, worker_id: str, now: datetime,
                          lease_s: int) -> Optional[Event]:
        event = self._events.get(event_id)
        if event is None or event.processed:
            return None
        if event.claimed_by and event.claimed_at and event.claimed_at >= now - timedelta(seconds=lease_s):
            return None
        event.claimed_by = worker_id
        event.claimed_at = now
        return event.model_copy(deep=True)

    async def release_event(self, event_id: str, worker_id: str, metadata: EventMetadata) -> bool:
        event = self._events.get(event_id)
        if event is None or event.processed or event.claimed_by != worker_id:
            return False
        event.metadata = metadata.model_copy(deep=True)
        event.claimed_by = None
        event.claimed_at = None
        return True

    async def mark_event_processed(self, event_id: str, metadata: EventMetadata) -> bool:
        event = self._events.get(event_id)
        if event is None or event.processed:
            return False
        event.metadata = metadata.model_copy(deep=True)
        event.processed = True
        event.claimed_by = None
        event.claimed_at = None
        return True

    # ── Dead letters ──────────────────────────────────────

    async def add_dead_letter(self, dead_letter: DeadLetterEvent) -> DeadLetterEvent:
        existing_id = self._dead_letter_by_event.get(dead_letter.event_id)
        if existing_id:
            return self._dead_letters[existing_id].model_copy(deep=True)
        self._dead_letters[dead_letter.id] = dead_letter.model_copy(deep=True)
        self._dead_letter_by_event[dead_letter.event_id] = dead_letter.id
        return dead_letter

    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetterEvent]:
        dl = self._dead_letters.get(dead_letter_id)
        return dl.model_copy(deep=True) if dl else None

    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEvent]:
        letters = sorted(self._dead_letters.values(), key=lambda d: d.created_at, reverse=True)
        return [d.model_copy(deep=True) for d in letters[:limit]]

    # ── Tasks ─────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(self, status: str = None, user_id: str = None,
                         task_type: str = None, limit: int = 100) -> list[Task]:
        tasks = [
            t for t in self._tasks.values()
            if (status is None or t.status == status)
            and (user_id is None or t.user_id == user_id)
            and (task_type is None or t.task_type == task_type)
        ]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks[:limit]]

    async def list_due_tasks(self, now: datetime, limit: int = 10) -> list[Task]:
        due = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and t.scheduled_for <= now
        ]
        due.sort(key=lambda t: (TASK_PRIORITY_RANK.get(t.priority, 99), t.scheduled_for))
        return [t.model_copy(deep=True) for t in due[:limit]]

    async def claim_task(self, task_id: str, now: datetime) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return None
        task.status = TaskStatus.PROCESSING.value
        task.last_attempted_at = now
        return task.model_copy(deep=True)

    def _owned_processing(self, task_id: str, stale_before: datetime = None) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PROCESSING:
            return None
        if stale_before is not None and (task.last_attempted_at is None
                                         or task.last_attempted_at >= stale_before):
            return None
        return task

    async def finish_task(self, task_id: str, status: str, *, completed_at: datetime,
                          result_json: dict[str, Any] = None, error_log: str = None,
                          stale_before: datetime = None) -> bool:
        task = self._owned_processing(task_id, stale_before)
        if task is None:
            return False
        task.status = status
        task.completed_at = completed_at
        task.result_json = result_json
        if error_log is not None:
            task.error_log = error_log
        return True

    async def reschedule_task(self, task_id: str, *, retry_count: int, scheduled_for: datetime,
                              error_log: str = None, stale_before: datetime = None) -> bool:
        task = self._owned_processing(task_id, stale_before)
        if task is None:
            return False
        task.status = TaskStatus.PENDING.value
        task.retry_count = retry_count
        task.scheduled_for = scheduled_for
        if error_log is not None:
            task.error_log = error_log
        return True

    async def cancel_pending_tasks(self, user_id: str, task_type: str,
                                   context_id: str = None) -> int:
        cancelled = 0
        for task in self._tasks.values():
            if (task.status == TaskStatus.PENDING and task.user_id == user_id
                    and task.task_type == task_type
                    and (context_id is None or task.context_id == context_id)):
                task.status = TaskStatus.CANCELLED.value
                cancelled += 1
        return cancelled

    async def list_stale_tasks(self, cutoff: datetime, limit: int = 100) -> list[Task]:
        stale = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PROCESSING
            and t.last_attempted_at is not None and t.last_attempted_at < cutoff
        ]
        stale.sort(key=lambda t: t.last_attempted_at)
        return [t.model_copy(deep=True) for t in stale[:limit]]

    # ── Audit log ─────────────────────────────────────────

    async def log_action(self, entry: ActionLogEntry) -> None:
        self._actions.append(entry.model_copy(deep=True))

    async def list_actions(self, context_id: str = None, limit: int = 100) -> list[ActionLogEntry]:
        actions = [a for a in self._actions if context_id is None or a.context_id == context_id]
        return [a.model_copy(deep=True) for a in actions[-limit:]]

    # ── Workflow entities ─────────────────────────────────

    async def create_workflow(self, entity: WorkflowEntity) -> WorkflowEntity:
        self._workflows[(entity.kind.value, entity.id)] = entity.model_copy(deep=True)
        return entity

    async def get_workflow(self, kind: WorkflowKind, entity_id: str) -> Optional[WorkflowEntity]:
        entity = self._workflows.get((WorkflowKind(kind).value, entity_id))
        return entity.model_copy(deep=True) if entity else None

    async def list_workflows_for_subject(self, subject_id: str,
                                         statuses: list[str] = None) -> list[WorkflowEntity]:
        return [
            e.model_copy(deep=True) for e in self._workflows.values()
            if e.subject_id == subject_id and (statuses is None or e.status in statuses)
        ]

    async def transition_workflow(self, kind: WorkflowKind, entity_id: str,
                                  from_statuses: list[str], to_status: str) -> bool:
        entity = self._workflows.get((WorkflowKind(kind).value, entity_id))
        if entity is None or entity.status not in from_statuses:
            return False
        entity.status = to_status
        entity.updated_at = utcnow()
        return True

    async def take_subject(self, kind: WorkflowKind, entity_id: str, subject_id: str,
                           from_statuses: list[str], to_status: str) -> str:
        kind = WorkflowKind(kind)
        holder = self._holds.get(subject_id)
        if holder is not None and holder[1] != entity_id:
            current = self._workflows.get(holder)
            if current is not None and current.status in SUBJECT_HOLDING_STATUSES:
                return "held"
        entity = self._workflows.get((kind.value, entity_id))
        if entity is None or entity.status not in from_statuses:
            return "moved"
        self._holds[subject_id] = (kind.value, entity_id)
        entity.status = to_status
        entity.updated_at = utcnow()
        return "taken"

    async def release_subject(self, subject_id: str, entity_id: str) -> bool:
        holder = self._holds.get(subject_id)
        if holder is None or holder[1] != entity_id:
            return False
        del self._holds[subject_id]
        return True

    async def get_subject_holder(self, subject_id: str) -> Optional[str]:
        holder = self._holds.get(subject_id)
        return holder[1] if holder else None

    # ── Priority projection ───────────────────────────────

    async def upsert_priority(self, entry: PriorityEntry) -> PriorityEntry:
        key = (entry.user_id, entry.item_type, entry.item_id)
        existing = self._priorities.get(key)
        stored = entry.model_copy(deep=True)
        if existing:
            stored.id = existing.id
            stored.created_at = existing.created_at
        stored.updated_at = utcnow()
        self._priorities[key] = stored
        return stored.model_copy(deep=True)

    async def get_priority(self, user_id: str, item_type: str, item_id: str) -> Optional[PriorityEntry]:
        entry = self._priorities.get((user_id, item_type, item_id))
        return entry.model_copy(deep=True) if entry else None

    async def set_priority_status(self, user_id: str, item_type: str, item_id: str,
                                  status: str, only_from: list[str] = None) -> bool:
        entry = self._priorities.get((user_id, item_type, item_id))
        if entry is None or (only_from is not None and entry.status not in only_from):
            return False
        entry.status = status
        entry.updated_at = utcnow()
        return True

    async def list_priorities(self, user_id: str, status: str = "active",
                              limit: int = 50) -> list[PriorityEntry]:
        entries = [
            p for p in self._priorities.values()
            if p.user_id == user_id and (status is None or p.status == status)
        ]
        entries.sort(key=lambda p: (-p.value_score, p.created_at))
        return [p.model_copy(deep=True) for p in entries[:limit]]

    async def expire_priorities(self, now: datetime) -> int:
        expired = 0
        for entry in self._priorities.values():
            if entry.status == "active" and entry.expires_at is not None and entry.expires_at < now:
                entry.status = "expired"
                entry.updated_at = now
                expired += 1
        return expired

    # ── Credits ───────────────────────────────────────────

    async def award_credits(self, credit: CreditEvent) -> bool:
        if credit.idempotency_key in self._credits:
            return False
        self._credits[credit.idempotency_key] = credit.model_copy(deep=True)
        return True

    async def list_credit_events(self, user_id: str) -> list[CreditEvent]:
        return [c.model_copy(deep=True) for c in self._credits.values() if c.user_id == user_id]

    async def get_credit_balance(self, user_id: str) -> int:
        return sum(c.amount for c in self._credits.values() if c.user_id == user_id)

    # ── Introspection ─────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        tasks_by_status: dict[str, int] = {}
        for t in self._tasks.values():
            tasks_by_status[t.status] = tasks_by_status.get(t.status, 0) + 1
        return {
            "events": len(self._events),
            "events_unprocessed": sum(1 for e in self._events.values() if not e.processed),
            "dead_letters": len(self._dead_letters),
            "tasks": tasks_by_status,
            "actions": len(self._actions),
            "workflows": len(self._workflows),
            "subject_holds": len(self._holds),
            "priorities_active": sum(1 for p in self._priorities.values() if p.status == "active"),
            "credit_events": len(self._credits),
        }
