"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore       (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore  (dict-based, single-process, no persistence)

Every method that hands ownership of a row to a caller (claim_event,
claim_task, transition_workflow, the conditional task writes) is a
compare-and-swap on the row's status: it either applies completely and
reports success, or changes nothing.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    ActionLogEntry, CreditEvent, DeadLetterEvent, Event, EventMetadata,
    PriorityEntry, Task, WorkflowEntity, WorkflowKind,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Events ────────────────────────────────────────────────

    @abstractmethod
    async def append_event(self, event: Event) -> Event:
        ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        ...

    @abstractmethod
    async def list_unprocessed_events(self, limit: int = 20) -> list[Event]:
        """Oldest first."""
        ...

    @abstractmethod
    async def claim_event(self, event_id: str, worker_id: str, now: datetime,
                          lease_s: int) -> Optional[Event]:
        """Take an unprocessed event whose claim is free or older than lease_s."""
        ...

    @abstractmethod
    async def release_event(self, event_id: str, worker_id: str, metadata: EventMetadata) -> bool:
        """Persist retry bookkeeping and drop the claim, leaving the event unprocessed."""
        ...

    @abstractmethod
    async def mark_event_processed(self, event_id: str, metadata: EventMetadata) -> bool:
        ...

    # ── Dead letters ──────────────────────────────────────────

    @abstractmethod
    async def add_dead_letter(self, dead_letter: DeadLetterEvent) -> DeadLetterEvent:
        """Insert once per event_id; a second call returns the existing record."""
        ...

    @abstractmethod
    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetterEvent]:
        ...

    @abstractmethod
    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEvent]:
        ...

    # ── Tasks ─────────────────────────────────────────────────

    @abstractmethod
    async def create_task(self, task: Task) -> Task:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def list_tasks(self, status: str = None, user_id: str = None,
                         task_type: str = None, limit: int = 100) -> list[Task]:
        ...

    @abstractmethod
    async def list_due_tasks(self, now: datetime, limit: int = 10) -> list[Task]:
        """Pending tasks due by now, ordered by priority rank then scheduled_for."""
        ...

    @abstractmethod
    async def claim_task(self, task_id: str, now: datetime) -> Optional[Task]:
        """pending → processing. Returns the claimed task, or None if another worker won."""
        ...

    @abstractmethod
    async def finish_task(self, task_id: str, status: str, *, completed_at: datetime,
                          result_json: dict[str, Any] = None, error_log: str = None,
                          stale_before: datetime = None) -> bool:
        """processing → completed | failed."""
        ...

    @abstractmethod
    async def reschedule_task(self, task_id: str, *, retry_count: int, scheduled_for: datetime,
                              error_log: str = None, stale_before: datetime = None) -> bool:
        """processing → pending with a new due time."""
        ...

    @abstractmethod
    async def cancel_pending_tasks(self, user_id: str, task_type: str,
                                   context_id: str = None) -> int:
        ...

    @abstractmethod
    async def list_stale_tasks(self, cutoff: datetime, limit: int = 100) -> list[Task]:
        """Tasks still processing whose last attempt started before cutoff."""
        ...

    # ── Audit log ─────────────────────────────────────────────

    @abstractmethod
    async def log_action(self, entry: ActionLogEntry) -> None:
        ...

    @abstractmethod
    async def list_actions(self, context_id: str = None, limit: int = 100) -> list[ActionLogEntry]:
        ...

    # ── Workflow entities ─────────────────────────────────────

    @abstractmethod
    async def create_workflow(self, entity: WorkflowEntity) -> WorkflowEntity:
        ...

    @abstractmethod
    async def get_workflow(self, kind: WorkflowKind, entity_id: str) -> Optional[WorkflowEntity]:
        ...

    @abstractmethod
    async def list_workflows_for_subject(self, subject_id: str,
                                         statuses: list[str] = None) -> list[WorkflowEntity]:
        """All variants referencing subject_id, optionally filtered by status."""
        ...

    @abstractmethod
    async def transition_workflow(self, kind: WorkflowKind, entity_id: str,
                                  from_statuses: list[str], to_status: str) -> bool:
        ...

    @abstractmethod
    async def take_subject(self, kind: WorkflowKind, entity_id: str, subject_id: str,
                           from_statuses: list[str], to_status: str) -> str:
        """
        Claim subject_id for the entity and transition it, as one write.
        Returns:
          "taken"  the hold is this entity's and the status moved to to_status
          "held"   a sibling in a holding status owns the subject; nothing changed
          "moved"  the entity is not in from_statuses; nothing changed
        A hold left behind by a sibling that no longer holds is taken over.
        """
        ...

    @abstractmethod
    async def release_subject(self, subject_id: str, entity_id: str) -> bool:
        """Drop the hold on subject_id, only if entity_id owns it."""
        ...

    @abstractmethod
    async def get_subject_holder(self, subject_id: str) -> Optional[str]:
        ...

    # ── Priority projection ───────────────────────────────────

    @abstractmethod
    async def upsert_priority(self, entry: PriorityEntry) -> PriorityEntry:
        """Insert, or overwrite the row for (user_id, item_type, item_id)."""
        ...

    @abstractmethod
    async def get_priority(self, user_id: str, item_type: str, item_id: str) -> Optional[PriorityEntry]:
        ...

    @abstractmethod
    async def set_priority_status(self, user_id: str, item_type: str, item_id: str,
                                  status: str, only_from: list[str] = None) -> bool:
        ...

    @abstractmethod
    async def list_priorities(self, user_id: str, status: str = "active",
                              limit: int = 50) -> list[PriorityEntry]:
        """Highest value_score first."""
        ...

    @abstractmethod
    async def expire_priorities(self, now: datetime) -> int:
        ...

    # ── Credits ───────────────────────────────────────────────

    @abstractmethod
    async def award_credits(self, credit: CreditEvent) -> bool:
        """False when the idempotency key was already used."""
        ...

    @abstractmethod
    async def list_credit_events(self, user_id: str) -> list[CreditEvent]:
        ...

    @abstractmethod
    async def get_credit_balance(self, user_id: str) -> int:
        ...

    # ── Introspection ─────────────────────────────────────────

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...
