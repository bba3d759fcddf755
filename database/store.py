"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - CASE expression for task priority ordering (no PG array_position)
  - Ownership changes are single conditional UPDATEs checked by rowcount,
    which every supported dialect reports, instead of UPDATE ... RETURNING
  - Unique constraints (credit idempotency key, priority key, dead letter
    per event) back the idempotent writes
  - The subject_holds primary key serialises accepts of sibling entities;
    the hold insert and the status UPDATE commit together
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, and_, or_, case, func
from sqlalchemy.exc import IntegrityError

from database.models import (
    EventRow, DeadLetterRow, TaskRow, ActionLogRow,
    IntroOpportunityRow, ConnectionRequestRow, IntroOfferRow, SubjectHoldRow,
    PriorityRow, CreditEventRow,
)
from database.session import get_session
from database.store_base import BaseStore
from models.schemas import (
    ActionLogEntry, CreditEvent, DeadLetterEvent, Event, EventMetadata,
    PriorityEntry, Task, TaskStatus, WorkflowEntity, WorkflowKind,
    WORKFLOW_MODELS, SUBJECT_HOLDING_STATUSES, TASK_PRIORITY_RANK, utcnow,
)

logger = structlog.get_logger()

_WORKFLOW_ROWS = {
    WorkflowKind.OPPORTUNITY: IntroOpportunityRow,
    WorkflowKind.REQUEST: ConnectionRequestRow,
    WorkflowKind.OFFER: IntroOfferRow,
}

_WORKFLOW_USER_FIELDS = {
    WorkflowKind.OPPORTUNITY: ("connector_user_id",),
    WorkflowKind.REQUEST: ("requestor_user_id", "introducee_user_id"),
    WorkflowKind.OFFER: ("offering_user_id", "introducee_user_id"),
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Events ─────────────────────────────────────────────

    async def append_event(self, event: Event) -> Event:
        async with get_session() as db:
            db.add(EventRow(
                id=event.id,
                event_type=event.event_type,
                aggregate_id=event.aggregate_id,
                aggregate_type=event.aggregate_type,
                payload=event.payload,
                metadata_=event.metadata.model_dump(mode="json", exclude_none=True),
                processed=event.processed,
                created_at=event.created_at,
                created_by=event.created_by,
            ))
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with get_session() as db:
            row = await db.get(EventRow, event_id)
            return self._row_to_event(row) if row else None

    async def list_unprocessed_events(self, limit: int = 20) -> list[Event]:
        async with get_session() as db:
            stmt = (
                select(EventRow)
                .where(EventRow.processed.is_(False))
                .order_by(EventRow.created_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_event(r) for r in result.scalars().all()]

    async def claim_event(self, event_id: str, worker_id: str, now: datetime,
                          lease_s: int) -> Optional[Event]:
        lease_cutoff = now - timedelta(seconds=lease_s)
        async with get_session() as db:
            stmt = (
                update(EventRow)
                .where(
                    EventRow.id == event_id,
                    EventRow.processed.is_(False),
                    or_(EventRow.claimed_by.is_(None), EventRow.claimed_at < lease_cutoff),
                )
                .values(claimed_by=worker_id, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await db.get(EventRow, event_id, populate_existing=True)
            return self._row_to_event(row) if row else None

    async def release_event(self, event_id: str, worker_id: str, metadata: EventMetadata) -> bool:
        async with get_session() as db:
            stmt = (
                update(EventRow)
                .where(
                    EventRow.id == event_id,
                    EventRow.processed.is_(False),
                    EventRow.claimed_by == worker_id,
                )
                .values(
                    metadata_=metadata.model_dump(mode="json", exclude_none=True),
                    claimed_by=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def mark_event_processed(self, event_id: str, metadata: EventMetadata) -> bool:
        async with get_session() as db:
            stmt = (
                update(EventRow)
                .where(EventRow.id == event_id, EventRow.processed.is_(False))
                .values(
                    processed=True,
                    metadata_=metadata.model_dump(mode="json", exclude_none=True),
                    claimed_by=None,
                    claimed_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    # ── Dead letters ───────────────────────────────────────

    async def add_dead_letter(self, dead_letter: DeadLetterEvent) -> DeadLetterEvent:
        existing = await self._dead_letter_for_event(dead_letter.event_id)
        if existing:
            return existing
        try:
            async with get_session() as db:
                db.add(DeadLetterRow(
                    id=dead_letter.id,
                    event_id=dead_letter.event_id,
                    event_type=dead_letter.event_type,
                    payload=dead_letter.payload,
                    error_message=dead_letter.error_message,
                    retry_count=dead_letter.retry_count,
                    original_created_at=dead_letter.original_created_at,
                    created_at=dead_letter.created_at,
                ))
        except IntegrityError:
            logger.warning("dead_letter_already_exists", event_id=dead_letter.event_id)
            return await self._dead_letter_for_event(dead_letter.event_id)
        return dead_letter

    async def _dead_letter_for_event(self, event_id: str) -> Optional[DeadLetterEvent]:
        async with get_session() as db:
            stmt = select(DeadLetterRow).where(DeadLetterRow.event_id == event_id)
            row = (await db.execute(stmt)).scalars().first()
            return self._row_to_dead_letter(row) if row else None

    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetterEvent]:
        async with get_session() as db:
            row = await db.get(DeadLetterRow, dead_letter_id)
            return self._row_to_dead_letter(row) if row else None

    async def list_dead_letters(self, limit: int = 100) -> list[DeadLetterEvent]:
        async with get_session() as db:
            stmt = select(DeadLetterRow).order_by(DeadLetterRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_dead_letter(r) for r in result.scalars().all()]

    # ── Tasks ──────────────────────────────────────────────

    async def create_task(self, task: Task) -> Task:
        async with get_session() as db:
            db.add(TaskRow(
                id=task.id,
                task_type=task.task_type,
                agent_type=task.agent_type,
                user_id=task.user_id,
                context_id=task.context_id,
                context_type=task.context_type,
                scheduled_for=task.scheduled_for,
                priority=task.priority,
                status=task.status,
                retry_count=task.retry_count,
                max_retries=task.max_retries,
                context_json=task.context_json,
                result_json=task.result_json,
                error_log=task.error_log,
                last_attempted_at=task.last_attempted_at,
                created_at=task.created_at,
                completed_at=task.completed_at,
                created_by=task.created_by,
            ))
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with get_session() as db:
            row = await db.get(TaskRow, task_id)
            return self._row_to_task(row) if row else None

    async def list_tasks(self, status: str = None, user_id: str = None,
                         task_type: str = None, limit: int = 100) -> list[Task]:
        async with get_session() as db:
            stmt = select(TaskRow)
            if status:
                stmt = stmt.where(TaskRow.status == status)
            if user_id:
                stmt = stmt.where(TaskRow.user_id == user_id)
            if task_type:
                stmt = stmt.where(TaskRow.task_type == task_type)
            stmt = stmt.order_by(TaskRow.created_at).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_task(r) for r in result.scalars().all()]

    async def list_due_tasks(self, now: datetime, limit: int = 10) -> list[Task]:
        async with get_session() as db:
            priority_order = case(
                TASK_PRIORITY_RANK,
                value=TaskRow.priority,
                else_=99,
            )
            stmt = (
                select(TaskRow)
                .where(and_(
                    TaskRow.status == TaskStatus.PENDING.value,
                    TaskRow.scheduled_for <= now,
                ))
                .order_by(priority_order, TaskRow.scheduled_for)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_task(r) for r in result.scalars().all()]

    async def claim_task(self, task_id: str, now: datetime) -> Optional[Task]:
        async with get_session() as db:
            stmt = (
                update(TaskRow)
                .where(TaskRow.id == task_id, TaskRow.status == TaskStatus.PENDING.value)
                .values(status=TaskStatus.PROCESSING.value, last_attempted_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            row = await db.get(TaskRow, task_id, populate_existing=True)
            return self._row_to_task(row) if row else None

    @staticmethod
    def _processing_clause(task_id: str, stale_before: datetime = None):
        clause = and_(TaskRow.id == task_id, TaskRow.status == TaskStatus.PROCESSING.value)
        if stale_before is not None:
            clause = and_(clause, TaskRow.last_attempted_at < stale_before)
        return clause

    async def finish_task(self, task_id: str, status: str, *, completed_at: datetime,
                          result_json: dict[str, Any] = None, error_log: str = None,
                          stale_before: datetime = None) -> bool:
        values: dict[str, Any] = {
            "status": status,
            "completed_at": completed_at,
            "result_json": result_json,
        }
        if error_log is not None:
            values["error_log"] = error_log
        async with get_session() as db:
            stmt = (
                update(TaskRow)
                .where(self._processing_clause(task_id, stale_before))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def reschedule_task(self, task_id: str, *, retry_count: int, scheduled_for: datetime,
                              error_log: str = None, stale_before: datetime = None) -> bool:
        values: dict[str, Any] = {
            "status": TaskStatus.PENDING.value,
            "retry_count": retry_count,
            "scheduled_for": scheduled_for,
        }
        if error_log is not None:
            values["error_log"] = error_log
        async with get_session() as db:
            stmt = (
                update(TaskRow)
                .where(self._processing_clause(task_id, stale_before))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def cancel_pending_tasks(self, user_id: str, task_type: str,
                                   context_id: str = None) -> int:
        async with get_session() as db:
            stmt = update(TaskRow).where(
                TaskRow.status == TaskStatus.PENDING.value,
                TaskRow.user_id == user_id,
                TaskRow.task_type == task_type,
            )
            if context_id is not None:
                stmt = stmt.where(TaskRow.context_id == context_id)
            stmt = (
                stmt.values(status=TaskStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount

    async def list_stale_tasks(self, cutoff: datetime, limit: int = 100) -> list[Task]:
        async with get_session() as db:
            stmt = (
                select(TaskRow)
                .where(
                    TaskRow.status == TaskStatus.PROCESSING.value,
                    TaskRow.last_attempted_at < cutoff,
                )
                .order_by(TaskRow.last_attempted_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_task(r) for r in result.scalars().all()]

    # ── Audit log ──────────────────────────────────────────

    async def log_action(self, entry: ActionLogEntry) -> None:
        async with get_session() as db:
            db.add(ActionLogRow(
                id=entry.id,
                agent_type=entry.agent_type,
                action_type=entry.action_type,
                user_id=entry.user_id,
                context_id=entry.context_id,
                context_type=entry.context_type,
                latency_ms=entry.latency_ms,
                input_data=entry.input_data,
                output_data=entry.output_data,
                error=entry.error,
                created_at=entry.created_at,
            ))

    async def list_actions(self, context_id: str = None, limit: int = 100) -> list[ActionLogEntry]:
        async with get_session() as db:
            stmt = select(ActionLogRow)
            if context_id:
                stmt = stmt.where(ActionLogRow.context_id == context_id)
            stmt = stmt.order_by(ActionLogRow.created_at).limit(limit)
            result = await db.execute(stmt)
            return [
                ActionLogEntry(
                    id=r.id, agent_type=r.agent_type, action_type=r.action_type,
                    user_id=r.user_id, context_id=r.context_id, context_type=r.context_type,
                    latency_ms=r.latency_ms, input_data=r.input_data or {},
                    output_data=r.output_data, error=r.error,
                    created_at=_aware(r.created_at),
                )
                for r in result.scalars().all()
            ]

    # ── Workflow entities ──────────────────────────────────

    async def create_workflow(self, entity: WorkflowEntity) -> WorkflowEntity:
        row_cls = _WORKFLOW_ROWS[entity.kind]
        async with get_session() as db:
            db.add(row_cls(
                id=entity.id,
                subject_id=entity.subject_id,
                status=entity.status,
                bounty_credits=entity.bounty_credits,
                context=entity.context,
                created_at=entity.created_at,
                updated_at=entity.updated_at,
                **entity.user_fields(),
            ))
        return entity

    async def get_workflow(self, kind: WorkflowKind, entity_id: str) -> Optional[WorkflowEntity]:
        kind = WorkflowKind(kind)
        async with get_session() as db:
            row = await db.get(_WORKFLOW_ROWS[kind], entity_id)
            return self._row_to_workflow(kind, row) if row else None

    async def list_workflows_for_subject(self, subject_id: str,
                                         statuses: list[str] = None) -> list[WorkflowEntity]:
        entities: list[WorkflowEntity] = []
        async with get_session() as db:
            for kind, row_cls in _WORKFLOW_ROWS.items():
                stmt = select(row_cls).where(row_cls.subject_id == subject_id)
                if statuses is not None:
                    stmt = stmt.where(row_cls.status.in_(statuses))
                result = await db.execute(stmt)
                entities.extend(self._row_to_workflow(kind, r) for r in result.scalars().all())
        return entities

    async def transition_workflow(self, kind: WorkflowKind, entity_id: str,
                                  from_statuses: list[str], to_status: str) -> bool:
        row_cls = _WORKFLOW_ROWS[WorkflowKind(kind)]
        async with get_session() as db:
            stmt = (
                update(row_cls)
                .where(row_cls.id == entity_id, row_cls.status.in_(from_statuses))
                .values(status=to_status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def take_subject(self, kind: WorkflowKind, entity_id: str, subject_id: str,
                           from_statuses: list[str], to_status: str) -> str:
        kind = WorkflowKind(kind)
        row_cls = _WORKFLOW_ROWS[kind]
        try:
            async with get_session() as db:
                hold = await db.get(SubjectHoldRow, subject_id)
                if hold is None:
                    db.add(SubjectHoldRow(subject_id=subject_id, holder_kind=kind.value,
                                          holder_id=entity_id, created_at=utcnow()))
                    # Raises IntegrityError when another writer inserted first
                    await db.flush()
                elif hold.holder_id != entity_id:
                    if await self._holder_engaged(db, hold):
                        return "held"
                    takeover = (
                        update(SubjectHoldRow)
                        .where(SubjectHoldRow.subject_id == subject_id,
                               SubjectHoldRow.holder_id == hold.holder_id)
                        .values(holder_kind=kind.value, holder_id=entity_id, created_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if (await db.execute(takeover)).rowcount != 1:
                        await db.rollback()
                        return "moved"

                stmt = (
                    update(row_cls)
                    .where(row_cls.id == entity_id, row_cls.status.in_(from_statuses))
                    .values(status=to_status, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if (await db.execute(stmt)).rowcount != 1:
                    await db.rollback()
                    return "moved"
                return "taken"
        except IntegrityError:
            logger.info("subject_hold_insert_lost", subject_id=subject_id, entity_id=entity_id)
            return "moved"

    @staticmethod
    async def _holder_engaged(db, hold: SubjectHoldRow) -> bool:
        row = await db.get(_WORKFLOW_ROWS[WorkflowKind(hold.holder_kind)], hold.holder_id)
        return row is not None and row.status in SUBJECT_HOLDING_STATUSES

    async def release_subject(self, subject_id: str, entity_id: str) -> bool:
        async with get_session() as db:
            stmt = (
                delete(SubjectHoldRow)
                .where(SubjectHoldRow.subject_id == subject_id,
                       SubjectHoldRow.holder_id == entity_id)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def get_subject_holder(self, subject_id: str) -> Optional[str]:
        async with get_session() as db:
            hold = await db.get(SubjectHoldRow, subject_id)
            return hold.holder_id if hold else None

    # ── Priority projection ────────────────────────────────

    async def upsert_priority(self, entry: PriorityEntry) -> PriorityEntry:
        try:
            return await self._upsert_priority_once(entry)
        except IntegrityError:
            # Lost an insert race on the unique key; the row exists now.
            return await self._upsert_priority_once(entry)

    async def _upsert_priority_once(self, entry: PriorityEntry) -> PriorityEntry:
        async with get_session() as db:
            stmt = select(PriorityRow).where(
                PriorityRow.user_id == entry.user_id,
                PriorityRow.item_type == entry.item_type,
                PriorityRow.item_id == entry.item_id,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = PriorityRow(
                    id=entry.id,
                    user_id=entry.user_id,
                    item_type=entry.item_type,
                    item_id=entry.item_id,
                    created_at=entry.created_at,
                )
                db.add(row)
            row.value_score = entry.value_score
            row.status = entry.status
            row.priority_rank = entry.priority_rank
            row.content = entry.content
            row.expires_at = entry.expires_at
            row.updated_at = utcnow()
            await db.flush()
            return self._row_to_priority(row)

    async def get_priority(self, user_id: str, item_type: str, item_id: str) -> Optional[PriorityEntry]:
        async with get_session() as db:
            stmt = select(PriorityRow).where(
                PriorityRow.user_id == user_id,
                PriorityRow.item_type == item_type,
                PriorityRow.item_id == item_id,
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_priority(row) if row else None

    async def set_priority_status(self, user_id: str, item_type: str, item_id: str,
                                  status: str, only_from: list[str] = None) -> bool:
        async with get_session() as db:
            stmt = update(PriorityRow).where(
                PriorityRow.user_id == user_id,
                PriorityRow.item_type == item_type,
                PriorityRow.item_id == item_id,
            )
            if only_from is not None:
                stmt = stmt.where(PriorityRow.status.in_(only_from))
            stmt = (
                stmt.values(status=status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def list_priorities(self, user_id: str, status: str = "active",
                              limit: int = 50) -> list[PriorityEntry]:
        async with get_session() as db:
            stmt = select(PriorityRow).where(PriorityRow.user_id == user_id)
            if status is not None:
                stmt = stmt.where(PriorityRow.status == status)
            stmt = stmt.order_by(PriorityRow.value_score.desc(), PriorityRow.created_at).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_priority(r) for r in result.scalars().all()]

    async def expire_priorities(self, now: datetime) -> int:
        async with get_session() as db:
            stmt = (
                update(PriorityRow)
                .where(
                    PriorityRow.status == "active",
                    PriorityRow.expires_at.is_not(None),
                    PriorityRow.expires_at < now,
                )
                .values(status="expired", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount

    # ── Credits ────────────────────────────────────────────

    async def award_credits(self, credit: CreditEvent) -> bool:
        async with get_session() as db:
            stmt = select(CreditEventRow.id).where(
                CreditEventRow.idempotency_key == credit.idempotency_key
            )
            if (await db.execute(stmt)).first() is not None:
                return False
        try:
            async with get_session() as db:
                db.add(CreditEventRow(
                    id=credit.id,
                    user_id=credit.user_id,
                    event_type=credit.event_type,
                    amount=credit.amount,
                    reference_type=credit.reference_type,
                    reference_id=credit.reference_id,
                    idempotency_key=credit.idempotency_key,
                    description=credit.description,
                    created_at=credit.created_at,
                ))
        except IntegrityError:
            logger.info("credit_award_duplicate", idempotency_key=credit.idempotency_key)
            return False
        return True

    async def list_credit_events(self, user_id: str) -> list[CreditEvent]:
        async with get_session() as db:
            stmt = (
                select(CreditEventRow)
                .where(CreditEventRow.user_id == user_id)
                .order_by(CreditEventRow.created_at)
            )
            result = await db.execute(stmt)
            return [
                CreditEvent(
                    id=r.id, user_id=r.user_id, event_type=r.event_type, amount=r.amount,
                    reference_type=r.reference_type, reference_id=r.reference_id,
                    idempotency_key=r.idempotency_key, description=r.description,
                    created_at=_aware(r.created_at),
                )
                for r in result.scalars().all()
            ]

    async def get_credit_balance(self, user_id: str) -> int:
        async with get_session() as db:
            stmt = select(func.coalesce(func.sum(CreditEventRow.amount), 0)).where(
                CreditEventRow.user_id == user_id
            )
            return int((await db.execute(stmt)).scalar_one())

    # ── Introspection ──────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        async with get_session() as db:
            events = (await db.execute(select(func.count(EventRow.id)))).scalar_one()
            unprocessed = (await db.execute(
                select(func.count(EventRow.id)).where(EventRow.processed.is_(False))
            )).scalar_one()
            dead_letters = (await db.execute(select(func.count(DeadLetterRow.id)))).scalar_one()
            task_rows = (await db.execute(
                select(TaskRow.status, func.count(TaskRow.id)).group_by(TaskRow.status)
            )).all()
            actions = (await db.execute(select(func.count(ActionLogRow.id)))).scalar_one()
            workflows = 0
            for row_cls in _WORKFLOW_ROWS.values():
                workflows += (await db.execute(select(func.count(row_cls.id)))).scalar_one()
            priorities_active = (await db.execute(
                select(func.count(PriorityRow.id)).where(PriorityRow.status == "active")
            )).scalar_one()
            subject_holds = (await db.execute(select(func.count(SubjectHoldRow.subject_id)))).scalar_one()
            credit_events = (await db.execute(select(func.count(CreditEventRow.id)))).scalar_one()
        return {
            "events": events,
            "events_unprocessed": unprocessed,
            "dead_letters": dead_letters,
            "tasks": {status: count for status, count in task_rows},
            "actions": actions,
            "workflows": workflows,
            "subject_holds": subject_holds,
            "priorities_active": priorities_active,
            "credit_events": credit_events,
        }

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_event(row: EventRow) -> Event:
        return Event(
            id=row.id,
            event_type=row.event_type,
            aggregate_id=row.aggregate_id or "",
            aggregate_type=row.aggregate_type or "",
            payload=row.payload or {},
            metadata=EventMetadata.model_validate(row.metadata_ or {}),
            processed=bool(row.processed),
            claimed_by=row.claimed_by,
            claimed_at=_aware(row.claimed_at),
            created_at=_aware(row.created_at),
            created_by=row.created_by or "system",
        )

    @staticmethod
    def _row_to_dead_letter(row: DeadLetterRow) -> DeadLetterEvent:
        return DeadLetterEvent(
            id=row.id,
            event_id=row.event_id,
            event_type=row.event_type,
            payload=row.payload or {},
            error_message=row.error_message or "",
            retry_count=row.retry_count,
            original_created_at=_aware(row.original_created_at),
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_task(row: TaskRow) -> Task:
        return Task(
            id=row.id,
            task_type=row.task_type,
            agent_type=row.agent_type,
            user_id=row.user_id,
            context_id=row.context_id,
            context_type=row.context_type,
            scheduled_for=_aware(row.scheduled_for),
            priority=row.priority,
            status=row.status,
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            context_json=row.context_json or {},
            result_json=row.result_json,
            error_log=row.error_log,
            last_attempted_at=_aware(row.last_attempted_at),
            created_at=_aware(row.created_at),
            completed_at=_aware(row.completed_at),
            created_by=row.created_by,
        )

    @staticmethod
    def _row_to_workflow(kind: WorkflowKind, row) -> WorkflowEntity:
        users = {f: getattr(row, f) for f in _WORKFLOW_USER_FIELDS[kind]}
        return WORKFLOW_MODELS[kind](
            id=row.id,
            subject_id=row.subject_id,
            status=row.status,
            bounty_credits=row.bounty_credits or 0,
            context=row.context or {},
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            **users,
        )

    @staticmethod
    def _row_to_priority(row: PriorityRow) -> PriorityEntry:
        return PriorityEntry(
            id=row.id,
            user_id=row.user_id,
            item_type=row.item_type,
            item_id=row.item_id,
            value_score=row.value_score,
            status=row.status,
            priority_rank=row.priority_rank,
            content=row.content or {},
            expires_at=_aware(row.expires_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
