"""
Introduction Lifecycle — event handlers that move workflow entities through
their status graphs and keep the priority projection and credit ledger in step.

Event types are `<kind>.<verb>`; the entity id is taken from
`payload["entity_id"]`, falling back to the event's aggregate_id.

Cross-entity rules (all entities sharing a subject_id are siblings):
  accept    → the subject hold is taken in the same store write as the status
              change; a sibling that loses the hold is paused instead, and
              every other open/created sibling is paused, its priority expired
  cancel    → the hold is released; when no accepted/confirmed sibling
              remains, paused siblings resume
  complete  → paused siblings are cancelled, the hold is released, the
              bounty is credited once and both sides of the introduction
              are told the loop closed

Every handler may run more than once for the same event. Status writes are
compare-and-swap, the credit award is keyed by entity, and a redelivery that
finds the entity already in (or past) the target status re-runs only the
idempotent follow-up steps.
"""
from __future__ import annotations

import structlog
from datetime import timedelta
from functools import partial
from typing import Any, Optional

from config.settings import WorkflowConfig
from database.store_base import BaseStore
from job_queue.errors import NonRetryableError
from job_queue.registry import HandlerRegistry
from job_queue.task_dispatcher import schedule_task
from messaging.gateway import MessagingGateway
from models.schemas import (
    SUBJECT_HOLDING_STATUSES, WORKFLOW_MODELS, Event, PriorityStatus, WorkflowEntity,
    WorkflowKind, WorkflowTrigger, utcnow,
)
from workflows.credits import CreditLedger
from workflows.priority import (
    OFFER_CONFIRMATION_ITEM, OFFER_CONFIRMATION_SCORE, PriorityProjection,
)
from workflows.reminders import (
    OFFER_REMINDER_TASK, OfferReminderHandler, build_offer_reminder, reminder_time,
)
from workflows.state_machine import WorkflowNotFound, WorkflowStateMachine

logger = structlog.get_logger()

ENGAGED_STATUSES = SUBJECT_HOLDING_STATUSES
PAUSED = "paused"
CANCELLED = "cancelled"

LOOP_CLOSED_TEMPLATE = "intro_loop_closed"

_CAS_ATTEMPTS = 3


class IntroLifecycle:

    def __init__(
        self,
        store: BaseStore,
        state_machine: WorkflowStateMachine = None,
        gateway: MessagingGateway = None,
        config: WorkflowConfig = None,
        projection: PriorityProjection = None,
        ledger: CreditLedger = None,
    ):
        self.store = store
        self.state_machine = state_machine or WorkflowStateMachine()
        self.gateway = gateway
        self.config = config or WorkflowConfig()
        self.projection = projection or PriorityProjection(
            store, default_ttl_days=self.config.priority_expiry_days,
        )
        self.ledger = ledger or CreditLedger(store)

    # ──────────────────────────────────────────────────────────
    #  Registration
    # ──────────────────────────────────────────────────────────

    def register(self, registry: HandlerRegistry) -> None:
        for kind in WorkflowKind:
            verbs = [
                ("created", self.on_created, "Project a new item into the actor's priorities"),
                ("accepted", self.on_accepted, "Accept and pause open siblings for the subject"),
                ("declined", self.on_declined, "Decline and expire the priority entry"),
                ("cancelled", self.on_cancelled, "Cancel and resume paused siblings"),
                ("completed", self.on_completed, "Complete, cancel paused siblings, award credits"),
            ]
            for verb, handler, description in verbs:
                registry.register(f"{kind.value}.{verb}", partial(handler, kind), description)

        registry.register(
            f"{WorkflowKind.OFFER.value}.confirmed",
            partial(self.on_offer_confirmed, WorkflowKind.OFFER),
            "Offering user confirmed the intro; emits offer.completed",
        )

    def register_tasks(self, registry: HandlerRegistry) -> None:
        if self.gateway is None:
            raise ValueError("A messaging gateway is required for reminder tasks")
        registry.register(
            OFFER_REMINDER_TASK,
            OfferReminderHandler(self.store, self.gateway),
            "Remind the offering user to confirm an accepted offer",
        )

    # ──────────────────────────────────────────────────────────
    #  Entry points for producers
    # ──────────────────────────────────────────────────────────

    async def open_workflow(self, entity: WorkflowEntity, created_by: str = "system") -> Event:
        """Persist a new entity and append its `<kind>.created` event."""
        await self.store.create_workflow(entity)
        return await self.emit(entity.kind, "created", entity.id, created_by=created_by)

    async def emit(self, kind: WorkflowKind, verb: str, entity_id: str,
                   created_by: str = "system", payload: dict[str, Any] = None) -> Event:
        kind = WorkflowKind(kind)
        event = Event(
            event_type=f"{kind.value}.{verb}",
            aggregate_id=entity_id,
            aggregate_type=WORKFLOW_MODELS[kind].item_type,
            payload={**(payload or {}), "entity_id": entity_id},
            created_by=created_by,
        )
        await self.store.append_event(event)
        logger.info("workflow_event_emitted", event_id=event.id,
                    event_type=event.event_type, entity_id=entity_id)
        return event

    # ──────────────────────────────────────────────────────────
    #  Handlers
    # ──────────────────────────────────────────────────────────

    async def on_created(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        active = self.state_machine.active_status(kind)
        if entity.status != active:
            logger.info("workflow_created_skipped", kind=entity.kind.value,
                        entity_id=entity.id, status=entity.status)
            return

        holders = await self._siblings(entity, ENGAGED_STATUSES)
        if holders:
            # The subject is already taken; park the newcomer behind the holder
            paused = await self._cas(entity, WorkflowTrigger.PAUSE)
            logger.info("workflow_paused_on_create",
                        kind=entity.kind.value,
                        entity_id=entity.id,
                        subject_id=entity.subject_id,
                        held_by=holders[0].id,
                        paused=paused)
            return

        await self.projection.activate_for(entity)

        # A sibling accepted between the check and the activation: its pause won
        fresh = await self.store.get_workflow(entity.kind, entity.id)
        if fresh is not None and fresh.status == PAUSED:
            await self.projection.mark_entity(
                entity, PriorityStatus.EXPIRED, only_from=[PriorityStatus.ACTIVE.value],
            )
            logger.info("workflow_paused_while_created", kind=entity.kind.value,
                        entity_id=entity.id, status=fresh.status)

    async def on_accepted(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        outcome = await self._accept(entity)
        if outcome in ("past", "held"):
            return

        paused = await self._pause_siblings(entity)
        await self.projection.mark_entity(entity, PriorityStatus.ACTIONED)

        if entity.kind == WorkflowKind.OFFER:
            await self._await_confirmation(entity)

        logger.info("workflow_accepted",
                    kind=entity.kind.value,
                    entity_id=entity.id,
                    subject_id=entity.subject_id,
                    siblings_paused=paused,
                    outcome=outcome)

    async def on_declined(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        outcome = await self._apply(entity, WorkflowTrigger.DECLINE)
        if outcome == "past":
            return
        await self.projection.mark_entity(entity, PriorityStatus.EXPIRED)
        logger.info("workflow_declined", kind=entity.kind.value, entity_id=entity.id,
                    outcome=outcome)

    async def on_cancelled(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        outcome = await self._apply(entity, WorkflowTrigger.CANCEL)
        if outcome == "past":
            return

        await self.projection.mark_entity(entity, PriorityStatus.CANCELLED)
        if entity.kind == WorkflowKind.OFFER:
            await self._drop_confirmation(entity, PriorityStatus.CANCELLED)

        released = await self.store.release_subject(entity.subject_id, entity.id)
        resumed = await self._resume_siblings(entity)
        logger.info("workflow_cancelled",
                    kind=entity.kind.value,
                    entity_id=entity.id,
                    subject_id=entity.subject_id,
                    hold_released=released,
                    siblings_resumed=resumed,
                    outcome=outcome)

    async def on_offer_confirmed(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        outcome = await self._apply(entity, WorkflowTrigger.CONFIRM)
        if outcome == "past":
            return

        await self._drop_confirmation(entity, PriorityStatus.ACTIONED)
        await self.emit(entity.kind, "completed", entity.id, created_by=event.event_type)
        logger.info("offer_confirmed", entity_id=entity.id, outcome=outcome)

    async def on_completed(self, kind: WorkflowKind, event: Event) -> None:
        entity = await self._load(kind, event)
        outcome = await self._apply(entity, WorkflowTrigger.COMPLETE)
        if outcome == "past":
            return

        cancelled = await self._cancel_paused_siblings(entity)
        await self.store.release_subject(entity.subject_id, entity.id)
        awarded = await self.ledger.award_completion(entity)
        await self.projection.mark_entity(entity, PriorityStatus.ACTIONED)
        await self._close_loop(entity)

        logger.info("workflow_completed",
                    kind=entity.kind.value,
                    entity_id=entity.id,
                    subject_id=entity.subject_id,
                    siblings_cancelled=cancelled,
                    credits_awarded=entity.bounty_credits if awarded else 0,
                    outcome=outcome)

    # ──────────────────────────────────────────────────────────
    #  Status writes
    # ──────────────────────────────────────────────────────────

    async def _load(self, kind: WorkflowKind, event: Event) -> WorkflowEntity:
        entity_id = event.payload.get("entity_id") or event.aggregate_id
        if not entity_id:
            raise NonRetryableError(f"{event.event_type} event {event.id} names no entity")
        entity = await self.store.get_workflow(kind, entity_id)
        if entity is None:
            raise WorkflowNotFound(kind, entity_id)
        return entity

    async def _apply(self, entity: WorkflowEntity, trigger: WorkflowTrigger) -> str:
        """
        Drive `entity` through `trigger`. Returns:
          "applied"  this call made the transition
          "already"  the entity was already in the target status (redelivery)
          "past"     the entity has moved beyond the target; nothing to do
        Raises InvalidTransition when the trigger makes no sense from here.
        """
        kind = entity.kind
        target = self.state_machine.target(kind, trigger)

        for _ in range(_CAS_ATTEMPTS):
            if entity.status == target:
                return "already"
            if entity.status in self.state_machine.downstream(kind, target):
                logger.info("workflow_transition_superseded",
                            kind=kind.value,
                            entity_id=entity.id,
                            status=entity.status,
                            trigger=trigger.value)
                return "past"

            to_status = self.state_machine.next_status(kind, entity.status, trigger)
            if await self.store.transition_workflow(kind, entity.id, [entity.status], to_status):
                logger.info("workflow_transitioned",
                            kind=kind.value,
                            entity_id=entity.id,
                            from_status=entity.status,
                            to_status=to_status,
                            trigger=trigger.value)
                entity.status = to_status
                return "applied"

            # Lost the race; look again
            fresh = await self.store.get_workflow(kind, entity.id)
            if fresh is None:
                raise WorkflowNotFound(kind, entity.id)
            entity.status = fresh.status

        raise RuntimeError(
            f"{kind.value} {entity.id}: status kept changing during '{trigger.value}'"
        )

    async def _accept(self, entity: WorkflowEntity) -> str:
        """
        `_apply` for ACCEPT, with the subject hold taken in the same store write.
        Returns "applied", "already" or "past" like `_apply`, or "held" when a
        sibling owns the subject; the entity is left paused in that case.
        """
        kind = entity.kind
        trigger = WorkflowTrigger.ACCEPT
        target = self.state_machine.target(kind, trigger)
        lost_to = None

        for _ in range(_CAS_ATTEMPTS):
            if entity.status == target:
                return "already"
            if entity.status in self.state_machine.downstream(kind, target):
                logger.info("workflow_transition_superseded",
                            kind=kind.value,
                            entity_id=entity.id,
                            status=entity.status,
                            trigger=trigger.value)
                return "past"
            if lost_to is not None and entity.status == PAUSED:
                return await self._lose_subject(entity, lost_to)

            to_status = self.state_machine.next_status(kind, entity.status, trigger)
            taken = await self.store.take_subject(
                kind, entity.id, entity.subject_id, [entity.status], to_status,
            )
            if taken == "taken":
                logger.info("workflow_transitioned",
                            kind=kind.value,
                            entity_id=entity.id,
                            from_status=entity.status,
                            to_status=to_status,
                            trigger=trigger.value)
                entity.status = to_status
                return "applied"

            if taken == "held":
                lost_to = await self.store.get_subject_holder(entity.subject_id) or "unknown"
                if await self._cas(entity, WorkflowTrigger.PAUSE):
                    return await self._lose_subject(entity, lost_to)

            fresh = await self.store.get_workflow(kind, entity.id)
            if fresh is None:
                raise WorkflowNotFound(kind, entity.id)
            entity.status = fresh.status

        raise RuntimeError(
            f"{kind.value} {entity.id}: status kept changing during '{trigger.value}'"
        )

    async def _lose_subject(self, entity: WorkflowEntity, held_by: str) -> str:
        await self.projection.mark_entity(
            entity, PriorityStatus.EXPIRED, only_from=[PriorityStatus.ACTIVE.value],
        )
        logger.warning("workflow_accept_lost_subject",
                       kind=entity.kind.value,
                       entity_id=entity.id,
                       subject_id=entity.subject_id,
                       held_by=held_by)
        return "held"

    async def _cas(self, entity: WorkflowEntity, trigger: WorkflowTrigger) -> bool:
        """Single conditional transition; False when the entity moved or the trigger does not apply."""
        if not self.state_machine.can_apply(entity.kind, entity.status, trigger):
            return False
        to_status = self.state_machine.next_status(entity.kind, entity.status, trigger)
        changed = await self.store.transition_workflow(
            entity.kind, entity.id, [entity.status], to_status,
        )
        if changed:
            entity.status = to_status
        return changed

    async def _siblings(self, entity: WorkflowEntity,
                        statuses: Optional[tuple[str, ...]] = None) -> list[WorkflowEntity]:
        found = await self.store.list_workflows_for_subject(
            entity.subject_id, statuses=list(statuses) if statuses else None,
        )
        return [s for s in found if s.id != entity.id]

    # ──────────────────────────────────────────────────────────
    #  Cross-entity rules
    # ──────────────────────────────────────────────────────────

    async def _pause_siblings(self, entity: WorkflowEntity) -> int:
        paused = 0
        siblings = await self._siblings(entity, tuple(self.state_machine.active_statuses()) + (PAUSED,))
        for sibling in siblings:
            if sibling.status != PAUSED:
                if not await self._cas(sibling, WorkflowTrigger.PAUSE):
                    logger.info("sibling_pause_skipped", kind=sibling.kind.value,
                                entity_id=sibling.id, status=sibling.status)
                    continue
                paused += 1
            await self.projection.mark_entity(
                sibling, PriorityStatus.EXPIRED, only_from=[PriorityStatus.ACTIVE.value],
            )
        return paused

    async def _resume_siblings(self, entity: WorkflowEntity) -> int:
        siblings = await self._siblings(entity)
        if any(s.status in ENGAGED_STATUSES for s in siblings):
            return 0

        resumed = 0
        for sibling in siblings:
            if sibling.status != PAUSED:
                continue
            if await self._cas(sibling, WorkflowTrigger.RESUME):
                await self.projection.reactivate(sibling.actor_user_id, sibling.item_type, sibling.id)
                resumed += 1
        return resumed

    async def _cancel_paused_siblings(self, entity: WorkflowEntity) -> int:
        cancelled = 0
        for sibling in await self._siblings(entity, (PAUSED, CANCELLED)):
            if sibling.status == PAUSED:
                if not await self._cas(sibling, WorkflowTrigger.CANCEL_PAUSED):
                    continue
                cancelled += 1
            await self.projection.mark_entity(
                sibling, PriorityStatus.CANCELLED,
                only_from=[PriorityStatus.ACTIVE.value, PriorityStatus.EXPIRED.value],
            )
        return cancelled

    # ──────────────────────────────────────────────────────────
    #  Offer confirmation
    # ──────────────────────────────────────────────────────────

    async def _await_confirmation(self, offer: WorkflowEntity) -> None:
        """Queue the offering user's confirmation item and its reminder."""
        now = utcnow()
        await self.projection.activate(
            user_id=offer.offering_user_id,
            item_type=OFFER_CONFIRMATION_ITEM,
            item_id=offer.id,
            value_score=OFFER_CONFIRMATION_SCORE,
            content={
                "kind": offer.kind.value,
                "subject_id": offer.subject_id,
                "introducee_user_id": offer.introducee_user_id,
            },
            expires_at=now + timedelta(days=self.config.offer_confirmation_expiry_days),
        )
        await schedule_task(
            self.store,
            build_offer_reminder(offer, reminder_time(now, self.config.offer_reminder_delay_days)),
            replace_pending=True,
            same_context=True,
        )

    async def _drop_confirmation(self, offer: WorkflowEntity, status: PriorityStatus) -> None:
        await self.projection.mark(offer.offering_user_id, OFFER_CONFIRMATION_ITEM, offer.id, status)
        cancelled = await self.store.cancel_pending_tasks(
            offer.offering_user_id, OFFER_REMINDER_TASK, context_id=offer.id,
        )
        if cancelled:
            logger.info("offer_reminder_cancelled", entity_id=offer.id, cancelled=cancelled)

    # ──────────────────────────────────────────────────────────
    #  Notifications
    # ──────────────────────────────────────────────────────────

    async def _close_loop(self, entity: WorkflowEntity) -> None:
        """Tell both sides the intro happened. Sent on every completion delivery."""
        if self.gateway is None:
            logger.warning("loop_closed_not_sent", entity_id=entity.id, reason="no_gateway")
            return

        recipients = [entity.credited_user_id]
        if entity.counterpart_user_id not in recipients:
            recipients.append(entity.counterpart_user_id)

        context = {
            "kind": entity.kind.value,
            "entity_id": entity.id,
            "subject_id": entity.subject_id,
            "bounty_credits": entity.bounty_credits,
        }
        for user_id in recipients:
            if user_id == entity.credited_user_id and entity.bounty_credits:
                content = (f"Your introduction is complete. "
                           f"{entity.bounty_credits} credits have been added to your balance.")
            else:
                content = "Your introduction is complete. Thanks for closing the loop."
            await self.gateway.enqueue(
                user_id=user_id,
                content=content,
                template=LOOP_CLOSED_TEMPLATE,
                context=context,
            )
        logger.info("loop_closed", kind=entity.kind.value, entity_id=entity.id,
                    recipients=len(recipients))
