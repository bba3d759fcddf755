"""
Offer confirmation reminder — nudges the offering user when an accepted
offer has not been confirmed a few days later.

Scheduled by the `offer.accepted` handler; cancelled when the offer is
confirmed or cancelled. A reminder that fires for an offer that has already
moved on is a successful no-op.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta

from database.store_base import BaseStore
from messaging.gateway import MessagingGateway
from models.schemas import (
    IntroOffer, OfferStatus, Task, TaskPriority, TaskResult, WorkflowKind,
)

logger = structlog.get_logger()

OFFER_REMINDER_TASK = "intro_offer_confirmation_reminder"
OFFER_REMINDER_TEMPLATE = "intro_offer_confirmation_reminder"


def build_offer_reminder(offer: IntroOffer, run_at: datetime, max_retries: int = 3) -> Task:
    return Task(
        task_type=OFFER_REMINDER_TASK,
        agent_type="agent_of_humans",
        user_id=offer.offering_user_id,
        context_id=offer.id,
        context_type=offer.item_type,
        scheduled_for=run_at,
        priority=TaskPriority.MEDIUM,
        max_retries=max_retries,
        context_json={
            "offer_id": offer.id,
            "subject_id": offer.subject_id,
            "introducee_user_id": offer.introducee_user_id,
        },
        created_by="offer.accepted",
    )


def reminder_time(accepted_at: datetime, delay_days: int) -> datetime:
    return accepted_at + timedelta(days=delay_days)


class OfferReminderHandler:
    """Task handler for `intro_offer_confirmation_reminder`."""

    def __init__(self, store: BaseStore, gateway: MessagingGateway):
        self.store = store
        self.gateway = gateway

    async def __call__(self, task: Task) -> TaskResult:
        offer_id = task.context_json.get("offer_id") or task.context_id
        offer = await self.store.get_workflow(WorkflowKind.OFFER, offer_id) if offer_id else None

        if offer is None:
            logger.info("offer_reminder_skipped", task_id=task.id, offer_id=offer_id,
                        reason="offer_not_found")
            return TaskResult(success=True, data={"skipped": "offer_not_found"})

        if offer.status != OfferStatus.ACCEPTED:
            logger.info("offer_reminder_skipped", task_id=task.id, offer_id=offer.id,
                        reason=offer.status)
            return TaskResult(success=True, data={"skipped": offer.status})

        # Gateway errors propagate; the dispatcher retries the task
        message_id = await self.gateway.enqueue(
            user_id=offer.offering_user_id,
            content=(
                "Your intro offer was accepted. Confirm once you've made the "
                "introduction so we can close the loop."
            ),
            template=OFFER_REMINDER_TEMPLATE,
            context={"offer_id": offer.id, "subject_id": offer.subject_id},
        )
        logger.info("offer_reminder_sent", task_id=task.id, offer_id=offer.id,
                    user_id=offer.offering_user_id, message_id=message_id)
        return TaskResult(success=True, data={"message_id": message_id, "offer_id": offer.id})
