"""
Credit Ledger — append-only credit events with idempotent awards.

A user's balance is the sum of their credit events. Every award carries an
idempotency key (unique in storage); replaying the same award is a no-op.
"""
from __future__ import annotations

import structlog

from database.store_base import BaseStore
from models.schemas import CreditEvent, WorkflowEntity

logger = structlog.get_logger()


def completion_key(entity: WorkflowEntity) -> str:
    """One bounty per entity, however many times its completion is handled."""
    return f"{entity.kind.value}_completed:{entity.id}"


class CreditLedger:

    def __init__(self, store: BaseStore):
        self.store = store

    async def award(
        self,
        user_id: str,
        amount: int,
        idempotency_key: str,
        reference_type: str = "",
        reference_id: str = "",
        description: str = "",
        event_type: str = "intro_bounty",
    ) -> bool:
        """Returns True only for the call that actually wrote the credit."""
        if amount <= 0:
            logger.info("credit_award_skipped", user_id=user_id, amount=amount,
                        idempotency_key=idempotency_key)
            return False

        awarded = await self.store.award_credits(CreditEvent(
            user_id=user_id,
            event_type=event_type,
            amount=amount,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            description=description,
        ))
        if awarded:
            logger.info("credits_awarded", user_id=user_id, amount=amount,
                        idempotency_key=idempotency_key)
        else:
            logger.info("credit_award_duplicate", user_id=user_id,
                        idempotency_key=idempotency_key)
        return awarded

    async def award_completion(self, entity: WorkflowEntity) -> bool:
        return await self.award(
            user_id=entity.credited_user_id,
            amount=entity.bounty_credits,
            idempotency_key=completion_key(entity),
            reference_type=entity.item_type,
            reference_id=entity.id,
            description=f"Bounty for completed {entity.kind.value} {entity.id}",
        )

    async def balance(self, user_id: str) -> int:
        return await self.store.get_credit_balance(user_id)
