"""
Priority Projection — each user's "what should I act on next" queue.

Rows are keyed by (user_id, item_type, item_id) and there is only ever one
row per key, so "at most one active entry per key" holds by construction.
Only the lifecycle handlers write here; everything else reads.

Scores are 0..100. Hints come from the workflow entity's `context`:

  opportunity  base = bounty_credits
               +20  prospect_company matches one of connector_interests
               +10  connector_success_rate > 0.7
               -10  recent_decline (connector declined one in the last 30 days)
  request      base = 60
               +10 per voucher (max +30)
               +10  requestor_reputation > 80
               +10  message longer than 100 chars
               -5   pending_request_count >= 3
  offer        base = 70
               +15  expert_connector with offering_user_credits > 100
               +10  prospect_company matches one of introducee_interests
               +10  prospect_context longer than 100 chars
               +(innovator_bounty - 25) when the introducee set a custom bounty
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import (
    PriorityEntry, PriorityStatus, WorkflowEntity, WorkflowKind, utcnow,
)

logger = structlog.get_logger()

OFFER_CONFIRMATION_ITEM = "intro_offer_confirmation"
OFFER_CONFIRMATION_SCORE = 80.0


def _clamp(score: float) -> float:
    return float(max(0, min(100, score)))


def _interest_match(interests: Any, company: Any) -> bool:
    if not interests or not company:
        return False
    company = str(company).lower()
    return any(str(i).lower() in company for i in interests)


# ──────────────────────────────────────────────────────────────
#  Scoring
# ──────────────────────────────────────────────────────────────

def score_opportunity(bounty_credits: int, context: dict[str, Any]) -> float:
    score = bounty_credits
    if _interest_match(context.get("connector_interests"), context.get("prospect_company")):
        score += 20
    if (context.get("connector_success_rate") or 0) > 0.7:
        score += 10
    if context.get("recent_decline"):
        score -= 10
    return _clamp(score)


def score_request(context: dict[str, Any]) -> float:
    score = 60
    score += min(len(context.get("vouched_by_user_ids") or []) * 10, 30)
    if (context.get("requestor_reputation") or 0) > 80:
        score += 10
    if len(context.get("message") or "") > 100:
        score += 10
    if (context.get("pending_request_count") or 0) >= 3:
        score -= 5
    return _clamp(score)


def score_offer(context: dict[str, Any]) -> float:
    score = 70
    if context.get("expert_connector") and (context.get("offering_user_credits") or 0) > 100:
        score += 15
    if _interest_match(context.get("introducee_interests"), context.get("prospect_company")):
        score += 10
    if len(context.get("prospect_context") or "") > 100:
        score += 10
    if context.get("innovator_bounty"):
        score += context["innovator_bounty"] - 25
    return _clamp(score)


def score_entity(entity: WorkflowEntity) -> float:
    if entity.kind == WorkflowKind.OPPORTUNITY:
        return score_opportunity(entity.bounty_credits, entity.context)
    if entity.kind == WorkflowKind.REQUEST:
        return score_request(entity.context)
    return score_offer(entity.context)


def describe_entity(entity: WorkflowEntity) -> dict[str, Any]:
    """Display payload stored on the priority row."""
    ctx = entity.context
    return {
        "kind": entity.kind.value,
        "subject_id": entity.subject_id,
        "prospect_name": ctx.get("prospect_name", ""),
        "prospect_company": ctx.get("prospect_company", ""),
        "bounty_credits": entity.bounty_credits,
    }


# ──────────────────────────────────────────────────────────────
#  Projection
# ──────────────────────────────────────────────────────────────

class PriorityProjection:
    """Thin write/read layer over the store's user_priorities rows."""

    def __init__(self, store: BaseStore, default_ttl_days: int = 14):
        self.store = store
        self.default_ttl_days = default_ttl_days

    async def activate_for(self, entity: WorkflowEntity) -> PriorityEntry:
        """Put a freshly created entity in front of the user who acts on it."""
        return await self.activate(
            user_id=entity.actor_user_id,
            item_type=entity.item_type,
            item_id=entity.id,
            value_score=score_entity(entity),
            content=describe_entity(entity),
        )

    async def activate(
        self,
        user_id: str,
        item_type: str,
        item_id: str,
        value_score: float,
        content: dict[str, Any] = None,
        expires_at: Optional[datetime] = None,
    ) -> PriorityEntry:
        entry = await self.store.upsert_priority(PriorityEntry(
            user_id=user_id,
            item_type=item_type,
            item_id=item_id,
            value_score=value_score,
            status=PriorityStatus.ACTIVE,
            content=content or {},
            expires_at=expires_at or utcnow() + timedelta(days=self.default_ttl_days),
        ))
        logger.info("priority_activated",
                    user_id=user_id,
                    item_type=item_type,
                    item_id=item_id,
                    value_score=value_score)
        return entry

    async def reactivate(self, user_id: str, item_type: str, item_id: str) -> bool:
        """Bring back a paused entity's entry (expired by the pause)."""
        return await self.store.set_priority_status(
            user_id, item_type, item_id, PriorityStatus.ACTIVE.value,
            only_from=[PriorityStatus.EXPIRED.value],
        )

    async def mark(self, user_id: str, item_type: str, item_id: str,
                   status: PriorityStatus, only_from: list[str] = None) -> bool:
        """
        Move an entry out of active (or between closed states). A missing entry
        is not an error: the item may never have been projected.
        """
        changed = await self.store.set_priority_status(
            user_id, item_type, item_id, PriorityStatus(status).value, only_from=only_from,
        )
        if changed:
            logger.info("priority_updated",
                        user_id=user_id,
                        item_type=item_type,
                        item_id=item_id,
                        status=PriorityStatus(status).value)
        return changed

    async def mark_entity(self, entity: WorkflowEntity, status: PriorityStatus,
                          only_from: list[str] = None) -> bool:
        return await self.mark(entity.actor_user_id, entity.item_type, entity.id,
                               status, only_from=only_from)

    async def list_for_user(self, user_id: str, status: Optional[str] = "active",
                            limit: int = 50) -> list[PriorityEntry]:
        return await self.store.list_priorities(user_id, status=status, limit=limit)

    async def expire_due(self, now: datetime = None) -> int:
        expired = await self.store.expire_priorities(now or utcnow())
        if expired:
            logger.info("priorities_expired", count=expired)
        return expired
