"""
Core data models for the Introloop backbone.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Dispatch order for due tasks: lower rank runs first
TASK_PRIORITY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


class WorkflowKind(str, Enum):
    OPPORTUNITY = "opportunity"     # system-nominated connector
    REQUEST = "request"             # peer asks for an intro
    OFFER = "offer"                 # user volunteers an intro


class OpportunityStatus(str, Enum):
    OPEN = "open"
    PAUSED = "paused"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestStatus(str, Enum):
    OPEN = "open"
    PAUSED = "paused"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    CREATED = "created"
    PAUSED = "paused"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# A sibling in one of these statuses holds its subject; the others wait paused
SUBJECT_HOLDING_STATUSES = ("accepted", "confirmed")


class PriorityStatus(str, Enum):
    ACTIVE = "active"
    ACTIONED = "actioned"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Event — an immutable fact in the durable log
# ──────────────────────────────────────────────────────────────

class EventMetadata(BaseModel):
    """Dispatcher bookkeeping. Extra keys written by producers are kept."""
    model_config = ConfigDict(extra="allow")

    retry_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    replayed_from: Optional[str] = None     # event id this one was replayed from


class Event(BaseModel):
    id: str = Field(default_factory=_new_id)
    event_type: str
    aggregate_id: str = ""
    aggregate_type: str = ""
    payload: dict[str, Any] = {}
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    processed: bool = False
    claimed_by: Optional[str] = None          # worker currently holding the event
    claimed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"


class DeadLetterEvent(BaseModel):
    """Permanent record of an event whose retries ran out."""
    id: str = Field(default_factory=_new_id)
    event_id: str
    event_type: str
    payload: dict[str, Any] = {}
    error_message: str = ""
    retry_count: int = 0
    original_created_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Task — scheduled unit of work with its own state machine
# ──────────────────────────────────────────────────────────────

class Task(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=_new_id)
    task_type: str
    agent_type: str = "system"
    user_id: Optional[str] = None
    context_id: Optional[str] = None
    context_type: Optional[str] = None
    scheduled_for: datetime = Field(default_factory=utcnow)
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    context_json: dict[str, Any] = {}
    result_json: Optional[dict[str, Any]] = None
    error_log: Optional[str] = None
    last_attempted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    created_by: str = "system"


class TaskResult(BaseModel):
    """What a task handler hands back to the dispatcher."""
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    should_retry: bool = True


class ActionLogEntry(BaseModel):
    """Audit record of one handler invocation."""
    id: str = Field(default_factory=_new_id)
    agent_type: str
    action_type: str
    user_id: Optional[str] = None
    context_id: Optional[str] = None
    context_type: Optional[str] = None
    latency_ms: int = 0
    input_data: dict[str, Any] = {}
    output_data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Workflow entities — three variants of one introduction
# ──────────────────────────────────────────────────────────────

class WorkflowEntity(BaseModel):
    """
    Shared shape of the three introduction variants. Every variant points at
    a subject (the person being introduced) and carries a bounty.

    Subclasses declare which user acts on the item (sees it in priorities)
    and which user is credited when the loop closes.
    """
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    kind: ClassVar[WorkflowKind]
    item_type: ClassVar[str]

    id: str = Field(default_factory=_new_id)
    subject_id: str
    status: str
    bounty_credits: int = 0
    context: dict[str, Any] = {}              # scoring hints, message text, etc.
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def actor_user_id(self) -> str:
        raise NotImplementedError

    @property
    def credited_user_id(self) -> str:
        raise NotImplementedError

    @property
    def counterpart_user_id(self) -> str:
        raise NotImplementedError

    def user_fields(self) -> dict[str, str]:
        """Variant-specific user columns, as stored."""
        raise NotImplementedError


class IntroOpportunity(WorkflowEntity):
    kind: ClassVar[WorkflowKind] = WorkflowKind.OPPORTUNITY
    item_type: ClassVar[str] = "intro_opportunity"

    connector_user_id: str
    status: OpportunityStatus = OpportunityStatus.OPEN

    @property
    def actor_user_id(self) -> str:
        return self.connector_user_id

    @property
    def credited_user_id(self) -> str:
        return self.connector_user_id

    @property
    def counterpart_user_id(self) -> str:
        return self.subject_id

    def user_fields(self) -> dict[str, str]:
        return {"connector_user_id": self.connector_user_id}


class ConnectionRequest(WorkflowEntity):
    kind: ClassVar[WorkflowKind] = WorkflowKind.REQUEST
    item_type: ClassVar[str] = "connection_request"

    requestor_user_id: str
    introducee_user_id: str
    status: RequestStatus = RequestStatus.OPEN

    # The introducee is asked to make the intro, so they act and earn.
    @property
    def actor_user_id(self) -> str:
        return self.introducee_user_id

    @property
    def credited_user_id(self) -> str:
        return self.introducee_user_id

    @property
    def counterpart_user_id(self) -> str:
        return self.requestor_user_id

    def user_fields(self) -> dict[str, str]:
        return {"requestor_user_id": self.requestor_user_id,
                "introducee_user_id": self.introducee_user_id}


class IntroOffer(WorkflowEntity):
    kind: ClassVar[WorkflowKind] = WorkflowKind.OFFER
    item_type: ClassVar[str] = "intro_offer"

    offering_user_id: str
    introducee_user_id: str
    status: OfferStatus = OfferStatus.CREATED

    @property
    def actor_user_id(self) -> str:
        return self.introducee_user_id

    @property
    def credited_user_id(self) -> str:
        return self.offering_user_id

    @property
    def counterpart_user_id(self) -> str:
        return self.introducee_user_id

    def user_fields(self) -> dict[str, str]:
        return {"offering_user_id": self.offering_user_id,
                "introducee_user_id": self.introducee_user_id}


WORKFLOW_MODELS: dict[WorkflowKind, type[WorkflowEntity]] = {
    WorkflowKind.OPPORTUNITY: IntroOpportunity,
    WorkflowKind.REQUEST: ConnectionRequest,
    WorkflowKind.OFFER: IntroOffer,
}


# ──────────────────────────────────────────────────────────────
#  Priority projection & credits
# ──────────────────────────────────────────────────────────────

class PriorityEntry(BaseModel):
    """One row of a user's "what next" queue. Unique per (user_id, item_type, item_id)."""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=_new_id)
    user_id: str
    item_type: str
    item_id: str
    value_score: float = 0.0
    status: PriorityStatus = PriorityStatus.ACTIVE
    priority_rank: int = 999
    content: dict[str, Any] = {}
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditEvent(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    event_type: str = "intro_bounty"
    amount: int
    reference_type: str = ""
    reference_id: str = ""
    idempotency_key: str
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Workflow state maps — one shared table shape for every kind
# ──────────────────────────────────────────────────────────────

class WorkflowTrigger(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    CONFIRM = "confirm"                 # offer only: offering user confirms
    COMPLETE = "complete"
    CANCEL = "cancel"
    PAUSE = "pause"                     # a sibling for the same subject was accepted
    RESUME = "resume"                   # the accepted sibling was cancelled
    CANCEL_PAUSED = "cancel_paused"     # a sibling for the same subject completed


class WorkflowTransitionDef(BaseModel):
    from_states: list[str]
    trigger: WorkflowTrigger
    to_state: str
    description: str = ""


class WorkflowMapDef(BaseModel):
    """
    Status graph for one WorkflowKind.

    Example:
      kind: opportunity
      states: [open, paused, accepted, declined, completed, cancelled]
      initial_state: open
      active_state: open
      terminal_states: [declined, completed, cancelled]
      transitions:
        - { from_states: [open], trigger: accept, to_state: accepted }
    """
    kind: WorkflowKind
    states: list[str]
    initial_state: str
    active_state: str                           # the pre-acceptance status siblings are paused from
    terminal_states: list[str] = []
    transitions: list[WorkflowTransitionDef] = []
