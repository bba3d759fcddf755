"""
Workflows — the introduction lifecycle driven by the event dispatcher.

- WorkflowStateMachine holds the status graph for each WorkflowKind
- IntroLifecycle registers the `<kind>.<verb>` handlers that apply it,
  including the pause-on-accept and cancel-on-complete rules
- PriorityProjection and CreditLedger are the read models it maintains
"""
from workflows.state_machine import (
    WorkflowStateMachine, InvalidTransition, WorkflowNotFound, default_maps,
)
from workflows.priority import PriorityProjection, score_entity
from workflows.credits import CreditLedger, completion_key
from workflows.reminders import OfferReminderHandler, OFFER_REMINDER_TASK
from workflows.handlers import IntroLifecycle

__all__ = [
    "WorkflowStateMachine", "InvalidTransition", "WorkflowNotFound", "default_maps",
    "PriorityProjection", "score_entity",
    "CreditLedger", "completion_key",
    "OfferReminderHandler", "OFFER_REMINDER_TASK",
    "IntroLifecycle",
]
