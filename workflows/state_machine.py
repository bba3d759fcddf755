"""
Workflow State Machine — One transition table shape for all introduction kinds.

Opportunities, requests and offers are the same relationship reached by
different routes, so they share one engine parameterized by WorkflowKind.
Only the maps differ: the offer map starts at `created` and has an extra
`confirm` step between `accepted` and `completed`.

    open ──accept──▶ accepted ──complete──▶ completed
      │                 └──cancel──▶ cancelled
      ├──decline──▶ declined
      └──pause──▶ paused ──cancel_paused──▶ cancelled
                     └──resume──▶ open

Usage:
    sm = WorkflowStateMachine()          # default maps registered
    to_status = sm.next_status(WorkflowKind.OFFER, "accepted", WorkflowTrigger.CONFIRM)
    # "confirmed"
"""
from __future__ import annotations

import structlog
from typing import Optional

from job_queue.errors import NonRetryableError
from models.schemas import (
    WorkflowKind, WorkflowMapDef, WorkflowTransitionDef, WorkflowTrigger,
)

logger = structlog.get_logger()


class InvalidTransition(NonRetryableError):
    """The entity's current status has no edge for this trigger."""

    def __init__(self, kind: WorkflowKind, status: str, trigger: WorkflowTrigger):
        self.kind = WorkflowKind(kind)
        self.status = status
        self.trigger = WorkflowTrigger(trigger)
        super().__init__(
            f"{self.kind.value}: no '{self.trigger.value}' transition from '{status}'"
        )


class WorkflowNotFound(Exception):
    """Retryable: the row may not be visible to this replica yet."""

    def __init__(self, kind: WorkflowKind, entity_id: str):
        self.kind = WorkflowKind(kind)
        self.entity_id = entity_id
        super().__init__(f"{self.kind.value} {entity_id} not found")


# ──────────────────────────────────────────────────────────────
#  Default maps
# ──────────────────────────────────────────────────────────────

def _t(from_states: list[str], trigger: WorkflowTrigger, to_state: str) -> WorkflowTransitionDef:
    return WorkflowTransitionDef(from_states=from_states, trigger=trigger, to_state=to_state)


def _open_map(kind: WorkflowKind) -> WorkflowMapDef:
    """Opportunity and request share the same graph."""
    return WorkflowMapDef(
        kind=kind,
        states=["open", "paused", "accepted", "declined", "completed", "cancelled"],
        initial_state="open",
        active_state="open",
        terminal_states=["declined", "completed", "cancelled"],
        transitions=[
            _t(["open"], WorkflowTrigger.ACCEPT, "accepted"),
            _t(["open"], WorkflowTrigger.DECLINE, "declined"),
            _t(["accepted"], WorkflowTrigger.COMPLETE, "completed"),
            _t(["open", "paused", "accepted"], WorkflowTrigger.CANCEL, "cancelled"),
            _t(["open"], WorkflowTrigger.PAUSE, "paused"),
            _t(["paused"], WorkflowTrigger.RESUME, "open"),
            _t(["paused"], WorkflowTrigger.CANCEL_PAUSED, "cancelled"),
        ],
    )


def _offer_map() -> WorkflowMapDef:
    return WorkflowMapDef(
        kind=WorkflowKind.OFFER,
        states=["created", "paused", "accepted", "confirmed", "declined", "completed", "cancelled"],
        initial_state="created",
        active_state="created",
        terminal_states=["declined", "completed", "cancelled"],
        transitions=[
            _t(["created"], WorkflowTrigger.ACCEPT, "accepted"),
            _t(["created"], WorkflowTrigger.DECLINE, "declined"),
            _t(["accepted"], WorkflowTrigger.CONFIRM, "confirmed"),
            _t(["confirmed"], WorkflowTrigger.COMPLETE, "completed"),
            _t(["created", "paused", "accepted", "confirmed"], WorkflowTrigger.CANCEL, "cancelled"),
            _t(["created"], WorkflowTrigger.PAUSE, "paused"),
            _t(["paused"], WorkflowTrigger.RESUME, "created"),
            _t(["paused"], WorkflowTrigger.CANCEL_PAUSED, "cancelled"),
        ],
    )


def default_maps() -> list[WorkflowMapDef]:
    return [
        _open_map(WorkflowKind.OPPORTUNITY),
        _open_map(WorkflowKind.REQUEST),
        _offer_map(),
    ]


# ──────────────────────────────────────────────────────────────
#  Workflow State Machine
# ──────────────────────────────────────────────────────────────

class WorkflowStateMachine:
    """Looks up the next status for (kind, current status, trigger)."""

    def __init__(self, maps: list[WorkflowMapDef] = None):
        self._maps: dict[WorkflowKind, WorkflowMapDef] = {}
        for workflow_map in (maps if maps is not None else default_maps()):
            self.register_map(workflow_map)

    # ── Registration ──────────────────────────────────────────

    def register_map(self, workflow_map: WorkflowMapDef):
        errors = self._validate_map(workflow_map)
        if errors:
            logger.error("invalid_workflow_map",
                         kind=workflow_map.kind.value,
                         errors=errors)
            raise ValueError(
                f"Invalid workflow map '{workflow_map.kind.value}': {'; '.join(errors)}"
            )
        self._maps[workflow_map.kind] = workflow_map
        logger.info("workflow_map_registered",
                    kind=workflow_map.kind.value,
                    states=len(workflow_map.states),
                    transitions=len(workflow_map.transitions))

    @staticmethod
    def _validate_map(wm: WorkflowMapDef) -> list[str]:
        """Validate a workflow map definition. Returns list of error messages."""
        errors = []
        state_set = set(wm.states)

        if wm.initial_state not in state_set:
            errors.append(f"initial_state '{wm.initial_state}' not in states")
        if wm.active_state not in state_set:
            errors.append(f"active_state '{wm.active_state}' not in states")

        for ts in wm.terminal_states:
            if ts not in state_set:
                errors.append(f"terminal_state '{ts}' not in states")

        seen: set[tuple[str, str]] = set()
        for i, t in enumerate(wm.transitions):
            for fs in t.from_states:
                if fs not in state_set:
                    errors.append(f"transition[{i}] from_state '{fs}' not in states")
                elif fs in wm.terminal_states:
                    errors.append(f"transition[{i}] leaves terminal state '{fs}'")
                key = (fs, t.trigger.value)
                if key in seen:
                    errors.append(f"transition[{i}] duplicates '{t.trigger.value}' from '{fs}'")
                seen.add(key)
            if t.to_state not in state_set:
                errors.append(f"transition[{i}] to_state '{t.to_state}' not in states")

        return errors

    def get_map(self, kind: WorkflowKind) -> WorkflowMapDef:
        return self._maps[WorkflowKind(kind)]

    def list_maps(self) -> list[WorkflowMapDef]:
        return list(self._maps.values())

    # ── Lookup ────────────────────────────────────────────────

    def _find(self, kind: WorkflowKind, status: str,
              trigger: WorkflowTrigger) -> Optional[WorkflowTransitionDef]:
        trigger = WorkflowTrigger(trigger)
        for t in self.get_map(kind).transitions:
            if t.trigger == trigger and status in t.from_states:
                return t
        return None

    def can_apply(self, kind: WorkflowKind, status: str, trigger: WorkflowTrigger) -> bool:
        return self._find(kind, status, trigger) is not None

    def next_status(self, kind: WorkflowKind, status: str, trigger: WorkflowTrigger) -> str:
        transition = self._find(kind, status, trigger)
        if transition is None:
            raise InvalidTransition(kind, status, trigger)
        return transition.to_state

    def sources(self, kind: WorkflowKind, trigger: WorkflowTrigger) -> list[str]:
        """Every status the trigger can fire from."""
        trigger = WorkflowTrigger(trigger)
        return [
            fs for t in self.get_map(kind).transitions
            if t.trigger == trigger for fs in t.from_states
        ]

    def target(self, kind: WorkflowKind, trigger: WorkflowTrigger) -> str:
        """The status the trigger leads to (each trigger has one target per kind)."""
        trigger = WorkflowTrigger(trigger)
        for t in self.get_map(kind).transitions:
            if t.trigger == trigger:
                return t.to_state
        raise InvalidTransition(kind, "*", trigger)

    def available_triggers(self, kind: WorkflowKind, status: str) -> list[WorkflowTrigger]:
        return [t.trigger for t in self.get_map(kind).transitions if status in t.from_states]

    def is_terminal(self, kind: WorkflowKind, status: str) -> bool:
        return status in self.get_map(kind).terminal_states

    def active_status(self, kind: WorkflowKind) -> str:
        return self.get_map(kind).active_state

    def active_statuses(self) -> list[str]:
        """Pre-acceptance statuses across every kind (open, created)."""
        return sorted({m.active_state for m in self._maps.values()})

    def downstream(self, kind: WorkflowKind, status: str) -> set[str]:
        """Statuses reachable from `status` by any sequence of triggers (excluding itself)."""
        transitions = self.get_map(kind).transitions
        seen: set[str] = set()
        frontier = [status]
        while frontier:
            current = frontier.pop()
            for t in transitions:
                if current in t.from_states and t.to_state not in seen:
                    seen.add(t.to_state)
                    frontier.append(t.to_state)
        seen.discard(status)
        return seen
