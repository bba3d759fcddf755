"""
Handler Registry — Maps an event or task type to the coroutine that handles it.

A registry is a plain value built once at startup and handed to a
dispatcher, so tests can run several independently configured
dispatchers side by side.

Handler contracts:
  - Event handler:  async def handle(event: Event) -> None
      raise to signal a retryable failure, NonRetryableError for a terminal one
  - Task handler:   async def handle(task: Task) -> TaskResult

Usage:
    events = HandlerRegistry("events")
    events.register("opportunity.accepted", lifecycle.on_accepted,
                    description="Accept an opportunity and pause its siblings")
    dispatcher = EventDispatcher(store, events)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = structlog.get_logger()

Handler = Callable[[Any], Awaitable[Any]]


@dataclass
class RegisteredHandler:
    handler_type: str
    handler: Handler
    description: str = ""


class HandlerRegistry:
    """Type → handler lookup with human-readable descriptions."""

    def __init__(self, name: str = "handlers"):
        self.name = name
        self._handlers: dict[str, RegisteredHandler] = {}

    # ── Registration ──────────────────────────────────

    def register(self, handler_type: str, handler: Handler, description: str = "") -> None:
        if not handler_type:
            raise ValueError("handler_type must be non-empty")
        if handler_type in self._handlers:
            logger.warning("handler_replaced", registry=self.name, handler_type=handler_type)
        self._handlers[handler_type] = RegisteredHandler(handler_type, handler, description)
        logger.info("handler_registered", registry=self.name, handler_type=handler_type)

    def unregister(self, handler_type: str) -> bool:
        return self._handlers.pop(handler_type, None) is not None

    # ── Lookup ────────────────────────────────────────

    def get(self, handler_type: str) -> Optional[Handler]:
        entry = self._handlers.get(handler_type)
        return entry.handler if entry else None

    def has(self, handler_type: str) -> bool:
        return handler_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def describe(self) -> list[dict[str, str]]:
        return [
            {"type": e.handler_type, "description": e.description}
            for e in sorted(self._handlers.values(), key=lambda e: e.handler_type)
        ]

    def __contains__(self, handler_type: str) -> bool:
        return self.has(handler_type)

    def __len__(self) -> int:
        return len(self._handlers)
