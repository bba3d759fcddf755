"""
Messaging Gateway — enqueue an outbound notification for a user.

Implementations:
  - EventLogGateway       appends a `message.send.requested` event to the
                          durable log; the messaging service consumes it
  - HttpMessagingGateway  POSTs to an external gateway's /messages endpoint

Both take `{user_id, content}` and return an id for the queued message.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import MessagingConfig, get_settings
from database.store_base import BaseStore
from models.schemas import Event

logger = structlog.get_logger()

MESSAGE_SEND_REQUESTED = "message.send.requested"
DEFAULT_AGENT_ID = "agent_of_humans"


class MessagingGateway(abc.ABC):
    """Abstract base for outbound notification sinks."""

    @abc.abstractmethod
    async def enqueue(
        self,
        user_id: str,
        content: str,
        template: str = "",
        context: dict[str, Any] = None,
        priority: str = "normal",
        can_delay: bool = True,
    ) -> str:
        """Queue one message for user_id. Raises if the message could not be queued."""
        ...

    async def close(self) -> None:
        pass


class EventLogGateway(MessagingGateway):
    """Writes the request into the same durable log the dispatchers read."""

    def __init__(self, store: BaseStore, agent_id: str = DEFAULT_AGENT_ID):
        self.store = store
        self.agent_id = agent_id

    async def enqueue(
        self,
        user_id: str,
        content: str,
        template: str = "",
        context: dict[str, Any] = None,
        priority: str = "normal",
        can_delay: bool = True,
    ) -> str:
        event = Event(
            event_type=MESSAGE_SEND_REQUESTED,
            aggregate_id=user_id,
            aggregate_type="user",
            payload={
                "userId": user_id,
                "agentId": self.agent_id,
                "messageData": {
                    "template": template,
                    "content": content,
                    "context": context or {},
                },
                "priority": priority,
                "canDelay": can_delay,
            },
            created_by=self.agent_id,
        )
        await self.store.append_event(event)
        logger.info("message_enqueued", user_id=user_id, template=template, event_id=event.id)
        return event.id


class HttpMessagingGateway(MessagingGateway):
    """
    Hands messages to an external gateway over HTTP.
    Retries transient failures; the last error propagates to the caller.
    """

    def __init__(self, config: MessagingConfig = None, agent_id: str = DEFAULT_AGENT_ID):
        self.config = config or get_settings().messaging
        self.agent_id = agent_id
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_s,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10), reraise=True)
    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        response = await client.post(path, json=body)
        response.raise_for_status()
        return response.json() if response.content else {}

    async def enqueue(
        self,
        user_id: str,
        content: str,
        template: str = "",
        context: dict[str, Any] = None,
        priority: str = "normal",
        can_delay: bool = True,
    ) -> str:
        result = await self._post("/messages", {
            "user_id": user_id,
            "agent_id": self.agent_id,
            "content": content,
            "template": template,
            "context": context or {},
            "priority": priority,
            "can_delay": can_delay,
        })
        message_id = str(result.get("id", result.get("message_id", "")))
        logger.info("message_enqueued", user_id=user_id, template=template, message_id=message_id)
        return message_id

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


def create_gateway(config: MessagingConfig = None, store: BaseStore = None) -> MessagingGateway:
    """Factory function to create the configured gateway."""
    config = config or get_settings().messaging
    if config.backend == "http" and config.base_url:
        return HttpMessagingGateway(config)
    if config.backend == "http":
        logger.warning("using_event_log_gateway", reason="messaging base_url empty")
    if store is None:
        raise ValueError("EventLogGateway needs a store")
    return EventLogGateway(store)
