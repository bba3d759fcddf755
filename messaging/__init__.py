"""
Messaging — boundary to the outbound messaging gateway.

The lifecycle only enqueues notifications; delivery, retries and quiet
hours belong to the gateway.
"""
from messaging.gateway import (
    MessagingGateway, EventLogGateway, HttpMessagingGateway, create_gateway,
    MESSAGE_SEND_REQUESTED,
)

__all__ = [
    "MessagingGateway", "EventLogGateway", "HttpMessagingGateway", "create_gateway",
    "MESSAGE_SEND_REQUESTED",
]
