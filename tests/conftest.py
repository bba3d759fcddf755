"""Shared test fixtures for Introloop."""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from config.settings import reset_settings
from database.store_factory import reset_store
from database.store_memory import InMemoryStore
from job_queue.registry import HandlerRegistry
from messaging.gateway import MessagingGateway
from models.schemas import (
    ConnectionRequest, IntroOffer, IntroOpportunity, Task,
)
from workflows.handlers import IntroLifecycle


class FakeClock:
    """Deterministic clock; call it like utcnow()."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingGateway(MessagingGateway):
    """Keeps every enqueued message in memory; can be told to fail."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Exception = None

    async def enqueue(self, user_id, content, template="", context=None,
                      priority="normal", can_delay=True) -> str:
        if self.fail_with:
            raise self.fail_with
        message_id = f"msg_{len(self.sent) + 1}"
        self.sent.append({
            "id": message_id,
            "user_id": user_id,
            "content": content,
            "template": template,
            "context": context or {},
        })
        return message_id

    def to(self, user_id: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["user_id"] == user_id]


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def event_registry() -> HandlerRegistry:
    return HandlerRegistry("events")


@pytest.fixture
def task_registry() -> HandlerRegistry:
    return HandlerRegistry("tasks")


@pytest.fixture
def lifecycle(store, gateway, event_registry, task_registry) -> IntroLifecycle:
    lc = IntroLifecycle(store, gateway=gateway)
    lc.register(event_registry)
    lc.register_tasks(task_registry)
    return lc


# ──────────────────────────────────────────────────────────────
#  Entity builders
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def make_opportunity():
    def _make(subject_id="subj_1", connector="conn_1", bounty=25, **kwargs):
        return IntroOpportunity(subject_id=subject_id, connector_user_id=connector,
                                bounty_credits=bounty, **kwargs)
    return _make


@pytest.fixture
def make_request():
    def _make(subject_id="subj_1", requestor="req_1", introducee="intro_1", bounty=10, **kwargs):
        return ConnectionRequest(subject_id=subject_id, requestor_user_id=requestor,
                                 introducee_user_id=introducee, bounty_credits=bounty, **kwargs)
    return _make


@pytest.fixture
def make_offer():
    def _make(subject_id="subj_1", offering="offer_1", introducee="intro_1", bounty=40, **kwargs):
        return IntroOffer(subject_id=subject_id, offering_user_id=offering,
                          introducee_user_id=introducee, bounty_credits=bounty, **kwargs)
    return _make


@pytest.fixture
def make_task(clock):
    def _make(task_type="re_engagement_check", **kwargs):
        kwargs.setdefault("user_id", "user_1")
        kwargs.setdefault("scheduled_for", clock.now)
        return Task(task_type=task_type, **kwargs)
    return _make
