"""
Runtime — builds and owns every long-lived component of a worker process.

    store ──▶ event registry ──▶ EventDispatcher ──┐
          └─▶ task registry  ──▶ TaskDispatcher  ──┼──▶ PollingLoops
          └─▶ TaskReaper + priority expiry ────────┘
    IntroLifecycle registers into both registries; the messaging gateway
    is shared by the lifecycle and the reminder task.

Any number of replicas may run the same runtime against one database;
the store's conditional updates keep them from stepping on each other.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import Settings, get_settings
from database.store_base import BaseStore
from database.store_factory import create_store
from job_queue.event_dispatcher import EventDispatcher
from job_queue.poller import PollingLoop
from job_queue.reaper import TaskReaper
from job_queue.registry import HandlerRegistry
from job_queue.task_dispatcher import TaskDispatcher
from messaging.gateway import MessagingGateway, create_gateway
from workflows.credits import CreditLedger
from workflows.handlers import IntroLifecycle
from workflows.priority import PriorityProjection
from workflows.state_machine import WorkflowStateMachine

logger = structlog.get_logger()


class Runtime:

    def __init__(
        self,
        settings: Settings,
        store: BaseStore,
        gateway: MessagingGateway,
    ):
        self.settings = settings
        self.store = store
        self.gateway = gateway

        self.event_registry = HandlerRegistry("events")
        self.task_registry = HandlerRegistry("tasks")

        self.state_machine = WorkflowStateMachine()
        self.projection = PriorityProjection(
            store, default_ttl_days=settings.workflows.priority_expiry_days,
        )
        self.ledger = CreditLedger(store)
        self.lifecycle = IntroLifecycle(
            store,
            state_machine=self.state_machine,
            gateway=gateway,
            config=settings.workflows,
            projection=self.projection,
            ledger=self.ledger,
        )
        self.lifecycle.register(self.event_registry)
        self.lifecycle.register_tasks(self.task_registry)

        self.event_dispatcher = EventDispatcher(
            store,
            self.event_registry,
            max_retries=settings.events.max_retries,
            batch_size=settings.events.batch_size,
            worker_id=settings.worker_id,
            claim_lease_s=settings.events.claim_lease_s,
        )
        self.task_dispatcher = TaskDispatcher(
            store,
            self.task_registry,
            batch_size=settings.tasks.batch_size,
            initial_backoff_s=settings.tasks.initial_backoff_s,
        )
        self.reaper = TaskReaper(store, visibility_timeout_s=settings.tasks.visibility_timeout_s)

        self.loops: list[PollingLoop] = []
        if settings.events.enabled:
            self.loops.append(PollingLoop(
                "events", self.event_dispatcher.dispatch_batch, settings.events.poll_interval_s,
            ))
        if settings.tasks.enabled:
            self.loops.append(PollingLoop(
                "tasks", self.task_dispatcher.dispatch_due, settings.tasks.poll_interval_s,
            ))
            self.loops.append(PollingLoop(
                "maintenance", self.run_maintenance, settings.tasks.reaper_interval_s,
            ))

    # ── Maintenance ───────────────────────────────────────────

    async def run_maintenance(self) -> dict[str, Any]:
        """Reap abandoned tasks, then expire stale priority entries."""
        reaped = await self.reaper.reap()
        expired = await self.projection.expire_due()
        return {**reaped, "priorities_expired": expired}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        for loop in self.loops:
            await loop.start()
        logger.info("runtime_started",
                    worker_id=self.settings.worker_id,
                    store=type(self.store).__name__,
                    gateway=type(self.gateway).__name__,
                    loops=[loop.name for loop in self.loops])

    async def stop(self) -> None:
        for loop in self.loops:
            await loop.stop()
        await self.gateway.close()
        logger.info("runtime_stopped", worker_id=self.settings.worker_id)

    def health(self) -> dict[str, Any]:
        return {
            "worker_id": self.settings.worker_id,
            "events": self.event_dispatcher.health(),
            "tasks": self.task_dispatcher.health(),
            "loops": {loop.name: {"running": loop.running, "cycles": loop.cycles,
                                  "interval_s": loop.interval_s}
                      for loop in self.loops},
        }


def create_runtime(settings: Optional[Settings] = None, store: Optional[BaseStore] = None) -> Runtime:
    """Wire a runtime from settings. Pass `store` to share one across runtimes (tests)."""
    settings = settings or get_settings()
    if store is None:
        store = create_store({
            "store_backend": settings.database.store_backend,
            "url": settings.database.url,
        })
    gateway = create_gateway(settings.messaging, store)
    return Runtime(settings, store, gateway)
