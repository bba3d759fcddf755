"""
FastAPI Application — operational API for the Introloop backbone.

Provides:
- Health and store statistics
- Event log: append, trigger a batch, process one event, dead-letter replay
- Task queue: schedule, trigger a poll, process one task, run the reaper
- Workflows: open an introduction, append lifecycle events, inspect entities
- Per-user priorities and credit balances

The dispatch loops run in the background for the lifetime of the app; the
trigger endpoints run one cycle on demand alongside them.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from config.settings import get_settings
from core.runtime import create_runtime
from database.session import close_db, init_db
from models.schemas import (
    WORKFLOW_MODELS, Event, Task, TaskPriority, WorkflowKind, utcnow,
)
from job_queue.task_dispatcher import schedule_task

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

runtime = create_runtime()

LIFECYCLE_VERBS = ("accepted", "declined", "cancelled", "completed", "confirmed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    if settings.database.store_backend == "sql":
        await init_db()

    await runtime.start()
    logger.info("introloop_started",
                worker_id=settings.worker_id,
                store_backend=settings.database.store_backend,
                messaging_backend=settings.messaging.backend)
    yield

    await runtime.stop()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("introloop_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Introloop API",
    description="Event dispatcher, task queue and introduction lifecycle",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class AppendEventRequest(BaseModel):
    event_type: str
    aggregate_id: str = ""
    aggregate_type: str = ""
    payload: dict[str, Any] = {}
    created_by: str = "api"


class CreateTaskRequest(BaseModel):
    task_type: str
    agent_type: str = "system"
    user_id: Optional[str] = None
    context_id: Optional[str] = None
    context_type: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    delay_seconds: int = 0
    priority: TaskPriority = TaskPriority.MEDIUM
    max_retries: Optional[int] = None
    context_json: dict[str, Any] = {}
    replace_pending: bool = False
    same_context: bool = False


class CreateWorkflowRequest(BaseModel):
    subject_id: str
    bounty_credits: int = 0
    context: dict[str, Any] = {}
    connector_user_id: Optional[str] = None
    requestor_user_id: Optional[str] = None
    introducee_user_id: Optional[str] = None
    offering_user_id: Optional[str] = None


class WorkflowEventRequest(BaseModel):
    created_by: str = "api"
    payload: dict[str, Any] = {}


def _kind(kind: str) -> WorkflowKind:
    try:
        return WorkflowKind(kind)
    except ValueError:
        raise HTTPException(404, f"Unknown workflow kind: {kind}")


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    settings = runtime.settings
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        **runtime.health(),
        "registered_event_types": runtime.event_registry.types(),
        "registered_task_types": runtime.task_registry.types(),
        "config": {
            "store_backend": settings.database.store_backend,
            "messaging_backend": settings.messaging.backend,
            "event_poll_interval_s": settings.events.poll_interval_s,
            "task_poll_interval_s": settings.tasks.poll_interval_s,
            "visibility_timeout_s": settings.tasks.visibility_timeout_s,
        },
    }


@app.get("/api/v1/stats")
async def get_stats():
    return await runtime.store.stats()


# ══════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/events")
async def append_event(req: AppendEventRequest):
    event = Event(
        event_type=req.event_type,
        aggregate_id=req.aggregate_id,
        aggregate_type=req.aggregate_type,
        payload=req.payload,
        created_by=req.created_by,
    )
    await runtime.store.append_event(event)
    return {"status": "appended", "event_id": event.id, "event_type": event.event_type}


@app.post("/api/v1/events/process-batch")
async def process_event_batch():
    return await runtime.event_dispatcher.dispatch_batch()


@app.get("/api/v1/events/{event_id}")
async def get_event(event_id: str):
    event = await runtime.store.get_event(event_id)
    if not event:
        raise HTTPException(404, "Event not found")
    return event.model_dump(mode="json")


@app.post("/api/v1/events/{event_id}/process")
async def process_event(event_id: str):
    try:
        return await runtime.event_dispatcher.process_event_by_id(event_id)
    except LookupError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


@app.get("/api/v1/dead-letters")
async def list_dead_letters(limit: int = Query(100, le=500)):
    dead_letters = await runtime.store.list_dead_letters(limit=limit)
    return [dl.model_dump(mode="json") for dl in dead_letters]


@app.post("/api/v1/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(dead_letter_id: str):
    try:
        replay = await runtime.event_dispatcher.replay_dead_letter(dead_letter_id)
    except LookupError as e:
        raise HTTPException(404, str(e))
    return {"status": "replayed", "event_id": replay.id, "replayed_from": replay.metadata.replayed_from}


# ══════════════════════════════════════════════════════════════
#  TASKS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/tasks")
async def create_task(req: CreateTaskRequest):
    scheduled_for = req.scheduled_for or utcnow() + timedelta(seconds=req.delay_seconds)
    task = Task(
        task_type=req.task_type,
        agent_type=req.agent_type,
        user_id=req.user_id,
        context_id=req.context_id,
        context_type=req.context_type,
        scheduled_for=scheduled_for,
        priority=req.priority,
        max_retries=req.max_retries if req.max_retries is not None
        else runtime.settings.tasks.default_max_retries,
        context_json=req.context_json,
        created_by="api",
    )
    await schedule_task(runtime.store, task,
                        replace_pending=req.replace_pending,
                        same_context=req.same_context)
    return {"status": "scheduled", "task_id": task.id,
            "scheduled_for": task.scheduled_for.isoformat()}


@app.get("/api/v1/tasks")
async def list_tasks(
    status: str = None,
    user_id: str = None,
    task_type: str = None,
    limit: int = Query(50, le=200),
):
    tasks = await runtime.store.list_tasks(status=status, user_id=user_id,
                                           task_type=task_type, limit=limit)
    return [t.model_dump(mode="json") for t in tasks]


@app.post("/api/v1/tasks/trigger-poll")
async def trigger_task_poll():
    return await runtime.task_dispatcher.dispatch_due()


@app.post("/api/v1/tasks/reap")
async def reap_tasks():
    return await runtime.run_maintenance()


@app.get("/api/v1/tasks/{task_id}")
async def get_task(task_id: str):
    task = await runtime.store.get_task(task_id)
    if not task:
        raise HTTPException(404, "Task not found")
    return task.model_dump(mode="json")


@app.post("/api/v1/tasks/{task_id}/process")
async def process_task(task_id: str):
    try:
        return await runtime.task_dispatcher.process_task_by_id(task_id)
    except LookupError as e:
        raise HTTPException(404, str(e))


# ══════════════════════════════════════════════════════════════
#  WORKFLOWS
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/workflows/{kind}")
async def open_workflow(kind: str, req: CreateWorkflowRequest):
    workflow_kind = _kind(kind)
    fields = {k: v for k, v in req.model_dump().items() if v is not None}
    try:
        entity = WORKFLOW_MODELS[workflow_kind](**fields)
    except ValidationError as e:
        raise HTTPException(400, str(e))

    event = await runtime.lifecycle.open_workflow(entity, created_by="api")
    return {"status": "created", "entity_id": entity.id, "kind": workflow_kind.value,
            "event_id": event.id}


@app.get("/api/v1/workflows/{kind}/{entity_id}")
async def get_workflow(kind: str, entity_id: str):
    entity = await runtime.store.get_workflow(_kind(kind), entity_id)
    if not entity:
        raise HTTPException(404, "Workflow not found")
    return entity.model_dump(mode="json")


@app.post("/api/v1/workflows/{kind}/{entity_id}/{verb}")
async def emit_workflow_event(kind: str, entity_id: str, verb: str,
                              req: Optional[WorkflowEventRequest] = None):
    """Append `<kind>.<verb>`; the dispatcher applies it on its next cycle."""
    workflow_kind = _kind(kind)
    event_type = f"{workflow_kind.value}.{verb}"
    if verb not in LIFECYCLE_VERBS or not runtime.event_registry.has(event_type):
        raise HTTPException(400, f"Unsupported workflow event: {event_type}")
    if not await runtime.store.get_workflow(workflow_kind, entity_id):
        raise HTTPException(404, "Workflow not found")

    req = req or WorkflowEventRequest()
    event = await runtime.lifecycle.emit(workflow_kind, verb, entity_id,
                                         created_by=req.created_by, payload=req.payload)
    return {"status": "appended", "event_id": event.id, "event_type": event.event_type}


# ══════════════════════════════════════════════════════════════
#  USERS
# ══════════════════════════════════════════════════════════════

@app.get("/api/v1/users/{user_id}/priorities")
async def list_priorities(
    user_id: str,
    status: str = "active",
    limit: int = Query(50, le=200),
):
    entries = await runtime.projection.list_for_user(user_id, status=status, limit=limit)
    return [e.model_dump(mode="json") for e in entries]


@app.get("/api/v1/users/{user_id}/credits")
async def get_credits(user_id: str):
    events = await runtime.store.list_credit_events(user_id)
    return {
        "user_id": user_id,
        "balance": await runtime.ledger.balance(user_id),
        "events": [c.model_dump(mode="json") for c in events],
    }


# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
