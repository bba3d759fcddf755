"""
Task Dispatcher — Runs due scheduled tasks through an explicit state machine.

    pending ──claim──▶ processing ──success──────────────▶ completed
       ▲                   │
       │                   ├──retryable, retries left──▶ pending (retry_count+1,
       └───────────────────┘                              scheduled_for = now + backoff)
                           └──terminal or exhausted────▶ failed

    backoff(n) = initial_backoff_s * 2**n   (n = retry_count before increment)

The claim and every write after it are conditional on the task's status,
so a task held by one worker (or already reaped) is never overwritten by
another. Each attempt leaves one row in the audit log.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from database.store_base import BaseStore
from job_queue.errors import NonRetryableError
from job_queue.registry import HandlerRegistry
from models.schemas import ActionLogEntry, Task, TaskResult, TaskStatus, utcnow

logger = structlog.get_logger()


def compute_backoff(retry_count: int, initial_backoff_s: int = 60) -> int:
    """Seconds to wait before the next attempt."""
    return initial_backoff_s * (2 ** retry_count)


async def schedule_task(
    store: BaseStore,
    task: Task,
    replace_pending: bool = False,
    same_context: bool = False,
) -> Task:
    """
    Insert a task. With replace_pending, every pending task with the same
    (user_id, task_type) is cancelled first, narrowed to the same context_id
    when same_context is set.
    """
    if replace_pending and task.user_id:
        cancelled = await store.cancel_pending_tasks(
            task.user_id, task.task_type,
            context_id=task.context_id if same_context else None,
        )
        if cancelled:
            logger.info("pending_tasks_replaced",
                        user_id=task.user_id,
                        task_type=task.task_type,
                        cancelled=cancelled)
    await store.create_task(task)
    logger.info("task_scheduled",
                task_id=task.id,
                task_type=task.task_type,
                user_id=task.user_id,
                scheduled_for=task.scheduled_for.isoformat(),
                priority=task.priority)
    return task


class TaskDispatcher:
    """Polls for due tasks and invokes the registered handler for each."""

    def __init__(
        self,
        store: BaseStore,
        registry: HandlerRegistry,
        batch_size: int = 10,
        initial_backoff_s: int = 60,
        agent_type: str = "task_processor",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.batch_size = batch_size
        self.initial_backoff_s = initial_backoff_s
        self.agent_type = agent_type
        self._clock = clock

        self.started_at = clock()
        self.last_processed_at: Optional[datetime] = None
        self._counters = {
            "tasks_processed": 0,
            "tasks_succeeded": 0,
            "tasks_failed": 0,
            "tasks_retried": 0,
        }

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch_due(self) -> dict[str, int]:
        """
        Single poll cycle. Returns counts:
        {"fetched", "succeeded", "retrying", "failed", "skipped", "discarded", "errors"}
        """
        stats = {"fetched": 0, "succeeded": 0, "retrying": 0, "failed": 0,
                 "skipped": 0, "discarded": 0, "errors": 0}

        candidates = await self.store.list_due_tasks(self._clock(), self.batch_size)
        stats["fetched"] = len(candidates)

        for candidate in candidates:
            try:
                task = await self.store.claim_task(candidate.id, self._clock())
                if task is None:
                    stats["skipped"] += 1
                    continue
                outcome = await self._execute(task)
                stats[outcome] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error("task_dispatch_error",
                             task_id=candidate.id,
                             task_type=candidate.task_type,
                             error=str(e),
                             exc_info=True)

        if stats["fetched"]:
            logger.info("task_batch_dispatched", **stats)
        return stats

    async def process_task_by_id(self, task_id: str) -> dict[str, Any]:
        """Run one pending task now, regardless of its scheduled_for."""
        task = await self.store.get_task(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            raise LookupError(f"Pending task {task_id} not found")

        claimed = await self.store.claim_task(task_id, self._clock())
        if claimed is None:
            raise LookupError(f"Pending task {task_id} not found")

        outcome = await self._execute(claimed)
        return {"task_id": task_id, "task_type": claimed.task_type, "outcome": outcome}

    def backoff_seconds(self, retry_count: int) -> int:
        return compute_backoff(retry_count, self.initial_backoff_s)

    # ── Execution ─────────────────────────────────────────────

    async def _execute(self, task: Task) -> str:
        started = time.monotonic()
        result = await self._invoke(task)
        latency_ms = int((time.monotonic() - started) * 1000)

        outcome = await self._record_result(task, result)
        await self._audit(task, result, latency_ms)

        self._counters["tasks_processed"] += 1
        self.last_processed_at = self._clock()
        if outcome == "succeeded":
            self._counters["tasks_succeeded"] += 1
        elif outcome == "failed":
            self._counters["tasks_failed"] += 1
        elif outcome == "retrying":
            self._counters["tasks_retried"] += 1
        return outcome

    async def _invoke(self, task: Task) -> TaskResult:
        handler = self.registry.get(task.task_type)
        if handler is None:
            logger.warning("task_handler_missing", task_id=task.id, task_type=task.task_type)
            return TaskResult(
                success=False,
                error=f"No handler registered for task type: {task.task_type}",
                should_retry=False,
            )

        try:
            result = await handler(task)
        except NonRetryableError as e:
            return TaskResult(success=False, error=str(e), should_retry=False)
        except Exception as e:
            logger.error("task_handler_error",
                         task_id=task.id,
                         task_type=task.task_type,
                         error=str(e),
                         exc_info=True)
            return TaskResult(success=False, error=str(e), should_retry=True)

        if isinstance(result, dict):
            result = TaskResult(**result)
        if not isinstance(result, TaskResult):
            logger.warning("task_handler_no_result",
                           task_id=task.id,
                           task_type=task.task_type,
                           returned=type(result).__name__)
            return TaskResult(success=False, error="handler returned no result", should_retry=False)
        return result

    async def _record_result(self, task: Task, result: TaskResult) -> str:
        now = self._clock()

        if result.success:
            written = await self.store.finish_task(
                task.id, TaskStatus.COMPLETED.value,
                completed_at=now,
                result_json=result.data or {"success": True},
            )
            outcome = "succeeded"

        elif result.should_retry and task.retry_count < task.max_retries:
            delay = self.backoff_seconds(task.retry_count)
            written = await self.store.reschedule_task(
                task.id,
                retry_count=task.retry_count + 1,
                scheduled_for=now + timedelta(seconds=delay),
                error_log=result.error,
            )
            outcome = "retrying"
            logger.warning("task_retry_scheduled",
                           task_id=task.id,
                           task_type=task.task_type,
                           retry_count=task.retry_count + 1,
                           max_retries=task.max_retries,
                           delay_s=delay,
                           error=result.error)

        else:
            written = await self.store.finish_task(
                task.id, TaskStatus.FAILED.value,
                completed_at=now,
                result_json={"error": result.error},
                error_log=result.error,
            )
            outcome = "failed"
            logger.error("task_failed",
                         task_id=task.id,
                         task_type=task.task_type,
                         retry_count=task.retry_count,
                         retryable=result.should_retry,
                         error=result.error)

        if not written:
            # Reaped (or otherwise moved) while the handler ran
            logger.warning("task_result_discarded", task_id=task.id, outcome=outcome)
            return "discarded"

        if outcome == "succeeded":
            logger.info("task_completed", task_id=task.id, task_type=task.task_type)
        return outcome

    async def _audit(self, task: Task, result: TaskResult, latency_ms: int) -> None:
        entry = ActionLogEntry(
            agent_type=self.agent_type,
            action_type=f"process_{task.task_type}",
            user_id=task.user_id,
            context_id=task.id,
            context_type="agent_task",
            latency_ms=latency_ms,
            input_data=task.context_json,
            output_data=result.data,
            error=None if result.success else result.error,
        )
        try:
            await self.store.log_action(entry)
        except Exception as e:
            logger.error("task_audit_failed", task_id=task.id, error=str(e))

    # ── Introspection ─────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        processed = self._counters["tasks_processed"]
        return {
            **self._counters,
            "success_rate": round(self._counters["tasks_succeeded"] / processed, 4) if processed else 0.0,
            "started_at": self.started_at.isoformat(),
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
            "batch_size": self.batch_size,
            "initial_backoff_s": self.initial_backoff_s,
            "registered_task_types": self.registry.types(),
        }
