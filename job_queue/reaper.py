"""
Task Reaper — Reclaims tasks whose worker vanished mid-flight.

A task stays in `processing` only while one dispatcher owns it. If that
dispatcher crashes, nothing else would ever move the task again, so the
reaper treats `last_attempted_at` older than the visibility timeout as an
abandoned claim:

    retries left   → pending, retry_count + 1, due immediately
    exhausted      → failed

Both writes are conditional on the task still being processing and still
stale, so a slow-but-alive worker that finishes first wins.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable

from database.store_base import BaseStore
from models.schemas import TaskStatus, utcnow

logger = structlog.get_logger()

REAPED_ERROR = "visibility timeout exceeded"


class TaskReaper:
    """Requeues or fails tasks stuck in processing."""

    def __init__(
        self,
        store: BaseStore,
        visibility_timeout_s: int = 600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.visibility_timeout_s = visibility_timeout_s
        self._clock = clock

    async def reap(self, now: datetime = None) -> dict[str, int]:
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.visibility_timeout_s)
        candidates = await self.store.list_stale_tasks(cutoff)
        requeued = failed = 0

        for task in candidates:
            if task.retry_count < task.max_retries:
                if await self.store.reschedule_task(
                    task.id,
                    retry_count=task.retry_count + 1,
                    scheduled_for=now,
                    error_log=REAPED_ERROR,
                    stale_before=cutoff,
                ):
                    requeued += 1
                    logger.warning("task_reaped",
                                   task_id=task.id,
                                   task_type=task.task_type,
                                   last_attempted_at=task.last_attempted_at.isoformat(),
                                   retry_count=task.retry_count + 1)
            else:
                if await self.store.finish_task(
                    task.id, TaskStatus.FAILED.value,
                    completed_at=now,
                    result_json={"error": REAPED_ERROR},
                    error_log=REAPED_ERROR,
                    stale_before=cutoff,
                ):
                    failed += 1
                    logger.error("task_reaped_exhausted",
                                 task_id=task.id,
                                 task_type=task.task_type,
                                 retry_count=task.retry_count)

        return {"checked": len(candidates), "requeued": requeued, "failed": failed}
