"""Tests for the visibility-timeout TaskReaper."""
import pytest
from datetime import timedelta

from job_queue.reaper import REAPED_ERROR, TaskReaper
from models.schemas import TaskStatus


@pytest.fixture
def reaper(store, clock):
    return TaskReaper(store, visibility_timeout_s=600, clock=clock)


class TestTaskReaper:
    @pytest.mark.asyncio
    async def test_stale_task_requeued(self, store, reaper, make_task, clock):
        task = make_task()
        await store.create_task(task)
        await store.claim_task(task.id, clock.now)

        now = clock.advance(seconds=601)
        result = await reaper.reap()

        assert result == {"checked": 1, "requeued": 1, "failed": 0}
        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.retry_count == 1
        assert stored.scheduled_for == now
        assert stored.error_log == REAPED_ERROR

    @pytest.mark.asyncio
    async def test_recent_processing_task_left_alone(self, store, reaper, make_task, clock):
        task = make_task()
        await store.create_task(task)
        await store.claim_task(task.id, clock.now)

        clock.advance(seconds=599)
        result = await reaper.reap()

        assert result["checked"] == 0
        assert (await store.get_task(task.id)).status == TaskStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_exhausted_task_failed(self, store, reaper, make_task, clock):
        task = make_task(retry_count=3, max_retries=3)
        await store.create_task(task)
        await store.claim_task(task.id, clock.now)

        clock.advance(minutes=15)
        result = await reaper.reap()

        assert result["failed"] == 1
        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.result_json == {"error": REAPED_ERROR}

    @pytest.mark.asyncio
    async def test_pending_and_completed_tasks_ignored(self, store, reaper, make_task, clock):
        pending = make_task()
        await store.create_task(pending)
        done = make_task(user_id="user_2")
        await store.create_task(done)
        await store.claim_task(done.id, clock.now)
        await store.finish_task(done.id, TaskStatus.COMPLETED.value, completed_at=clock.now)

        clock.advance(hours=1)
        assert (await reaper.reap())["checked"] == 0
        assert (await store.get_task(pending.id)).status == TaskStatus.PENDING
        assert (await store.get_task(done.id)).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_reap_does_not_override_fresh_claim(self, store, make_task, clock):
        """A task re-claimed after the staleness scan is not touched by the conditional write."""
        task = make_task()
        await store.create_task(task)
        await store.claim_task(task.id, clock.now)
        cutoff = clock.now + timedelta(seconds=1)

        # Another worker finishes and a new attempt claims it again later
        await store.reschedule_task(task.id, retry_count=1, scheduled_for=clock.now)
        await store.claim_task(task.id, clock.advance(seconds=5))

        written = await store.reschedule_task(task.id, retry_count=2, scheduled_for=clock.now,
                                              error_log=REAPED_ERROR, stale_before=cutoff)
        assert written is False
        assert (await store.get_task(task.id)).retry_count == 1

    @pytest.mark.asyncio
    async def test_reaped_task_dispatched_again(self, store, task_registry, reaper, make_task, clock):
        from job_queue.task_dispatcher import TaskDispatcher
        from models.schemas import TaskResult

        async def handle(task):
            return TaskResult(success=True)

        task_registry.register("re_engagement_check", handle)
        task = make_task()
        await store.create_task(task)
        await store.claim_task(task.id, clock.now)

        clock.advance(minutes=11)
        await reaper.reap()
        dispatcher = TaskDispatcher(store, task_registry, clock=clock)
        stats = await dispatcher.dispatch_due()

        assert stats["succeeded"] == 1
        assert (await store.get_task(task.id)).status == TaskStatus.COMPLETED
