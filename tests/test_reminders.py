"""Tests for the offer confirmation reminder task."""
import pytest

from job_queue.task_dispatcher import TaskDispatcher
from models.schemas import TaskStatus, WorkflowKind
from workflows.reminders import OFFER_REMINDER_TASK, build_offer_reminder


@pytest.fixture
def task_dispatcher(store, task_registry, lifecycle, clock):
    return TaskDispatcher(store, task_registry, clock=clock)


async def _offer_in(store, make_offer, status: str):
    offer = make_offer()
    await store.create_workflow(offer)
    if status != offer.status:
        await store.transition_workflow(WorkflowKind.OFFER, offer.id, [offer.status], status)
    return offer


class TestOfferReminder:
    @pytest.mark.asyncio
    async def test_reminds_offering_user(self, store, make_offer, task_dispatcher, gateway, clock):
        offer = await _offer_in(store, make_offer, "accepted")
        task = build_offer_reminder(offer, clock.now)
        await store.create_task(task)

        result = await task_dispatcher.process_task_by_id(task.id)

        assert result["outcome"] == "succeeded"
        [message] = gateway.to("offer_1")
        assert message["template"] == "intro_offer_confirmation_reminder"
        assert message["context"]["offer_id"] == offer.id
        stored = await store.get_task(task.id)
        assert stored.result_json["message_id"] == message["id"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["confirmed", "cancelled", "completed"])
    async def test_skips_when_offer_moved_on(self, store, make_offer, task_dispatcher, gateway, clock, status):
        offer = await _offer_in(store, make_offer, status)
        task = build_offer_reminder(offer, clock.now)
        await store.create_task(task)

        await task_dispatcher.dispatch_due()

        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result_json == {"skipped": status}
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_skips_missing_offer(self, store, make_offer, task_dispatcher, gateway, clock):
        offer = make_offer()        # never stored
        task = build_offer_reminder(offer, clock.now)
        await store.create_task(task)

        await task_dispatcher.dispatch_due()

        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result_json == {"skipped": "offer_not_found"}

    @pytest.mark.asyncio
    async def test_gateway_error_is_retried(self, store, make_offer, task_dispatcher, gateway, clock):
        offer = await _offer_in(store, make_offer, "accepted")
        task = build_offer_reminder(offer, clock.now)
        await store.create_task(task)
        gateway.fail_with = ConnectionError("gateway unreachable")

        stats = await task_dispatcher.dispatch_due()

        assert stats["retrying"] == 1
        stored = await store.get_task(task.id)
        assert stored.status == TaskStatus.PENDING
        assert stored.retry_count == 1
        assert stored.error_log == "gateway unreachable"

    def test_reminder_task_shape(self, make_offer, clock):
        offer = make_offer()
        task = build_offer_reminder(offer, clock.now)
        assert task.task_type == OFFER_REMINDER_TASK
        assert task.user_id == offer.offering_user_id
        assert task.context_type == "intro_offer"
        assert task.context_json["offer_id"] == offer.id
