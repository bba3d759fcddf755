"""
Tests for the EventDispatcher.

Covers:
  - Unknown event types (processed, no dead letter)
  - Retry bookkeeping and dead-letter escalation at max_retries
  - NonRetryableError short-circuit
  - Claim exclusivity between workers and lease takeover
  - Per-event failure isolation and created_at ordering
  - process_event_by_id, dead-letter replay, health
"""
import pytest
from datetime import timedelta

from job_queue.errors import NonRetryableError
from job_queue.event_dispatcher import EventDispatcher
from models.schemas import Event


@pytest.fixture
def dispatcher(store, event_registry, clock):
    return EventDispatcher(store, event_registry, max_retries=5, batch_size=20,
                           worker_id="worker-a", clock=clock)


class TestUnroutableEvents:
    @pytest.mark.asyncio
    async def test_unknown_type_is_processed_without_dead_letter(self, store, dispatcher):
        event = Event(event_type="contact.imported", payload={"count": 3})
        await store.append_event(event)

        stats = await dispatcher.dispatch_batch()

        assert stats["fetched"] == 1
        assert stats["unroutable"] == 1
        stored = await store.get_event(event.id)
        assert stored.processed is True
        assert stored.metadata.retry_count == 0
        assert await store.list_dead_letters() == []

    @pytest.mark.asyncio
    async def test_unroutable_counted_in_health(self, store, dispatcher):
        await store.append_event(Event(event_type="nobody.listens"))
        await dispatcher.dispatch_batch()
        health = dispatcher.health()
        assert health["unroutable_count"] == 1
        assert health["dead_letter_count"] == 0


class TestSuccessfulDelivery:
    @pytest.mark.asyncio
    async def test_handler_success_marks_processed(self, store, event_registry, dispatcher):
        seen = []

        async def handle(event):
            seen.append(event.payload["n"])

        event_registry.register("counter.bumped", handle)
        event = Event(event_type="counter.bumped", payload={"n": 7})
        await store.append_event(event)

        stats = await dispatcher.dispatch_batch()

        assert stats["succeeded"] == 1
        assert seen == [7]
        stored = await store.get_event(event.id)
        assert stored.processed is True
        assert stored.claimed_by is None
        assert stored.metadata.processed_by == "worker-a"
        assert stored.metadata.processed_at is not None

    @pytest.mark.asyncio
    async def test_processed_event_not_delivered_again(self, store, event_registry, dispatcher):
        calls = []

        async def handle(event):
            calls.append(event.id)

        event_registry.register("counter.bumped", handle)
        await store.append_event(Event(event_type="counter.bumped"))

        await dispatcher.dispatch_batch()
        stats = await dispatcher.dispatch_batch()

        assert stats["fetched"] == 0
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_events_delivered_oldest_first(self, store, event_registry, dispatcher, clock):
        order = []

        async def handle(event):
            order.append(event.payload["seq"])

        event_registry.register("seq.step", handle)
        # Appended newest first on purpose
        for seq in (3, 1, 2):
            await store.append_event(Event(
                event_type="seq.step",
                payload={"seq": seq},
                created_at=clock.now + timedelta(seconds=seq),
            ))

        await dispatcher.dispatch_batch()
        assert order == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_batch_size_limits_fetch(self, store, event_registry, clock):
        async def handle(event):
            pass

        event_registry.register("bulk.item", handle)
        for _ in range(5):
            await store.append_event(Event(event_type="bulk.item"))

        dispatcher = EventDispatcher(store, event_registry, batch_size=2, clock=clock)
        stats = await dispatcher.dispatch_batch()
        assert stats["fetched"] == 2
        assert stats["succeeded"] == 2
        assert len(await store.list_unprocessed_events()) == 3


class TestRetryAndDeadLetter:
    @pytest.mark.asyncio
    async def test_retry_exhaustion_writes_one_dead_letter(self, store, event_registry, dispatcher):
        calls = []

        async def always_fails(event):
            calls.append(event.id)
            raise RuntimeError("downstream unavailable")

        event_registry.register("opportunity.completed", always_fails)
        event = Event(event_type="opportunity.completed", payload={"entity_id": "opp_1"})
        await store.append_event(event)

        for attempt in range(1, 5):
            stats = await dispatcher.dispatch_batch()
            assert stats["retrying"] == 1
            stored = await store.get_event(event.id)
            assert stored.processed is False
            assert stored.claimed_by is None
            assert stored.metadata.retry_count == attempt
            assert stored.metadata.last_error == "downstream unavailable"

        stats = await dispatcher.dispatch_batch()
        assert stats["dead_lettered"] == 1

        stored = await store.get_event(event.id)
        assert stored.processed is True
        assert stored.metadata.retry_count == 5

        dead_letters = await store.list_dead_letters()
        assert len(dead_letters) == 1
        assert dead_letters[0].event_id == event.id
        assert dead_letters[0].retry_count == 5
        assert dead_letters[0].error_message == "downstream unavailable"
        assert dead_letters[0].payload == {"entity_id": "opp_1"}

        # Nothing left to pick up
        assert (await dispatcher.dispatch_batch())["fetched"] == 0
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_max_retries_is_configurable(self, store, event_registry, clock):
        async def always_fails(event):
            raise ValueError("bad")

        event_registry.register("flaky.thing", always_fails)
        await store.append_event(Event(event_type="flaky.thing"))
        dispatcher = EventDispatcher(store, event_registry, max_retries=2, clock=clock)

        assert (await dispatcher.dispatch_batch())["retrying"] == 1
        assert (await dispatcher.dispatch_batch())["dead_lettered"] == 1
        dead_letters = await store.list_dead_letters()
        assert [d.retry_count for d in dead_letters] == [2]

    @pytest.mark.asyncio
    async def test_non_retryable_error_dead_letters_immediately(self, store, event_registry, dispatcher):
        async def rejects(event):
            raise NonRetryableError("payload names no entity")

        event_registry.register("request.accepted", rejects)
        event = Event(event_type="request.accepted")
        await store.append_event(event)

        stats = await dispatcher.dispatch_batch()

        assert stats["dead_lettered"] == 1
        stored = await store.get_event(event.id)
        assert stored.processed is True
        assert stored.metadata.retry_count == 1
        dead_letters = await store.list_dead_letters()
        assert len(dead_letters) == 1
        assert dead_letters[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_metadata_keys_survive_retries(self, store, event_registry, dispatcher):
        async def fails(event):
            raise RuntimeError("try later")

        event_registry.register("trace.me", fails)
        event = Event(event_type="trace.me", metadata={"trace_id": "abc123"})
        await store.append_event(event)

        await dispatcher.dispatch_batch()
        stored = await store.get_event(event.id)
        assert stored.metadata.retry_count == 1
        assert stored.metadata.model_extra["trace_id"] == "abc123"

    @pytest.mark.asyncio
    async def test_failure_on_one_event_does_not_stop_batch(self, store, event_registry, dispatcher, clock):
        handled = []

        async def fails(event):
            raise RuntimeError("boom")

        async def works(event):
            handled.append(event.id)

        event_registry.register("a.fails", fails)
        event_registry.register("b.works", works)
        first = Event(event_type="a.fails", created_at=clock.now)
        second = Event(event_type="b.works", created_at=clock.now + timedelta(seconds=1))
        await store.append_event(first)
        await store.append_event(second)

        stats = await dispatcher.dispatch_batch()

        assert stats["retrying"] == 1
        assert stats["succeeded"] == 1
        assert handled == [second.id]


class TestClaims:
    @pytest.mark.asyncio
    async def test_claimed_event_is_skipped_by_other_worker(self, store, event_registry, clock):
        calls = []

        async def handle(event):
            calls.append(event.id)

        event_registry.register("intro.step", handle)
        event = Event(event_type="intro.step")
        await store.append_event(event)

        # worker-a holds the claim (handler still running)
        assert await store.claim_event(event.id, "worker-a", clock.now, 300) is not None

        other = EventDispatcher(store, event_registry, worker_id="worker-b", clock=clock)
        stats = await other.dispatch_batch()

        assert stats["skipped"] == 1
        assert calls == []

    @pytest.mark.asyncio
    async def test_expired_claim_can_be_taken_over(self, store, event_registry, clock):
        calls = []

        async def handle(event):
            calls.append(event.id)

        event_registry.register("intro.step", handle)
        event = Event(event_type="intro.step")
        await store.append_event(event)
        await store.claim_event(event.id, "worker-a", clock.now, 300)

        clock.advance(seconds=301)
        other = EventDispatcher(store, event_registry, worker_id="worker-b",
                                claim_lease_s=300, clock=clock)
        stats = await other.dispatch_batch()

        assert stats["succeeded"] == 1
        stored = await store.get_event(event.id)
        assert stored.metadata.processed_by == "worker-b"

    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, store, clock):
        event = Event(event_type="intro.step")
        await store.append_event(event)
        first = await store.claim_event(event.id, "worker-a", clock.now, 300)
        second = await store.claim_event(event.id, "worker-b", clock.now, 300)
        assert first is not None
        assert second is None


class TestProcessById:
    @pytest.mark.asyncio
    async def test_missing_event_raises_lookup_error(self, dispatcher):
        with pytest.raises(LookupError):
            await dispatcher.process_event_by_id("no-such-event")

    @pytest.mark.asyncio
    async def test_processed_event_raises_value_error(self, store, dispatcher):
        event = Event(event_type="contact.imported")
        await store.append_event(event)
        await dispatcher.dispatch_batch()
        with pytest.raises(ValueError):
            await dispatcher.process_event_by_id(event.id)

    @pytest.mark.asyncio
    async def test_process_single_event(self, store, event_registry, dispatcher):
        async def handle(event):
            pass

        event_registry.register("offer.confirmed", handle)
        event = Event(event_type="offer.confirmed")
        await store.append_event(event)

        result = await dispatcher.process_event_by_id(event.id)
        assert result == {"event_id": event.id, "event_type": "offer.confirmed", "outcome": "succeeded"}


class TestDeadLetterReplay:
    @pytest.mark.asyncio
    async def test_replay_appends_fresh_event(self, store, event_registry, dispatcher):
        broken = {"on": True}
        delivered = []

        async def handle(event):
            if broken["on"]:
                raise NonRetryableError("schema mismatch")
            delivered.append(event.payload)

        event_registry.register("request.completed", handle)
        original = Event(event_type="request.completed", aggregate_id="req_9",
                         aggregate_type="connection_request", payload={"entity_id": "req_9"})
        await store.append_event(original)
        await dispatcher.dispatch_batch()

        [dead_letter] = await store.list_dead_letters()
        broken["on"] = False
        replay = await dispatcher.replay_dead_letter(dead_letter.id)

        assert replay.id != original.id
        assert replay.metadata.replayed_from == original.id
        assert replay.created_by == "dead_letter_replay"
        assert replay.aggregate_id == "req_9"

        stats = await dispatcher.dispatch_batch()
        assert stats["succeeded"] == 1
        assert delivered == [{"entity_id": "req_9"}]
        # The dead letter itself is untouched
        assert len(await store.list_dead_letters()) == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_dead_letter(self, dispatcher):
        with pytest.raises(LookupError):
            await dispatcher.replay_dead_letter("missing")


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_counters(self, store, event_registry, dispatcher):
        async def ok(event):
            pass

        async def bad(event):
            raise RuntimeError("nope")

        event_registry.register("x.ok", ok)
        event_registry.register("x.bad", bad)
        await store.append_event(Event(event_type="x.ok"))
        await store.append_event(Event(event_type="x.bad"))
        await dispatcher.dispatch_batch()

        health = dispatcher.health()
        assert health["success_count"] == 1
        assert health["error_count"] == 1
        assert health["total_processed"] == 2
        assert health["worker_id"] == "worker-a"
        assert health["registered_event_types"] == ["x.bad", "x.ok"]
        assert health["last_processed_at"] is not None
