"""
Tests for the store backends.

Every contract test runs against both InMemoryStore and SqlStore (on SQLite
for test portability), so the two stay interchangeable.

Covers:
  - Event claims, leases and release ownership
  - Dead letter uniqueness per event
  - Task claim / finish / reschedule compare-and-swap
  - Workflow transitions and subject lookups
  - Subject holds: exclusive take, guarded release, takeover of stale holds
  - Priority upsert and guarded status changes
  - Credit idempotency
  - The lifecycle end to end on SQL, including replicas accepting at once
  - Store factory and session URL translation
"""
import pytest
from contextlib import asynccontextmanager
from datetime import timedelta

from models.schemas import (
    CreditEvent, DeadLetterEvent, Event, EventMetadata, PriorityEntry,
    Task, TaskStatus, WorkflowKind, utcnow,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture(params=["memory", "sql"])
def open_store(request, tmp_path):
    """Returns an async context manager yielding a fresh store of each backend."""

    @asynccontextmanager
    async def _open():
        if request.param == "memory":
            from database.store_memory import InMemoryStore
            yield InMemoryStore()
            return

        from database.session import close_db, configure_engine, init_db
        from database.store import SqlStore
        configure_engine(f"sqlite:///{tmp_path}/introloop_test.db")
        await init_db()
        try:
            yield SqlStore()
        finally:
            await close_db()

    return _open


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class TestEventClaims:
    @pytest.mark.asyncio
    async def test_append_and_get(self, open_store):
        async with open_store() as store:
            event = Event(event_type="opportunity.created", aggregate_id="opp_1",
                          aggregate_type="intro_opportunity", payload={"entity_id": "opp_1"})
            await store.append_event(event)

            fetched = await store.get_event(event.id)
            assert fetched.event_type == "opportunity.created"
            assert fetched.payload == {"entity_id": "opp_1"}
            assert fetched.processed is False
            assert fetched.metadata.retry_count == 0

    @pytest.mark.asyncio
    async def test_unprocessed_in_creation_order(self, open_store):
        async with open_store() as store:
            base = utcnow()
            later = Event(event_type="b", created_at=base + timedelta(seconds=2))
            earlier = Event(event_type="a", created_at=base)
            await store.append_event(later)
            await store.append_event(earlier)

            pending = await store.list_unprocessed_events(limit=10)
            assert [e.event_type for e in pending] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_only_one_worker_claims(self, open_store):
        async with open_store() as store:
            event = Event(event_type="request.created")
            await store.append_event(event)
            now = utcnow()

            first = await store.claim_event(event.id, "worker-a", now, lease_s=300)
            second = await store.claim_event(event.id, "worker-b", now, lease_s=300)

            assert first is not None
            assert first.claimed_by == "worker-a"
            assert second is None

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken_over(self, open_store):
        async with open_store() as store:
            event = Event(event_type="request.created")
            await store.append_event(event)
            now = utcnow()
            await store.claim_event(event.id, "worker-a", now, lease_s=300)

            taken = await store.claim_event(event.id, "worker-b", now + timedelta(seconds=301), lease_s=300)
            assert taken is not None
            assert taken.claimed_by == "worker-b"

    @pytest.mark.asyncio
    async def test_release_requires_ownership(self, open_store):
        async with open_store() as store:
            event = Event(event_type="offer.accepted")
            await store.append_event(event)
            await store.claim_event(event.id, "worker-a", utcnow(), lease_s=300)

            meta = EventMetadata(retry_count=1, last_error="boom")
            assert await store.release_event(event.id, "worker-b", meta) is False
            assert await store.release_event(event.id, "worker-a", meta) is True

            stored = await store.get_event(event.id)
            assert stored.claimed_by is None
            assert stored.metadata.retry_count == 1
            assert stored.metadata.last_error == "boom"

    @pytest.mark.asyncio
    async def test_processed_event_is_final(self, open_store):
        async with open_store() as store:
            event = Event(event_type="offer.completed")
            await store.append_event(event)
            await store.claim_event(event.id, "worker-a", utcnow(), lease_s=300)

            assert await store.mark_event_processed(event.id, EventMetadata(processed_by="worker-a")) is True
            assert await store.mark_event_processed(event.id, EventMetadata()) is False
            assert await store.claim_event(event.id, "worker-b", utcnow(), lease_s=300) is None
            assert await store.list_unprocessed_events() == []
            assert (await store.get_event(event.id)).metadata.processed_by == "worker-a"


class TestDeadLetters:
    @pytest.mark.asyncio
    async def test_one_dead_letter_per_event(self, open_store):
        async with open_store() as store:
            first = await store.add_dead_letter(DeadLetterEvent(
                event_id="evt_1", event_type="offer.accepted", error_message="boom", retry_count=5))
            again = await store.add_dead_letter(DeadLetterEvent(
                event_id="evt_1", event_type="offer.accepted", error_message="boom", retry_count=6))

            assert again.id == first.id
            letters = await store.list_dead_letters()
            assert len(letters) == 1
            assert letters[0].retry_count == 5
            assert (await store.get_dead_letter(first.id)).event_id == "evt_1"


# ──────────────────────────────────────────────────────────────
#  Tasks
# ──────────────────────────────────────────────────────────────

class TestTaskClaims:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, open_store):
        async with open_store() as store:
            task = Task(task_type="re_engagement_check", user_id="u1")
            await store.create_task(task)
            now = utcnow()

            claimed = await store.claim_task(task.id, now)
            assert claimed.status == TaskStatus.PROCESSING
            assert await store.claim_task(task.id, now) is None

    @pytest.mark.asyncio
    async def test_due_tasks_by_priority_then_time(self, open_store):
        async with open_store() as store:
            now = utcnow()
            low = Task(task_type="t", priority="low", scheduled_for=now - timedelta(minutes=5))
            urgent = Task(task_type="t", priority="urgent", scheduled_for=now - timedelta(minutes=1))
            high_old = Task(task_type="t", priority="high", scheduled_for=now - timedelta(minutes=3))
            high_new = Task(task_type="t", priority="high", scheduled_for=now - timedelta(minutes=2))
            future = Task(task_type="t", priority="urgent", scheduled_for=now + timedelta(hours=1))
            for t in (low, urgent, high_old, high_new, future):
                await store.create_task(t)

            due = await store.list_due_tasks(now, limit=10)
            assert [t.id for t in due] == [urgent.id, high_old.id, high_new.id, low.id]

    @pytest.mark.asyncio
    async def test_finish_only_once(self, open_store):
        async with open_store() as store:
            task = Task(task_type="t")
            await store.create_task(task)
            now = utcnow()
            await store.claim_task(task.id, now)

            assert await store.finish_task(task.id, "completed", completed_at=now,
                                           result_json={"ok": True}) is True
            assert await store.finish_task(task.id, "failed", completed_at=now) is False

            stored = await store.get_task(task.id)
            assert stored.status == TaskStatus.COMPLETED
            assert stored.result_json == {"ok": True}

    @pytest.mark.asyncio
    async def test_reschedule_returns_task_to_pending(self, open_store):
        async with open_store() as store:
            task = Task(task_type="t")
            await store.create_task(task)
            now = utcnow()
            await store.claim_task(task.id, now)

            retry_at = now + timedelta(seconds=60)
            assert await store.reschedule_task(task.id, retry_count=1, scheduled_for=retry_at,
                                               error_log="timeout") is True

            stored = await store.get_task(task.id)
            assert stored.status == TaskStatus.PENDING
            assert stored.retry_count == 1
            assert stored.error_log == "timeout"
            assert await store.list_due_tasks(now) == []
            assert [t.id for t in await store.list_due_tasks(retry_at)] == [task.id]

    @pytest.mark.asyncio
    async def test_stale_tasks(self, open_store):
        async with open_store() as store:
            now = utcnow()
            stale = Task(task_type="t")
            fresh = Task(task_type="t")
            await store.create_task(stale)
            await store.create_task(fresh)
            await store.claim_task(stale.id, now - timedelta(minutes=20))
            await store.claim_task(fresh.id, now)

            found = await store.list_stale_tasks(now - timedelta(minutes=10))
            assert [t.id for t in found] == [stale.id]

    @pytest.mark.asyncio
    async def test_cancel_pending_by_context(self, open_store):
        async with open_store() as store:
            a = Task(task_type="reminder", user_id="u1", context_id="offer_a")
            b = Task(task_type="reminder", user_id="u1", context_id="offer_b")
            other = Task(task_type="digest", user_id="u1", context_id="offer_a")
            for t in (a, b, other):
                await store.create_task(t)

            assert await store.cancel_pending_tasks("u1", "reminder", context_id="offer_a") == 1
            assert (await store.get_task(a.id)).status == TaskStatus.CANCELLED
            assert (await store.get_task(b.id)).status == TaskStatus.PENDING
            assert (await store.get_task(other.id)).status == TaskStatus.PENDING


# ──────────────────────────────────────────────────────────────
#  Workflows, priorities, credits
# ──────────────────────────────────────────────────────────────

class TestWorkflowStorage:
    @pytest.mark.asyncio
    async def test_round_trip_keeps_variant_fields(self, open_store, make_request):
        async with open_store() as store:
            req = make_request(context={"message": "Would love an intro"})
            await store.create_workflow(req)

            fetched = await store.get_workflow(WorkflowKind.REQUEST, req.id)
            assert fetched.requestor_user_id == "req_1"
            assert fetched.introducee_user_id == "intro_1"
            assert fetched.context == {"message": "Would love an intro"}
            assert fetched.status == "open"
            assert await store.get_workflow(WorkflowKind.OFFER, req.id) is None

    @pytest.mark.asyncio
    async def test_transition_is_conditional(self, open_store, make_opportunity):
        async with open_store() as store:
            opp = make_opportunity()
            await store.create_workflow(opp)

            assert await store.transition_workflow(WorkflowKind.OPPORTUNITY, opp.id,
                                                   ["open"], "accepted") is True
            assert await store.transition_workflow(WorkflowKind.OPPORTUNITY, opp.id,
                                                   ["open"], "paused") is False
            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, opp.id)).status == "accepted"

    @pytest.mark.asyncio
    async def test_subject_lookup_spans_kinds(self, open_store, make_opportunity, make_request, make_offer):
        async with open_store() as store:
            opp = make_opportunity()
            req = make_request()
            offer = make_offer()
            elsewhere = make_opportunity(subject_id="subj_2")
            for e in (opp, req, offer, elsewhere):
                await store.create_workflow(e)
            await store.transition_workflow(WorkflowKind.REQUEST, req.id, ["open"], "accepted")

            all_ids = {e.id for e in await store.list_workflows_for_subject("subj_1")}
            assert all_ids == {opp.id, req.id, offer.id}

            held = await store.list_workflows_for_subject("subj_1", statuses=["accepted", "confirmed"])
            assert [e.id for e in held] == [req.id]


class TestSubjectHolds:
    @pytest.mark.asyncio
    async def test_take_is_exclusive(self, open_store, make_opportunity):
        async with open_store() as store:
            a, b = make_opportunity(connector="c1"), make_opportunity(connector="c2")
            for e in (a, b):
                await store.create_workflow(e)

            assert await store.take_subject(WorkflowKind.OPPORTUNITY, a.id, "subj_1",
                                            ["open"], "accepted") == "taken"
            assert await store.take_subject(WorkflowKind.OPPORTUNITY, b.id, "subj_1",
                                            ["open"], "accepted") == "held"

            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, a.id)).status == "accepted"
            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, b.id)).status == "open"
            assert await store.get_subject_holder("subj_1") == a.id

    @pytest.mark.asyncio
    async def test_moved_entity_takes_nothing(self, open_store, make_offer):
        async with open_store() as store:
            offer = make_offer()
            await store.create_workflow(offer)

            assert await store.take_subject(WorkflowKind.OFFER, offer.id, "subj_1",
                                            ["paused"], "accepted") == "moved"
            assert await store.get_subject_holder("subj_1") is None
            assert (await store.get_workflow(WorkflowKind.OFFER, offer.id)).status == "created"

    @pytest.mark.asyncio
    async def test_release_requires_holder(self, open_store, make_opportunity, make_request):
        async with open_store() as store:
            opp, req = make_opportunity(), make_request()
            for e in (opp, req):
                await store.create_workflow(e)
            await store.take_subject(WorkflowKind.OPPORTUNITY, opp.id, "subj_1", ["open"], "accepted")

            assert await store.release_subject("subj_1", req.id) is False
            assert await store.release_subject("subj_1", opp.id) is True
            assert await store.release_subject("subj_1", opp.id) is False
            assert await store.take_subject(WorkflowKind.REQUEST, req.id, "subj_1",
                                            ["open"], "accepted") == "taken"

    @pytest.mark.asyncio
    async def test_hold_left_by_finished_sibling_is_taken_over(self, open_store, make_opportunity):
        async with open_store() as store:
            a, b = make_opportunity(connector="c1"), make_opportunity(connector="c2")
            for e in (a, b):
                await store.create_workflow(e)
            await store.take_subject(WorkflowKind.OPPORTUNITY, a.id, "subj_1", ["open"], "accepted")
            await store.transition_workflow(WorkflowKind.OPPORTUNITY, a.id, ["accepted"], "cancelled")

            assert await store.take_subject(WorkflowKind.OPPORTUNITY, b.id, "subj_1",
                                            ["open"], "accepted") == "taken"
            assert await store.get_subject_holder("subj_1") == b.id
            assert (await store.stats())["subject_holds"] == 1


class TestPriorityStorage:
    @pytest.mark.asyncio
    async def test_upsert_keeps_one_row_per_key(self, open_store):
        async with open_store() as store:
            first = await store.upsert_priority(PriorityEntry(
                user_id="u1", item_type="intro_offer", item_id="o1", value_score=70.0))
            second = await store.upsert_priority(PriorityEntry(
                user_id="u1", item_type="intro_offer", item_id="o1", value_score=85.0))

            assert second.id == first.id
            rows = await store.list_priorities("u1", status=None)
            assert len(rows) == 1
            assert rows[0].value_score == 85.0

    @pytest.mark.asyncio
    async def test_guarded_status_change(self, open_store):
        async with open_store() as store:
            await store.upsert_priority(PriorityEntry(
                user_id="u1", item_type="intro_offer", item_id="o1", value_score=70.0))

            assert await store.set_priority_status("u1", "intro_offer", "o1", "actioned") is True
            assert await store.set_priority_status("u1", "intro_offer", "o1", "expired",
                                                   only_from=["active"]) is False
            assert await store.set_priority_status("u1", "intro_offer", "missing", "actioned") is False
            assert (await store.get_priority("u1", "intro_offer", "o1")).status == "actioned"

    @pytest.mark.asyncio
    async def test_expire_only_past_due_active(self, open_store):
        async with open_store() as store:
            now = utcnow()
            await store.upsert_priority(PriorityEntry(
                user_id="u1", item_type="t", item_id="old", value_score=1.0,
                expires_at=now - timedelta(hours=1)))
            await store.upsert_priority(PriorityEntry(
                user_id="u1", item_type="t", item_id="new", value_score=1.0,
                expires_at=now + timedelta(hours=1)))

            assert await store.expire_priorities(now) == 1
            assert [p.item_id for p in await store.list_priorities("u1")] == ["new"]


class TestCreditStorage:
    @pytest.mark.asyncio
    async def test_idempotency_key_is_unique(self, open_store):
        async with open_store() as store:
            assert await store.award_credits(CreditEvent(
                user_id="u1", amount=25, idempotency_key="opportunity_completed:opp_1")) is True
            assert await store.award_credits(CreditEvent(
                user_id="u1", amount=25, idempotency_key="opportunity_completed:opp_1")) is False
            assert await store.award_credits(CreditEvent(
                user_id="u1", amount=10, idempotency_key="request_completed:req_1")) is True

            assert await store.get_credit_balance("u1") == 35
            assert await store.get_credit_balance("nobody") == 0
            assert len(await store.list_credit_events("u1")) == 2


# ──────────────────────────────────────────────────────────────
#  Lifecycle end to end
# ──────────────────────────────────────────────────────────────

class TestLifecycleOnStore:
    @pytest.mark.asyncio
    async def test_accept_then_complete(self, open_store, gateway, make_opportunity, make_request):
        from job_queue.event_dispatcher import EventDispatcher
        from job_queue.registry import HandlerRegistry
        from workflows.handlers import IntroLifecycle

        async with open_store() as store:
            registry = HandlerRegistry("events")
            lifecycle = IntroLifecycle(store, gateway=gateway)
            lifecycle.register(registry)
            dispatcher = EventDispatcher(store, registry, worker_id="store-test")

            chosen = make_opportunity(connector="conn_a")
            rival = make_opportunity(connector="conn_b")
            peer = make_request()
            for entity in (chosen, rival, peer):
                await lifecycle.open_workflow(entity)
            await dispatcher.dispatch_batch()

            await lifecycle.emit(WorkflowKind.OPPORTUNITY, "accepted", chosen.id)
            await dispatcher.dispatch_batch()
            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, rival.id)).status == "paused"
            assert (await store.get_workflow(WorkflowKind.REQUEST, peer.id)).status == "paused"

            await lifecycle.emit(WorkflowKind.OPPORTUNITY, "completed", chosen.id)
            await lifecycle.emit(WorkflowKind.OPPORTUNITY, "completed", chosen.id)
            await dispatcher.dispatch_batch()

            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, chosen.id)).status == "completed"
            assert (await store.get_workflow(WorkflowKind.OPPORTUNITY, rival.id)).status == "cancelled"
            assert (await store.get_workflow(WorkflowKind.REQUEST, peer.id)).status == "cancelled"
            assert await store.get_credit_balance("conn_a") == 25
            assert (await store.get_priority("conn_b", "intro_opportunity", rival.id)).status == "cancelled"
            assert await store.list_dead_letters() == []

    @pytest.mark.asyncio
    async def test_replicas_accepting_siblings_leave_one_holder(self, open_store, gateway,
                                                                make_opportunity, make_offer):
        import asyncio
        from job_queue.event_dispatcher import EventDispatcher
        from job_queue.registry import HandlerRegistry
        from workflows.handlers import IntroLifecycle

        async with open_store() as store:
            registry = HandlerRegistry("events")
            lifecycle = IntroLifecycle(store, gateway=gateway)
            lifecycle.register(registry)
            first = EventDispatcher(store, registry, worker_id="replica-1")
            second = EventDispatcher(store, registry, worker_id="replica-2")

            opp, offer = make_opportunity(), make_offer()
            for entity in (opp, offer):
                await lifecycle.open_workflow(entity)
            await first.dispatch_batch()

            accept_opp = await lifecycle.emit(WorkflowKind.OPPORTUNITY, "accepted", opp.id)
            accept_offer = await lifecycle.emit(WorkflowKind.OFFER, "accepted", offer.id)
            await asyncio.gather(
                first.process_event_by_id(accept_opp.id),
                second.process_event_by_id(accept_offer.id),
            )

            result = [
                (await store.get_workflow(WorkflowKind.OPPORTUNITY, opp.id)).status,
                (await store.get_workflow(WorkflowKind.OFFER, offer.id)).status,
            ]
            assert sorted(result) == ["accepted", "paused"]
            winner = opp if result[0] == "accepted" else offer
            assert await store.get_subject_holder("subj_1") == winner.id
            assert await store.list_dead_letters() == []


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_create_memory_store(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStore
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryStore)

    def test_create_sql_store(self, tmp_path):
        from database.store_factory import create_store
        from database.store import SqlStore
        store = create_store({"store_backend": "sql", "url": f"sqlite:///{tmp_path}/f.db"})
        assert isinstance(store, SqlStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStore
        assert isinstance(create_store({}), InMemoryStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        s2 = get_store()
        assert s1 is s2


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    def test_postgresql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_postgres_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_mysql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("mysql://u:p@h/db") == "mysql+aiomysql://u:p@h/db"

    def test_sqlite_url(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async_url(self):
        from database.session import _to_async_url
        url = "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url(url) == url


class TestModelsPortability:
    def test_no_jsonb_anywhere(self):
        """JSON columns stay portable across PostgreSQL, MySQL and SQLite."""
        from database.models import Base
        for table in Base.metadata.tables.values():
            for col in table.columns:
                assert type(col.type).__name__ != "JSONB", f"{table.name}.{col.name} uses JSONB"

    def test_all_tables_defined(self):
        from database.models import Base
        assert set(Base.metadata.tables.keys()) == {
            "events", "event_dead_letters", "agent_tasks", "agent_actions_log",
            "intro_opportunities", "connection_requests", "intro_offers",
            "subject_holds", "user_priorities", "credit_events",
        }
