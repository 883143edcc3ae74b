"""Tests for the job stores: in-memory and SQL (aiosqlite)."""

import asyncio

import pytest
import pytest_asyncio

from laundry.db import create_schema, make_engine, make_sessionmaker
from laundry.errors import NotFoundError, StoreConflict
from laundry.models import JobDraft, JobStatus, SettlementState
from laundry.reconciliation import SqlSettlementQueue
from laundry.store import InMemoryJobStore, SqlJobStore


def draft(name="Alice"):
    return JobDraft(customer_name=name, address="1 Main St", notes="", price_cents=1500)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryJobStore()
        return
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await create_schema(engine)
    yield SqlJobStore(make_sessionmaker(engine))
    await engine.dispose()


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await create_schema(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


class TestJobStore:
    @pytest.mark.asyncio
    async def test_insert_assigns_increasing_ids(self, any_store):
        a = await any_store.insert(draft("Alice"))
        b = await any_store.insert(draft("Bob"))

        assert b.id > a.id
        assert a.status == JobStatus.PENDING
        assert (await any_store.get_by_id(b.id)).customer_name == "Bob"

    @pytest.mark.asyncio
    async def test_get_missing(self, any_store):
        with pytest.raises(NotFoundError):
            await any_store.get_by_id(123)

    @pytest.mark.asyncio
    async def test_list_by_status_oldest_first(self, any_store):
        ids = [(await any_store.insert(draft(n))).id for n in ("A", "B", "C")]
        await any_store.conditional_update(ids[1], JobStatus.PENDING, {"status": JobStatus.CANCELLED})

        assert [j.id for j in await any_store.list_by_status(JobStatus.PENDING)] == [ids[0], ids[2]]
        assert [j.id for j in await any_store.list_by_status(JobStatus.CANCELLED)] == [ids[1]]

    @pytest.mark.asyncio
    async def test_conditional_update_applies_when_status_matches(self, any_store):
        job = await any_store.insert(draft())

        updated = await any_store.conditional_update(
            job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": "W1"}, actor_id="W1"
        )

        assert updated.status == JobStatus.ACCEPTED
        assert updated.washer_id == "W1"
        assert updated.price_cents == job.price_cents
        assert (await any_store.get_by_id(job.id)) == updated

    @pytest.mark.asyncio
    async def test_conditional_update_conflict(self, any_store):
        job = await any_store.insert(draft())
        await any_store.conditional_update(job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": "W1"})

        with pytest.raises(StoreConflict) as excinfo:
            await any_store.conditional_update(
                job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": "W2"}
            )

        assert excinfo.value.expected == "pending"
        assert excinfo.value.actual == "accepted"
        assert (await any_store.get_by_id(job.id)).washer_id == "W1"

    @pytest.mark.asyncio
    async def test_conditional_update_missing_job(self, any_store):
        with pytest.raises(NotFoundError):
            await any_store.conditional_update(5, JobStatus.PENDING, {"status": JobStatus.CANCELLED})

    @pytest.mark.asyncio
    async def test_update_must_set_status(self, any_store):
        job = await any_store.insert(draft())

        with pytest.raises(ValueError):
            await any_store.conditional_update(job.id, JobStatus.PENDING, {"washer_id": "W1"})
        with pytest.raises(ValueError):
            await any_store.conditional_update(
                job.id, JobStatus.PENDING, {"status": JobStatus.CANCELLED, "price_cents": 1}
            )

    @pytest.mark.asyncio
    async def test_transitions_are_logged(self, any_store):
        job = await any_store.insert(draft(), actor_id="customer-1")
        await any_store.conditional_update(
            job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": "W1"}, actor_id="W1"
        )
        await any_store.conditional_update(
            job.id, JobStatus.ACCEPTED, {"status": JobStatus.PAID, "payment_reference": "pi_1"}
        )

        history = await any_store.transitions(job.id)

        assert [(t.from_status, t.to_status, t.actor_id) for t in history] == [
            (None, JobStatus.PENDING, "customer-1"),
            (JobStatus.PENDING, JobStatus.ACCEPTED, "W1"),
            (JobStatus.ACCEPTED, JobStatus.PAID, None),
        ]

    @pytest.mark.asyncio
    async def test_transitions_for_missing_job(self, any_store):
        with pytest.raises(NotFoundError):
            await any_store.transitions(77)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_washer_cannot_be_replaced(self):
        store = InMemoryJobStore()
        job = await store.insert(draft())
        await store.conditional_update(job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": "W1"})

        with pytest.raises(ValueError):
            await store.conditional_update(
                job.id, JobStatus.ACCEPTED, {"status": JobStatus.PAID, "washer_id": "W2", "payment_reference": "pi"}
            )
        assert (await store.get_by_id(job.id)).status == JobStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_racing_updates_have_one_winner(self):
        store = InMemoryJobStore()
        job = await store.insert(draft())

        results = await asyncio.gather(
            *(
                store.conditional_update(
                    job.id, JobStatus.PENDING, {"status": JobStatus.ACCEPTED, "washer_id": f"W{i}"}
                )
                for i in range(5)
            ),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, StoreConflict) for r in results if isinstance(r, Exception))
        assert (await store.get_by_id(job.id)).washer_id == winners[0].washer_id


class TestSqlSettlementQueue:
    @pytest.mark.asyncio
    async def test_enqueue_list_update(self, sessions):
        queue = SqlSettlementQueue(sessions)

        event = await queue.enqueue(job_id=1, payment_reference="pi_1", amount_cents=1500, reason="cancelled")
        assert event.state == SettlementState.OPEN
        assert event.attempts == 0
        assert (await queue.find(1, "pi_1")).id == event.id
        assert await queue.find(1, "pi_2") is None

        updated = await queue.update(event.id, SettlementState.REFUNDED, 1)
        assert updated.state == SettlementState.REFUNDED
        assert await queue.list(SettlementState.OPEN) == []
        assert [e.id for e in await queue.list()] == [event.id]

    @pytest.mark.asyncio
    async def test_missing_event(self, sessions):
        queue = SqlSettlementQueue(sessions)

        with pytest.raises(NotFoundError):
            await queue.get(9)
        with pytest.raises(NotFoundError):
            await queue.update(9, SettlementState.RESOLVED, 1)

    @pytest.mark.asyncio
    async def test_enqueue_same_charge_twice(self, sessions):
        queue = SqlSettlementQueue(sessions)

        first = await queue.enqueue(job_id=1, payment_reference="pi_1", amount_cents=1500, reason="cancelled")
        second = await queue.enqueue(job_id=1, payment_reference="pi_1", amount_cents=1500, reason="store error")

        assert second.id == first.id
        assert second.reason == "cancelled"
        assert [e.id for e in await queue.list()] == [first.id]
