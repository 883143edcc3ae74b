# laundry/store.py
"""Job persistence.

The only mutation path after ``insert`` is ``conditional_update``: it
checks the job's current status and applies the change as one atomic step,
or raises ``StoreConflict``. Two callers racing on the same job can never
both win. Every successful write appends to the job's transition log in the
same step.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import NotFoundError, StoreConflict
from .models import Job, JobDraft, JobStatus, JobTransition, load_job

logger = logging.getLogger("laundry.store")

MUTABLE_FIELDS = frozenset({"status", "washer_id", "payment_reference"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _check_changes(changes: Mapping[str, Any]) -> None:
    if "status" not in changes:
        raise ValueError("a conditional update must set the status")
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"fields cannot be changed after creation: {sorted(unknown)}")


def apply_changes(job: Job, changes: Mapping[str, Any]) -> Job:
    """Return ``job`` with ``changes`` applied, re-checking the record invariants."""
    _check_changes(changes)
    if job.washer_id is not None and changes.get("washer_id", job.washer_id) != job.washer_id:
        raise ValueError(f"job {job.id}: washer is already set and cannot change")
    return Job.model_validate({**job.model_dump(), **changes})


class JobStore(Protocol):
    async def insert(self, draft: JobDraft, actor_id: Optional[str] = None) -> Job:
        ...

    async def get_by_id(self, job_id: int) -> Job:
        """Raises NotFoundError."""
        ...

    async def list_by_status(self, status: JobStatus) -> List[Job]:
        """Oldest first."""
        ...

    async def conditional_update(
        self,
        job_id: int,
        expected_status: JobStatus,
        changes: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> Job:
        """Raises NotFoundError or StoreConflict."""
        ...

    async def transitions(self, job_id: int) -> List[JobTransition]:
        ...


class InMemoryJobStore:
    """In-memory job store for tests and local development.

    Each job row has its own ``asyncio.Lock``; the status check and the write
    happen under it.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self._clock = clock
        self._jobs: Dict[int, Job] = {}
        self._locks: Dict[int, asyncio.Lock] = {}
        self._transitions: Dict[int, List[JobTransition]] = {}
        self._next_id = 1

    async def insert(self, draft: JobDraft, actor_id: Optional[str] = None) -> Job:
        job_id = self._next_id
        self._next_id += 1
        now = self._clock()
        job = Job(
            id=job_id,
            customer_name=draft.customer_name,
            address=draft.address,
            notes=draft.notes,
            price_cents=draft.price_cents,
            status=JobStatus.PENDING,
            washer_id=None,
            payment_reference=None,
            created_at=now,
            customer_id=draft.customer_id,
        )
        self._jobs[job_id] = job
        self._locks[job_id] = asyncio.Lock()
        self._transitions[job_id] = [
            JobTransition(
                job_id=job_id,
                from_status=None,
                to_status=JobStatus.PENDING,
                actor_id=actor_id,
                created_at=now,
            )
        ]
        return job

    async def get_by_id(self, job_id: int) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id} not found")
        return job

    async def list_by_status(self, status: JobStatus) -> List[Job]:
        jobs = [j for j in self._jobs.values() if j.status == status]
        jobs.sort(key=lambda j: (j.created_at, j.id))
        return jobs

    async def conditional_update(
        self,
        job_id: int,
        expected_status: JobStatus,
        changes: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> Job:
        lock = self._locks.get(job_id)
        if lock is None:
            raise NotFoundError(f"job {job_id} not found")
        async with lock:
            current = self._jobs[job_id]
            if current.status != expected_status:
                logger.warning(
                    f"Race on job {job_id}: expected status '{expected_status.value}', "
                    f"found '{current.status.value}'"
                )
                raise StoreConflict(job_id, expected_status.value, current.status.value)
            updated = apply_changes(current, changes)
            self._jobs[job_id] = updated
            self._transitions[job_id].append(
                JobTransition(
                    job_id=job_id,
                    from_status=current.status,
                    to_status=updated.status,
                    actor_id=actor_id,
                    created_at=self._clock(),
                )
            )
            return updated

    async def transitions(self, job_id: int) -> List[JobTransition]:
        if job_id not in self._jobs:
            raise NotFoundError(f"job {job_id} not found")
        return list(self._transitions[job_id])


_JOB_COLUMNS = (
    "id, customer_name, address, notes, price_cents, status, washer_id, payment_reference, created_at, customer_id"
)


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class SqlJobStore:
    """Job store over SQLAlchemy async sessions (Postgres in production).

    The conditional update is a single ``UPDATE ... WHERE id = :id AND
    status = :expected RETURNING ...``; the database serializes writers on
    the row.
    """

    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def _log_transition(
        self,
        session,
        job_id: int,
        from_status: Optional[JobStatus],
        to_status: JobStatus,
        actor_id: Optional[str],
    ) -> None:
        await session.execute(
            text("""
                insert into job_transitions (job_id, from_status, to_status, actor_id)
                values (:job_id, :from_status, :to_status, :actor_id)
            """),
            {
                "job_id": job_id,
                "from_status": _db_value(from_status),
                "to_status": _db_value(to_status),
                "actor_id": actor_id,
            },
        )

    async def insert(self, draft: JobDraft, actor_id: Optional[str] = None) -> Job:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                text(f"""
                    insert into jobs (customer_name, address, notes, price_cents, customer_id, status)
                    values (:customer_name, :address, :notes, :price_cents, :customer_id, :status)
                    returning {_JOB_COLUMNS}
                """),
                {**draft.model_dump(), "status": JobStatus.PENDING.value},
            )
            job = load_job(result.mappings().one())
            await self._log_transition(session, job.id, None, JobStatus.PENDING, actor_id)
        return job

    async def get_by_id(self, job_id: int) -> Job:
        async with self._sessions() as session:
            result = await session.execute(
                text(f"select {_JOB_COLUMNS} from jobs where id = :id"), {"id": job_id}
            )
            row = result.mappings().first()
        if row is None:
            raise NotFoundError(f"job {job_id} not found")
        return load_job(row)

    async def list_by_status(self, status: JobStatus) -> List[Job]:
        async with self._sessions() as session:
            result = await session.execute(
                text(f"""
                    select {_JOB_COLUMNS} from jobs
                    where status = :status
                    order by created_at asc, id asc
                """),
                {"status": status.value},
            )
            rows = result.mappings().all()
        return [load_job(r) for r in rows]

    async def conditional_update(
        self,
        job_id: int,
        expected_status: JobStatus,
        changes: Mapping[str, Any],
        actor_id: Optional[str] = None,
    ) -> Job:
        _check_changes(changes)
        params = {k: _db_value(v) for k, v in changes.items()}
        assignments = ", ".join(f"{k} = :{k}" for k in changes)
        guard = " and washer_id is null" if "washer_id" in changes else ""
        params.update({"id": job_id, "expected": expected_status.value})

        async with self._sessions() as session, session.begin():
            result = await session.execute(
                text(f"""
                    update jobs set {assignments}
                    where id = :id and status = :expected{guard}
                    returning {_JOB_COLUMNS}
                """),
                params,
            )
            row = result.mappings().first()
            if row is not None:
                # raising here rolls the update back
                job = load_job(row)
                await self._log_transition(session, job_id, expected_status, job.status, actor_id)
                return job

            current = await session.execute(
                text("select status from jobs where id = :id"), {"id": job_id}
            )
            actual = current.scalar_one_or_none()

        if actual is None:
            raise NotFoundError(f"job {job_id} not found")
        logger.warning(
            f"Race on job {job_id}: expected status '{expected_status.value}', found '{actual}'"
        )
        raise StoreConflict(job_id, expected_status.value, actual)

    async def transitions(self, job_id: int) -> List[JobTransition]:
        async with self._sessions() as session:
            exists = await session.execute(text("select id from jobs where id = :id"), {"id": job_id})
            if exists.scalar_one_or_none() is None:
                raise NotFoundError(f"job {job_id} not found")
            result = await session.execute(
                text("""
                    select job_id, from_status, to_status, actor_id, created_at
                    from job_transitions
                    where job_id = :job_id
                    order by created_at asc, id asc
                """),
                {"job_id": job_id},
            )
            rows = result.mappings().all()
        return [JobTransition.model_validate(dict(r)) for r in rows]
