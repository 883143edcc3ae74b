# laundry/reconciliation.py
"""Settlement queue: charges the gateway accepted but the job store did not record.

Events are written before ``SettlementConflict`` reaches the caller and stay
``open`` until the reconciler records the payment on the job or an operator
issues a compensating refund.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import InvalidState, NotFoundError, StoreConflict, bounded
from .gateway import PaymentGateway
from .models import JobStatus, SettlementEvent, SettlementState
from .store import JobStore

logger = logging.getLogger("laundry.reconciliation")

RECONCILER_ACTOR = "reconciler"


def refund_idempotency_key(event_id: int) -> str:
    return f"laundry-settlement-{event_id}-refund"


class SettlementQueue(Protocol):
    async def enqueue(
        self, *, job_id: int, payment_reference: str, amount_cents: int, reason: str
    ) -> SettlementEvent:
        """Returns the event already queued for this job and reference, if any."""
        ...

    async def list(self, state: Optional[SettlementState] = None) -> List[SettlementEvent]:
        ...

    async def get(self, event_id: int) -> SettlementEvent:
        ...

    async def find(self, job_id: int, payment_reference: str) -> Optional[SettlementEvent]:
        ...

    async def update(self, event_id: int, state: SettlementState, attempts: int) -> SettlementEvent:
        ...


class InMemorySettlementQueue:
    """Process-local queue; pairs with the in-memory job store."""

    def __init__(self):
        self._events: Dict[int, SettlementEvent] = {}
        self._next_id = 1

    async def enqueue(
        self, *, job_id: int, payment_reference: str, amount_cents: int, reason: str
    ) -> SettlementEvent:
        existing = await self.find(job_id, payment_reference)
        if existing is not None:
            return existing
        now = datetime.now(timezone.utc)
        event = SettlementEvent(
            id=self._next_id,
            job_id=job_id,
            payment_reference=payment_reference,
            amount_cents=amount_cents,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
        self._events[event.id] = event
        self._next_id += 1
        return event

    async def list(self, state: Optional[SettlementState] = None) -> List[SettlementEvent]:
        return [e for e in self._events.values() if state is None or e.state == state]

    async def get(self, event_id: int) -> SettlementEvent:
        event = self._events.get(event_id)
        if event is None:
            raise NotFoundError(f"settlement event {event_id} not found")
        return event

    async def find(self, job_id: int, payment_reference: str) -> Optional[SettlementEvent]:
        for event in self._events.values():
            if event.job_id == job_id and event.payment_reference == payment_reference:
                return event
        return None

    async def update(self, event_id: int, state: SettlementState, attempts: int) -> SettlementEvent:
        event = await self.get(event_id)
        updated = event.model_copy(
            update={"state": state, "attempts": attempts, "updated_at": datetime.now(timezone.utc)}
        )
        self._events[event_id] = updated
        return updated


_EVENT_COLUMNS = "id, job_id, payment_reference, amount_cents, reason, state, attempts, created_at, updated_at"


class SqlSettlementQueue:
    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def enqueue(
        self, *, job_id: int, payment_reference: str, amount_cents: int, reason: str
    ) -> SettlementEvent:
        """Insert an open event, or return the one already queued for this charge."""
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                text(f"""
                    insert into settlement_events (job_id, payment_reference, amount_cents, reason, state, attempts)
                    values (:job_id, :payment_reference, :amount_cents, :reason, :state, 0)
                    on conflict (job_id, payment_reference) do nothing
                    returning {_EVENT_COLUMNS}
                """),
                {
                    "job_id": job_id,
                    "payment_reference": payment_reference,
                    "amount_cents": amount_cents,
                    "reason": reason,
                    "state": SettlementState.OPEN.value,
                },
            )
            row = result.mappings().first()
        if row is None:
            existing = await self.find(job_id, payment_reference)
            if existing is None:
                raise RuntimeError(f"settlement event for job {job_id} / {payment_reference} vanished")
            return existing
        return SettlementEvent.model_validate(dict(row))

    async def list(self, state: Optional[SettlementState] = None) -> List[SettlementEvent]:
        q = f"select {_EVENT_COLUMNS} from settlement_events"
        params = {}
        if state is not None:
            q += " where state = :state"
            params["state"] = state.value
        async with self._sessions() as session:
            result = await session.execute(text(q + " order by id asc"), params)
            rows = result.mappings().all()
        return [SettlementEvent.model_validate(dict(r)) for r in rows]

    async def get(self, event_id: int) -> SettlementEvent:
        async with self._sessions() as session:
            result = await session.execute(
                text(f"select {_EVENT_COLUMNS} from settlement_events where id = :id"), {"id": event_id}
            )
            row = result.mappings().first()
        if row is None:
            raise NotFoundError(f"settlement event {event_id} not found")
        return SettlementEvent.model_validate(dict(row))

    async def find(self, job_id: int, payment_reference: str) -> Optional[SettlementEvent]:
        async with self._sessions() as session:
            result = await session.execute(
                text(f"""
                    select {_EVENT_COLUMNS} from settlement_events
                    where job_id = :job_id and payment_reference = :ref
                    order by id asc
                """),
                {"job_id": job_id, "ref": payment_reference},
            )
            row = result.mappings().first()
        return SettlementEvent.model_validate(dict(row)) if row else None

    async def update(self, event_id: int, state: SettlementState, attempts: int) -> SettlementEvent:
        async with self._sessions() as session, session.begin():
            result = await session.execute(
                text(f"""
                    update settlement_events
                    set state = :state, attempts = :attempts, updated_at = current_timestamp
                    where id = :id
                    returning {_EVENT_COLUMNS}
                """),
                {"id": event_id, "state": state.value, "attempts": attempts},
            )
            row = result.mappings().first()
        if row is None:
            raise NotFoundError(f"settlement event {event_id} not found")
        return SettlementEvent.model_validate(dict(row))


class Reconciler:
    def __init__(
        self,
        store: JobStore,
        queue: SettlementQueue,
        gateway: PaymentGateway,
        gateway_timeout: float = 15.0,
    ):
        self._store = store
        self._queue = queue
        self._gateway = gateway
        self._gateway_timeout = gateway_timeout

    async def _retry_one(self, event: SettlementEvent) -> SettlementEvent:
        job = await self._store.get_by_id(event.job_id)

        if job.status == JobStatus.PAID and job.payment_reference == event.payment_reference:
            return await self._queue.update(event.id, SettlementState.RESOLVED, event.attempts + 1)

        if job.status == JobStatus.ACCEPTED:
            try:
                await self._store.conditional_update(
                    job.id,
                    JobStatus.ACCEPTED,
                    {"status": JobStatus.PAID, "payment_reference": event.payment_reference},
                    actor_id=RECONCILER_ACTOR,
                )
            except StoreConflict:
                logger.warning(f"Settlement {event.id}: job {job.id} changed during retry")
            else:
                logger.info(f"Settlement {event.id} resolved | job={job.id} | ref={event.payment_reference}")
                return await self._queue.update(event.id, SettlementState.RESOLVED, event.attempts + 1)

        logger.warning(
            f"Settlement {event.id} still open | job={job.id} status={job.status.value} "
            f"| ref={event.payment_reference} needs refund"
        )
        return await self._queue.update(event.id, SettlementState.OPEN, event.attempts + 1)

    async def retry_open(self) -> List[SettlementEvent]:
        """Try to record every open settlement on its job. Returns the updated events."""
        return [await self._retry_one(e) for e in await self._queue.list(SettlementState.OPEN)]

    async def refund(self, event_id: int) -> SettlementEvent:
        """Compensating refund for a charge that cannot be recorded on its job."""
        event = await self._queue.get(event_id)
        if event.state != SettlementState.OPEN:
            raise InvalidState(f"settlement event {event_id} is {event.state.value}")

        job = await self._store.get_by_id(event.job_id)
        if job.status == JobStatus.PAID and job.payment_reference == event.payment_reference:
            await self._queue.update(event.id, SettlementState.RESOLVED, event.attempts + 1)
            raise InvalidState(
                f"payment {event.payment_reference} is recorded on job {job.id}; settlement event {event_id} resolved"
            )
        if job.status == JobStatus.ACCEPTED:
            raise InvalidState(
                f"job {job.id} is still accepted; retry settlement event {event_id} instead of refunding"
            )

        refund_id = await bounded(
            self._gateway.refund(
                payment_reference=event.payment_reference,
                idempotency_key=refund_idempotency_key(event.id),
            ),
            self._gateway_timeout,
            "payment gateway",
        )
        logger.info(f"Settlement {event.id} refunded | ref={event.payment_reference} | refund={refund_id}")
        return await self._queue.update(event.id, SettlementState.REFUNDED, event.attempts + 1)
