# laundry/settlement.py
"""Payment coordinator: charge an accepted job exactly once and record it.

The gateway call and the ``accepted -> paid`` write form one logical step.
It runs shielded from request cancellation. If the write cannot happen
after the gateway took the money, a settlement event is queued before any
error leaves this module.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import (
    GatewayTimeout,
    InvalidState,
    PaymentFailed,
    SettlementConflict,
    StoreConflict,
    ValidationError,
    bounded,
)
from .gateway import PaymentGateway
from .models import Job, JobStatus, PaymentOutcome, SettlementEvent, SettlementState
from .reconciliation import SettlementQueue
from .store import JobStore

logger = logging.getLogger("laundry.settlement")


def charge_idempotency_key(job_id: int, payment_method_ref: str) -> str:
    """Same key for every attempt with one card, so a retried charge is not applied twice.

    Stripe replays a stored decline for a reused key, so a new card gets a new key.
    """
    return f"laundry-job-{job_id}-charge-{payment_method_ref}"


class PaymentCoordinator:
    def __init__(
        self,
        store: JobStore,
        gateway: PaymentGateway,
        queue: SettlementQueue,
        gateway_timeout: float = 15.0,
        store_timeout: float = 5.0,
    ):
        self._store = store
        self._gateway = gateway
        self._queue = queue
        self._gateway_timeout = gateway_timeout
        self._store_timeout = store_timeout

    async def charge_job(
        self, job_id: int, payment_method_ref: str, customer_ref: Optional[str] = None
    ) -> PaymentOutcome:
        if not payment_method_ref or not payment_method_ref.strip():
            raise ValidationError("paymentMethodRef is required")

        job = await bounded(self._store.get_by_id(job_id), self._store_timeout, "job store")
        if job.status != JobStatus.ACCEPTED:
            raise InvalidState(f"job {job_id} is {job.status.value}; only accepted jobs can be charged")

        return await asyncio.shield(self._authorize_and_record(job, payment_method_ref, customer_ref))

    async def settle_from_gateway(self, job_id: int, payment_reference: str, amount_cents: int) -> PaymentOutcome:
        """Record a charge the gateway reports as succeeded (webhook path).

        A charge that is already recorded is a no-op.
        """
        job = await bounded(self._store.get_by_id(job_id), self._store_timeout, "job store")
        if job.status == JobStatus.PAID and job.payment_reference == payment_reference:
            await self._resolve_queued(job_id, payment_reference)
            return PaymentOutcome(job=job, payment_reference=payment_reference)
        if job.status != JobStatus.ACCEPTED:
            event = await self._queue_settlement(
                job_id, payment_reference, amount_cents, f"gateway reported payment while job was {job.status.value}"
            )
            raise SettlementConflict(
                f"payment {payment_reference} for job {job_id} cannot be recorded; queued for reconciliation",
                event_id=event.id,
            )
        return await self._record(job_id, payment_reference, amount_cents)

    async def _authorize_and_record(
        self, job: Job, payment_method_ref: str, customer_ref: Optional[str]
    ) -> PaymentOutcome:
        key = charge_idempotency_key(job.id, payment_method_ref)
        logger.info(f"Charging job {job.id} | amount={job.price_cents} | key={key}")
        try:
            authorization = await bounded(
                self._gateway.authorize(
                    amount_cents=job.price_cents,
                    payment_method_ref=payment_method_ref,
                    idempotency_key=key,
                    description=f"Laundry job #{job.id}",
                    metadata={"job_id": str(job.id)},
                    customer=customer_ref,
                ),
                self._gateway_timeout,
                "payment gateway",
            )
        except (GatewayTimeout, PaymentFailed) as e:
            logger.warning(f"Charge for job {job.id} failed ({e.kind}): {e.message}; job stays accepted")
            raise

        return await self._record(job.id, authorization.reference, job.price_cents)

    async def _record(self, job_id: int, payment_reference: str, amount_cents: int) -> PaymentOutcome:
        try:
            paid = await bounded(
                self._store.conditional_update(
                    job_id,
                    JobStatus.ACCEPTED,
                    {"status": JobStatus.PAID, "payment_reference": payment_reference},
                ),
                self._store_timeout,
                "job store",
            )
        except StoreConflict as exc:
            try:
                current = await bounded(self._store.get_by_id(job_id), self._store_timeout, "job store")
            except Exception as lookup_exc:
                logger.warning(f"Could not re-read job {job_id} after conflict: {lookup_exc!r}")
                current = None
            if (
                current is not None
                and current.status == JobStatus.PAID
                and current.payment_reference == payment_reference
            ):
                # a concurrent call with the same idempotency key recorded it first
                await self._resolve_queued(job_id, payment_reference)
                return PaymentOutcome(job=current, payment_reference=payment_reference)
            event = await self._queue_settlement(
                job_id, payment_reference, amount_cents, f"job was {exc.actual} when the charge completed"
            )
            raise SettlementConflict(
                f"payment {payment_reference} for job {job_id} succeeded but the job is {exc.actual}; "
                "queued for reconciliation",
                event_id=event.id,
            ) from exc
        except (Exception, asyncio.CancelledError) as exc:
            await self._queue_settlement(
                job_id, payment_reference, amount_cents, f"could not record charge: {exc!r}"
            )
            raise

        logger.info(f"Job {job_id} paid | ref={payment_reference}")
        await self._resolve_queued(job_id, payment_reference)
        return PaymentOutcome(job=paid, payment_reference=payment_reference)

    async def _queue_settlement(
        self, job_id: int, payment_reference: str, amount_cents: int, reason: str
    ) -> SettlementEvent:
        try:
            event = await self._queue.enqueue(
                job_id=job_id,
                payment_reference=payment_reference,
                amount_cents=amount_cents,
                reason=reason,
            )
        except Exception:
            logger.critical(
                f"UNRECORDED PAYMENT job={job_id} ref={payment_reference} amount={amount_cents}: "
                f"settlement queue write failed ({reason})",
                exc_info=True,
            )
            raise
        logger.error(
            f"Settlement conflict queued | event={event.id} | job={job_id} | ref={payment_reference} | {reason}"
        )
        return event

    async def _resolve_queued(self, job_id: int, payment_reference: str) -> None:
        """Close an event queued by an earlier attempt whose write failed."""
        try:
            event = await self._queue.find(job_id, payment_reference)
            if event is None or event.state != SettlementState.OPEN:
                return
            await self._queue.update(event.id, SettlementState.RESOLVED, event.attempts + 1)
        except Exception:
            logger.warning(
                f"Job {job_id} paid with {payment_reference} but its settlement event could not be resolved",
                exc_info=True,
            )
            return
        logger.info(f"Settlement {event.id} resolved | job={job_id} | ref={payment_reference}")
