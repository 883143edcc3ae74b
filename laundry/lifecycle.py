# laundry/lifecycle.py
"""Job lifecycle engine.

The only code allowed to change a job's status. Legal moves:

    pending -> accepted -> paid
    pending | accepted -> cancelled

Every move is a ``conditional_update`` against the store's current row,
never a write based on a copy read earlier.
"""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, List, Optional, Protocol

from .errors import (
    AlreadyTaken,
    InvalidTransition,
    NotFoundError,
    StoreConflict,
    ValidationError,
    WasherNotEligible,
    bounded,
)
from .models import Job, JobDraft, JobStatus, JobTransition, OnboardingState
from .store import JobStore
from .washers import WasherAccountRegistry

logger = logging.getLogger("laundry.lifecycle")

VALID_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.ACCEPTED, JobStatus.CANCELLED}),
    JobStatus.ACCEPTED: frozenset({JobStatus.PAID, JobStatus.CANCELLED}),
    JobStatus.PAID: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

CANCEL_ATTEMPTS = 3


def can_transition(from_status: JobStatus, to_status: JobStatus) -> bool:
    return to_status in VALID_TRANSITIONS[from_status]


class PricingPolicy(Protocol):
    def price_cents(self, customer_name: str, address: str, notes: str) -> int:
        ...


class FlatRatePricing:
    def __init__(self, cents: int = 1500):
        if cents < 0:
            raise ValueError("flat rate must be non-negative")
        self.cents = cents

    def price_cents(self, customer_name: str, address: str, notes: str) -> int:
        return self.cents


class LifecycleEngine:
    def __init__(
        self,
        store: JobStore,
        registry: WasherAccountRegistry,
        pricing: Optional[PricingPolicy] = None,
        store_timeout: float = 5.0,
        require_active_washer: bool = True,
    ):
        self._store = store
        self._registry = registry
        self._pricing = pricing or FlatRatePricing()
        self._timeout = store_timeout
        self._require_active_washer = require_active_washer

    async def create_job(
        self,
        customer_name: str,
        address: str,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Job:
        customer_name = (customer_name or "").strip()
        address = (address or "").strip()
        if not customer_name or not address:
            raise ValidationError("customerName and address are required")
        notes = notes or ""

        price = self._pricing.price_cents(customer_name, address, notes)
        if price < 0:
            raise ValueError(f"pricing policy returned a negative price: {price}")

        draft = JobDraft(
            customer_name=customer_name, address=address, notes=notes, price_cents=price, customer_id=actor_id
        )
        job = await bounded(self._store.insert(draft, actor_id=actor_id), self._timeout, "job store")
        logger.info(f"Job created | id={job.id} | price_cents={job.price_cents}")
        return job

    async def get_job(self, job_id: int) -> Job:
        return await bounded(self._store.get_by_id(job_id), self._timeout, "job store")

    async def list_jobs(self, status: JobStatus = JobStatus.PENDING) -> List[Job]:
        return await bounded(self._store.list_by_status(status), self._timeout, "job store")

    async def job_history(self, job_id: int) -> List[JobTransition]:
        return await bounded(self._store.transitions(job_id), self._timeout, "job store")

    async def _check_washer(self, washer_id: str) -> None:
        if not self._require_active_washer:
            return
        try:
            state = await bounded(
                self._registry.get_onboarding_state(washer_id), self._timeout, "washer registry"
            )
        except NotFoundError:
            raise WasherNotEligible(f"washer {washer_id} has no payout account") from None
        if state != OnboardingState.ACTIVE:
            raise WasherNotEligible(f"washer {washer_id} has not finished payout onboarding")

    async def accept_job(self, job_id: int, washer_id: str) -> Job:
        if not washer_id or not washer_id.strip():
            raise ValidationError("washerId is required")

        job = await self.get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise AlreadyTaken(f"job {job_id} is already {job.status.value}")

        await self._check_washer(washer_id)

        try:
            accepted = await bounded(
                self._store.conditional_update(
                    job_id,
                    JobStatus.PENDING,
                    {"status": JobStatus.ACCEPTED, "washer_id": washer_id},
                    actor_id=washer_id,
                ),
                self._timeout,
                "job store",
            )
        except StoreConflict as exc:
            raise AlreadyTaken(f"job {job_id} is already {exc.actual}") from exc

        logger.info(f"Job accepted | id={job_id} | washer={washer_id}")
        return accepted

    async def cancel_job(self, job_id: int, actor_id: str) -> Job:
        for _ in range(CANCEL_ATTEMPTS):
            job = await self.get_job(job_id)
            if not can_transition(job.status, JobStatus.CANCELLED):
                raise InvalidTransition(f"job {job_id} is {job.status.value} and cannot be cancelled")
            try:
                cancelled = await bounded(
                    self._store.conditional_update(
                        job_id, job.status, {"status": JobStatus.CANCELLED}, actor_id=actor_id
                    ),
                    self._timeout,
                    "job store",
                )
            except StoreConflict:
                # status moved under us; re-read and decide again
                continue
            logger.info(f"Job cancelled | id={job_id} | from={job.status.value} | actor={actor_id}")
            return cancelled

        raise InvalidTransition(f"job {job_id} kept changing while cancelling; try again")
