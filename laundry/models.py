# laundry/models.py
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import CorruptRecordError


class JobStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PAID = "paid"
    CANCELLED = "cancelled"


class OnboardingState(str, Enum):
    CREATED = "created"  # Connect account exists, cannot receive transfers yet
    ACTIVE = "active"


class SettlementState(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python and in storage rows."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────────────────────────────────────────────────────────
# Records
# ──────────────────────────────────────────────────────────────────────────────
class Job(ApiModel):
    model_config = ConfigDict(frozen=True)

    id: int
    customer_name: str
    address: str
    notes: str
    price_cents: int = Field(ge=0)
    status: JobStatus
    washer_id: Optional[str]
    payment_reference: Optional[str]
    created_at: datetime
    customer_id: Optional[str] = None

    @model_validator(mode="after")
    def _lifecycle_fields_match_status(self) -> "Job":
        if self.status == JobStatus.PENDING and self.washer_id is not None:
            raise ValueError("a pending job cannot have a washer")
        if self.status in (JobStatus.ACCEPTED, JobStatus.PAID) and self.washer_id is None:
            raise ValueError(f"a {self.status.value} job must have a washer")
        if (self.status == JobStatus.PAID) != (self.payment_reference is not None):
            raise ValueError("payment reference is set exactly when the job is paid")
        return self


class JobDraft(BaseModel):
    customer_name: str
    address: str
    notes: str = ""
    price_cents: int = Field(ge=0)
    customer_id: Optional[str] = None


class JobTransition(ApiModel):
    job_id: int
    from_status: Optional[JobStatus]
    to_status: JobStatus
    actor_id: Optional[str] = None
    created_at: datetime


class WasherAccount(ApiModel):
    washer_id: str
    external_account_id: str
    onboarding_state: OnboardingState


class SettlementEvent(ApiModel):
    id: int
    job_id: int
    payment_reference: str
    amount_cents: int
    reason: str
    state: SettlementState = SettlementState.OPEN
    attempts: int = 0
    created_at: datetime
    updated_at: datetime


def load_job(record: Mapping[str, Any]) -> Job:
    """Build a Job from a stored row; anything incomplete or inconsistent is corrupt."""
    try:
        return Job.model_validate(dict(record))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "record"
        raise CorruptRecordError(
            f"stored job {record.get('id', '?')} rejected: {where}: {first.get('msg')}"
        ) from exc


# ──────────────────────────────────────────────────────────────────────────────
# Request bodies
# ──────────────────────────────────────────────────────────────────────────────
class JobCreate(ApiModel):
    customer_name: str
    address: str
    notes: Optional[str] = None


class AcceptJobIn(ApiModel):
    washer_id: str = Field(..., min_length=1)


class CancelJobIn(ApiModel):
    actor_id: str = Field(..., min_length=1)


class PayJobIn(ApiModel):
    payment_method_ref: str = Field(..., min_length=1)
    customer_ref: Optional[str] = None  # Stripe customer that saved the card


class WasherAccountIn(ApiModel):
    email: EmailStr


class CustomerEmailIn(ApiModel):
    email: EmailStr


# ──────────────────────────────────────────────────────────────────────────────
# Responses
# ──────────────────────────────────────────────────────────────────────────────
class JobOut(ApiModel):
    job: Job


class JobListOut(ApiModel):
    jobs: List[Job]


class TransitionListOut(ApiModel):
    transitions: List[JobTransition]


class PaymentOutcome(ApiModel):
    job: Job
    payment_reference: str


class WasherAccountOut(ApiModel):
    account: WasherAccount


class AccountLinkOut(ApiModel):
    url: str


class SetupIntentOut(ApiModel):
    client_secret: str
    customer_ref: str


class PortalSessionOut(ApiModel):
    url: str


class SettlementEventOut(ApiModel):
    event: SettlementEvent


class SettlementEventListOut(ApiModel):
    events: List[SettlementEvent]
