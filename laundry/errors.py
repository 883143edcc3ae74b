# laundry/errors.py
"""Error taxonomy shared by the services and the HTTP layer.

Every error a caller can see derives from ``LaundryError`` and carries a
stable machine-readable ``kind`` plus the HTTP status it maps to. Routers
never build ``HTTPException`` for these; ``laundry.main`` installs one
handler that renders ``{"kind": ..., "detail": ...}``.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class LaundryError(Exception):
    kind = "LaundryError"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LaundryError):
    """Malformed input. Caller's fault, never retried."""

    kind = "ValidationError"
    status_code = 400


class Unauthenticated(LaundryError):
    kind = "Unauthenticated"
    status_code = 401


class Forbidden(LaundryError):
    kind = "Forbidden"
    status_code = 403


class NotFoundError(LaundryError):
    kind = "NotFound"
    status_code = 404


class AlreadyTaken(LaundryError):
    kind = "AlreadyTaken"
    status_code = 409


class InvalidTransition(LaundryError):
    kind = "InvalidTransition"
    status_code = 409


class InvalidState(LaundryError):
    kind = "InvalidState"
    status_code = 409


class WasherNotEligible(LaundryError):
    kind = "WasherNotEligible"
    status_code = 403


class PaymentFailed(LaundryError):
    """The gateway declined or could not complete the charge."""

    kind = "PaymentFailed"
    status_code = 402


class GatewayError(LaundryError):
    """A non-payment gateway call (onboarding, refunds) failed."""

    kind = "GatewayError"
    status_code = 502


class GatewayTimeout(LaundryError):
    kind = "GatewayTimeout"
    status_code = 504


class SettlementConflict(LaundryError):
    """Money moved at the gateway but the job could not record it.

    Always raised after the event was written to the settlement queue.
    """

    kind = "SettlementConflict"
    status_code = 500

    def __init__(self, message: str, event_id: Optional[int] = None):
        super().__init__(message)
        self.event_id = event_id


class CorruptRecordError(LaundryError):
    kind = "CorruptRecord"
    status_code = 500


class StoreConflict(Exception):
    """A conditional update found a status other than the expected one.

    Internal to the store/engine seam; services translate it.
    """

    def __init__(self, job_id: int, expected: str, actual: str):
        super().__init__(f"job {job_id}: expected status '{expected}', found '{actual}'")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


async def bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await an outbound call, failing with GatewayTimeout after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise GatewayTimeout(f"{what} did not respond within {timeout:g}s") from None
