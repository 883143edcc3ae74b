# laundry/payments.py
import logging

from fastapi import APIRouter, Depends

from .auth import Identity
from .deps import get_coordinator, require_role
from .models import PaymentOutcome, PayJobIn
from .settlement import PaymentCoordinator

router = APIRouter(prefix="/jobs", tags=["payments"])
logger = logging.getLogger("laundry.payments")


@router.post("/{job_id}/pay", response_model=PaymentOutcome)
async def pay_job(
    job_id: int,
    payload: PayJobIn,
    coordinator: PaymentCoordinator = Depends(get_coordinator),
    user: Identity = Depends(require_role("customer")),
):
    logger.info(f"POST /jobs/{job_id}/pay | customer={user.user_id}")
    return await coordinator.charge_job(job_id, payload.payment_method_ref, payload.customer_ref)
