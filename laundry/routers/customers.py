from fastapi import APIRouter, Depends

from laundry.auth import Identity
from laundry.customers import CustomerPayments
from laundry.deps import get_customers, require_role
from laundry.models import CustomerEmailIn, PortalSessionOut, SetupIntentOut

router = APIRouter()

customer = require_role("customer")


@router.post("/setup-intent", response_model=SetupIntentOut)
async def create_setup_intent(
    payload: CustomerEmailIn,
    customers: CustomerPayments = Depends(get_customers),
    user: Identity = Depends(customer),
):
    setup = await customers.create_setup_intent(payload.email)
    return {"client_secret": setup.client_secret, "customer_ref": setup.customer_ref}


@router.post("/portal-session", response_model=PortalSessionOut)
async def create_portal_session(
    payload: CustomerEmailIn,
    customers: CustomerPayments = Depends(get_customers),
    user: Identity = Depends(customer),
):
    return {"url": await customers.create_portal_session(payload.email)}
