from typing import Optional

from fastapi import APIRouter, Depends, Query

from laundry.auth import Identity
from laundry.deps import get_reconciler, get_services, require_role
from laundry.models import SettlementEventListOut, SettlementEventOut, SettlementState
from laundry.reconciliation import Reconciler

router = APIRouter()

operator = require_role("operator")


@router.get("/events", response_model=SettlementEventListOut)
async def list_events(
    state: Optional[SettlementState] = Query(default=None),
    services=Depends(get_services),
    user: Identity = Depends(operator),
):
    return {"events": await services.queue.list(state)}


@router.post("/retry", response_model=SettlementEventListOut)
async def retry_open(
    reconciler: Reconciler = Depends(get_reconciler),
    user: Identity = Depends(operator),
):
    return {"events": await reconciler.retry_open()}


@router.post("/events/{event_id}/refund", response_model=SettlementEventOut)
async def refund_event(
    event_id: int,
    reconciler: Reconciler = Depends(get_reconciler),
    user: Identity = Depends(operator),
):
    return {"event": await reconciler.refund(event_id)}
