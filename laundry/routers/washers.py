from fastapi import APIRouter, Depends

from laundry.auth import Identity
from laundry.deps import get_onboarding, require_role
from laundry.models import AccountLinkOut, WasherAccountIn, WasherAccountOut
from laundry.onboarding import WasherOnboarding

router = APIRouter()

washer = require_role("washer")


@router.get("/me", response_model=WasherAccountOut)
async def my_account(
    onboarding: WasherOnboarding = Depends(get_onboarding),
    user: Identity = Depends(washer),
):
    return {"account": await onboarding.get_account(user.user_id)}


@router.post("/account", response_model=WasherAccountOut)
async def create_account(
    payload: WasherAccountIn,
    onboarding: WasherOnboarding = Depends(get_onboarding),
    user: Identity = Depends(washer),
):
    return {"account": await onboarding.create_account(user.user_id, payload.email)}


@router.post("/account-link", response_model=AccountLinkOut)
async def create_account_link(
    onboarding: WasherOnboarding = Depends(get_onboarding),
    user: Identity = Depends(washer),
):
    return {"url": await onboarding.create_onboarding_link(user.user_id)}


@router.post("/account/sync", response_model=WasherAccountOut)
async def sync_account(
    onboarding: WasherOnboarding = Depends(get_onboarding),
    user: Identity = Depends(washer),
):
    return {"account": await onboarding.sync_state(user.user_id)}
