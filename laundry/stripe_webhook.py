# laundry/stripe_webhook.py
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request

from .deps import Services, get_services
from .errors import NotFoundError, SettlementConflict
from .gateway import transfers_active

router = APIRouter(prefix="/stripe", tags=["stripe"])
logger = logging.getLogger("laundry.stripe_webhook")


@router.post("/webhook")
async def webhook(req: Request, services: Services = Depends(get_services)):
    secret = services.settings.stripe_webhook_secret
    if not secret:
        logger.error("Stripe webhook secret missing (STRIPE_WEBHOOK_SECRET)")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await req.body()
    sig = req.headers.get("stripe-signature")
    try:
        event = stripe.Webhook.construct_event(payload, sig, secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Stripe webhook verify FAILED: {e}; sig_header_present={bool(sig)}")
        raise HTTPException(status_code=400, detail="signature verification failed")

    etype = event["type"]
    obj = event["data"]["object"]
    logger.info(f"Stripe webhook received: {etype}")

    if etype == "payment_intent.succeeded":
        job_id = (obj.get("metadata") or {}).get("job_id", "")
        if not str(job_id).isdigit():
            logger.info(f"payment_intent {obj['id']} has no job id; ignoring")
            return {"ok": True}
        try:
            await services.coordinator.settle_from_gateway(int(job_id), obj["id"], obj["amount"])
        except SettlementConflict as e:
            # already on the settlement queue; Stripe must not redeliver
            logger.error(f"payment_intent {obj['id']}: {e.message} (event {e.event_id})")
        except NotFoundError:
            logger.error(f"payment_intent {obj['id']} references unknown job {job_id}")

    elif etype == "account.updated":
        await services.onboarding.sync_external_account(obj["id"], transfers_active(obj))

    return {"ok": True}
