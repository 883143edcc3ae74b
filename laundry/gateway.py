# laundry/gateway.py
"""Payment gateway contract and its Stripe implementation.

Charges are PaymentIntents confirmed in one call; washers are Stripe
Connect Express accounts; customers save cards through SetupIntents and
manage them in the billing portal. The Stripe SDK is blocking, so calls run in a
worker thread; callers bound them with ``errors.bounded``.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

import stripe

from .errors import GatewayError, GatewayTimeout, PaymentFailed

logger = logging.getLogger("laundry.gateway")

# PaymentIntent states that mean the funds are secured
SETTLED_INTENT_STATES = ("succeeded", "requires_capture")


@dataclass(frozen=True)
class Authorization:
    reference: str
    status: str
    amount_cents: int


class PaymentGateway(Protocol):
    async def authorize(
        self,
        *,
        amount_cents: int,
        payment_method_ref: str,
        idempotency_key: str,
        description: str,
        metadata: Mapping[str, str],
        customer: Optional[str] = None,
    ) -> Authorization:
        """Raises PaymentFailed or GatewayTimeout."""
        ...

    async def refund(self, *, payment_reference: str, idempotency_key: str) -> str:
        ...

    async def create_connected_account(self, *, email: str, idempotency_key: str) -> str:
        ...

    async def create_onboarding_link(self, *, account_id: str, refresh_url: str, return_url: str) -> str:
        ...

    async def can_receive_transfers(self, account_id: str) -> bool:
        ...

    async def find_customer(self, email: str) -> Optional[str]:
        ...

    async def create_customer(self, *, email: str, idempotency_key: str) -> str:
        ...

    async def create_setup_intent(self, *, customer_id: str) -> str:
        """Returns the SetupIntent's client secret."""
        ...

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        ...


def transfers_active(account: Mapping[str, Any]) -> bool:
    """True when a Connect account (API object or webhook payload) can receive transfers."""
    capabilities = account.get("capabilities") or {}
    return capabilities.get("transfers") == "active"


class StripeGateway:
    def __init__(self, client: stripe.StripeClient, currency: str = "usd"):
        self._client = client
        self._currency = currency

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.APIConnectionError as e:
            raise GatewayTimeout(f"Stripe unreachable: {e.user_message or e}") from e

    async def authorize(
        self,
        *,
        amount_cents: int,
        payment_method_ref: str,
        idempotency_key: str,
        description: str,
        metadata: Mapping[str, str],
        customer: Optional[str] = None,
    ) -> Authorization:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self._currency,
            "payment_method": payment_method_ref,
            "confirm": True,
            "description": description,
            "metadata": dict(metadata),
            # server-side confirm: no redirect-based methods
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if customer:
            params["customer"] = customer
        try:
            intent = await self._call(
                self._client.payment_intents.create,
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.CardError as e:
            raise PaymentFailed(e.user_message or str(e)) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent create failed: {e}")
            raise PaymentFailed(e.user_message or "payment could not be processed") from e

        if intent.status not in SETTLED_INTENT_STATES:
            raise PaymentFailed(f"payment {intent.id} ended in status '{intent.status}'")
        return Authorization(reference=intent.id, status=intent.status, amount_cents=intent.amount)

    async def refund(self, *, payment_reference: str, idempotency_key: str) -> str:
        try:
            refund = await self._call(
                self._client.refunds.create,
                params={"payment_intent": payment_reference},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"refund of {payment_reference} failed: {e.user_message or e}") from e
        return refund.id

    async def create_connected_account(self, *, email: str, idempotency_key: str) -> str:
        try:
            account = await self._call(
                self._client.accounts.create,
                params={
                    "type": "express",
                    "email": email,
                    "capabilities": {"transfers": {"requested": True}},
                    "business_type": "individual",
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"could not create payout account: {e.user_message or e}") from e
        return account.id

    async def create_onboarding_link(self, *, account_id: str, refresh_url: str, return_url: str) -> str:
        try:
            link = await self._call(
                self._client.account_links.create,
                params={
                    "account": account_id,
                    "refresh_url": refresh_url,
                    "return_url": return_url,
                    "type": "account_onboarding",
                },
            )
        except stripe.StripeError as e:
            raise GatewayError(f"could not create onboarding link: {e.user_message or e}") from e
        return link.url

    async def can_receive_transfers(self, account_id: str) -> bool:
        try:
            account = await self._call(self._client.accounts.retrieve, account_id)
        except stripe.StripeError as e:
            raise GatewayError(f"could not load account {account_id}: {e.user_message or e}") from e
        return transfers_active(account)

    async def find_customer(self, email: str) -> Optional[str]:
        try:
            found = await self._call(self._client.customers.list, params={"email": email, "limit": 1})
        except stripe.StripeError as e:
            raise GatewayError(f"could not look up customer: {e.user_message or e}") from e
        return found.data[0].id if found.data else None

    async def create_customer(self, *, email: str, idempotency_key: str) -> str:
        try:
            customer = await self._call(
                self._client.customers.create,
                params={"email": email},
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"could not create customer: {e.user_message or e}") from e
        return customer.id

    async def create_setup_intent(self, *, customer_id: str) -> str:
        try:
            intent = await self._call(
                self._client.setup_intents.create,
                params={"customer": customer_id, "payment_method_types": ["card"]},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"could not create setup intent: {e.user_message or e}") from e
        return intent.client_secret

    async def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        try:
            session = await self._call(
                self._client.billing_portal.sessions.create,
                params={"customer": customer_id, "return_url": return_url},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"could not create billing portal session: {e.user_message or e}") from e
        return session.url


def make_stripe_gateway(secret_key: Optional[str], currency: str) -> StripeGateway:
    if not secret_key:
        raise RuntimeError("STRIPE_SECRET_KEY not set")
    return StripeGateway(stripe.StripeClient(secret_key, max_network_retries=2), currency=currency)
