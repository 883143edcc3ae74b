# laundry/customers.py
"""Saved cards for customers: Stripe SetupIntents and the billing portal.

Customers are looked up by email, so a customer who saved a card on one
device finds it again on another.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import NotFoundError, bounded
from .gateway import PaymentGateway

logger = logging.getLogger("laundry.customers")


@dataclass(frozen=True)
class CardSetup:
    client_secret: str
    customer_ref: str


class CustomerPayments:
    def __init__(self, gateway: PaymentGateway, base_url: str, gateway_timeout: float = 15.0):
        self._gateway = gateway
        self._base_url = base_url.rstrip("/")
        self._gateway_timeout = gateway_timeout

    async def _find(self, email: str) -> Optional[str]:
        return await bounded(self._gateway.find_customer(email), self._gateway_timeout, "payment gateway")

    async def create_setup_intent(self, email: str) -> CardSetup:
        """Find or create the Stripe customer, then start saving a card on it."""
        email = email.strip().lower()
        customer_id = await self._find(email)
        if customer_id is None:
            customer_id = await bounded(
                self._gateway.create_customer(email=email, idempotency_key=f"laundry-customer-{email}"),
                self._gateway_timeout,
                "payment gateway",
            )
            logger.info(f"Stripe customer created | customer={customer_id}")
        client_secret = await bounded(
            self._gateway.create_setup_intent(customer_id=customer_id),
            self._gateway_timeout,
            "payment gateway",
        )
        return CardSetup(client_secret=client_secret, customer_ref=customer_id)

    async def create_portal_session(self, email: str) -> str:
        customer_id = await self._find(email.strip().lower())
        if customer_id is None:
            raise NotFoundError("Customer not found")
        return await bounded(
            self._gateway.create_portal_session(
                customer_id=customer_id, return_url=f"{self._base_url}/customer-payment.html"
            ),
            self._gateway_timeout,
            "payment gateway",
        )
