# laundry/onboarding.py
"""Washer payout onboarding via Stripe Connect Express accounts.

This is the only writer of WasherAccount rows: it creates the account,
hands out onboarding links and promotes the account to ``active`` once
Stripe reports the transfers capability as active.
"""
from __future__ import annotations

import logging
from typing import Optional

from .errors import NotFoundError, bounded
from .gateway import PaymentGateway
from .models import OnboardingState, WasherAccount
from .washers import WasherAccountRegistry

logger = logging.getLogger("laundry.onboarding")


class WasherOnboarding:
    def __init__(
        self,
        registry: WasherAccountRegistry,
        gateway: PaymentGateway,
        base_url: str,
        gateway_timeout: float = 15.0,
        store_timeout: float = 5.0,
    ):
        self._registry = registry
        self._gateway = gateway
        self._base_url = base_url.rstrip("/")
        self._gateway_timeout = gateway_timeout
        self._store_timeout = store_timeout

    async def _find(self, washer_id: str) -> Optional[WasherAccount]:
        try:
            return await bounded(self._registry.get_account(washer_id), self._store_timeout, "washer registry")
        except NotFoundError:
            return None

    async def get_account(self, washer_id: str) -> WasherAccount:
        return await bounded(self._registry.get_account(washer_id), self._store_timeout, "washer registry")

    async def create_account(self, washer_id: str, email: str) -> WasherAccount:
        existing = await self._find(washer_id)
        if existing is not None:
            return existing

        account_id = await bounded(
            self._gateway.create_connected_account(
                email=email, idempotency_key=f"laundry-washer-{washer_id}-account"
            ),
            self._gateway_timeout,
            "payment gateway",
        )
        account = WasherAccount(
            washer_id=washer_id,
            external_account_id=account_id,
            onboarding_state=OnboardingState.CREATED,
        )
        saved = await bounded(self._registry.save_account(account), self._store_timeout, "washer registry")
        logger.info(f"Payout account created | washer={washer_id} | account={account_id}")
        return saved

    async def create_onboarding_link(self, washer_id: str) -> str:
        account = await self.get_account(washer_id)
        return await bounded(
            self._gateway.create_onboarding_link(
                account_id=account.external_account_id,
                refresh_url=f"{self._base_url}/washer-onboarding.html?refresh=true",
                return_url=f"{self._base_url}/washer-dashboard.html?onboarding_complete=true",
            ),
            self._gateway_timeout,
            "payment gateway",
        )

    async def _activate(self, account: WasherAccount) -> WasherAccount:
        if account.onboarding_state == OnboardingState.ACTIVE:
            return account
        updated = await bounded(
            self._registry.set_onboarding_state(account.washer_id, OnboardingState.ACTIVE),
            self._store_timeout,
            "washer registry",
        )
        logger.info(f"Payout account active | washer={account.washer_id} | account={account.external_account_id}")
        return updated

    async def sync_state(self, washer_id: str) -> WasherAccount:
        """Ask the gateway whether the washer can receive transfers yet."""
        account = await self.get_account(washer_id)
        if account.onboarding_state == OnboardingState.ACTIVE:
            return account
        ready = await bounded(
            self._gateway.can_receive_transfers(account.external_account_id),
            self._gateway_timeout,
            "payment gateway",
        )
        return await self._activate(account) if ready else account

    async def sync_external_account(self, external_account_id: str, transfers_active: bool) -> Optional[WasherAccount]:
        """Apply an ``account.updated`` notification. Unknown accounts are ignored."""
        account = await bounded(
            self._registry.find_by_external_id(external_account_id), self._store_timeout, "washer registry"
        )
        if account is None:
            logger.warning(f"account.updated for unknown account {external_account_id}")
            return None
        return await self._activate(account) if transfers_active else account
