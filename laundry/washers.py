# laundry/washers.py
"""Washer account registry: internal washer id -> Stripe Connect account.

The lifecycle engine only reads ``get_onboarding_state``; the write methods
belong to the onboarding flow (``laundry.onboarding``).
"""
from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol

from supabase import Client

from .errors import NotFoundError
from .models import OnboardingState, WasherAccount

WASHER_ACCOUNTS_TABLE = "washer_accounts"


class WasherAccountRegistry(Protocol):
    async def get_onboarding_state(self, washer_id: str) -> OnboardingState:
        """Raises NotFoundError."""
        ...

    async def get_account(self, washer_id: str) -> WasherAccount:
        ...

    async def find_by_external_id(self, external_account_id: str) -> Optional[WasherAccount]:
        ...

    async def save_account(self, account: WasherAccount) -> WasherAccount:
        ...

    async def set_onboarding_state(self, washer_id: str, state: OnboardingState) -> WasherAccount:
        ...


class InMemoryWasherRegistry:
    def __init__(self, accounts: Optional[Dict[str, WasherAccount]] = None):
        self._accounts: Dict[str, WasherAccount] = dict(accounts or {})

    async def get_account(self, washer_id: str) -> WasherAccount:
        account = self._accounts.get(washer_id)
        if account is None:
            raise NotFoundError(f"no payout account for washer {washer_id}")
        return account

    async def get_onboarding_state(self, washer_id: str) -> OnboardingState:
        return (await self.get_account(washer_id)).onboarding_state

    async def find_by_external_id(self, external_account_id: str) -> Optional[WasherAccount]:
        for account in self._accounts.values():
            if account.external_account_id == external_account_id:
                return account
        return None

    async def save_account(self, account: WasherAccount) -> WasherAccount:
        self._accounts[account.washer_id] = account
        return account

    async def set_onboarding_state(self, washer_id: str, state: OnboardingState) -> WasherAccount:
        account = await self.get_account(washer_id)
        updated = account.model_copy(update={"onboarding_state": state})
        self._accounts[washer_id] = updated
        return updated


class SupabaseWasherRegistry:
    """Registry backed by the Supabase ``washer_accounts`` table.

    supabase-py is synchronous, so every query runs in a worker thread.
    """

    def __init__(self, sb: Client):
        self._sb = sb

    def _select_one(self, column: str, value: str) -> Optional[dict]:
        r = (
            self._sb.table(WASHER_ACCOUNTS_TABLE)
            .select("washer_id,external_account_id,onboarding_state")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        return r.data[0] if r.data else None

    async def get_account(self, washer_id: str) -> WasherAccount:
        row = await asyncio.to_thread(self._select_one, "washer_id", washer_id)
        if row is None:
            raise NotFoundError(f"no payout account for washer {washer_id}")
        return WasherAccount.model_validate(row)

    async def get_onboarding_state(self, washer_id: str) -> OnboardingState:
        return (await self.get_account(washer_id)).onboarding_state

    async def find_by_external_id(self, external_account_id: str) -> Optional[WasherAccount]:
        row = await asyncio.to_thread(self._select_one, "external_account_id", external_account_id)
        return WasherAccount.model_validate(row) if row else None

    async def save_account(self, account: WasherAccount) -> WasherAccount:
        payload = account.model_dump(mode="json")

        def _upsert() -> list:
            return (
                self._sb.table(WASHER_ACCOUNTS_TABLE)
                .upsert(payload, on_conflict="washer_id")
                .execute()
                .data
            )

        rows = await asyncio.to_thread(_upsert)
        return WasherAccount.model_validate(rows[0]) if rows else account

    async def set_onboarding_state(self, washer_id: str, state: OnboardingState) -> WasherAccount:
        def _update() -> list:
            return (
                self._sb.table(WASHER_ACCOUNTS_TABLE)
                .update({"onboarding_state": state.value})
                .eq("washer_id", washer_id)
                .execute()
                .data
            )

        rows = await asyncio.to_thread(_update)
        if not rows:
            raise NotFoundError(f"no payout account for washer {washer_id}")
        return WasherAccount.model_validate(rows[0])
