"""Pytest configuration and fixtures."""

import asyncio
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from laundry.auth import Identity
from laundry.config import Settings
from laundry.deps import assemble_services
from laundry.errors import Unauthenticated
from laundry.gateway import Authorization
from laundry.main import create_app
from laundry.models import OnboardingState, WasherAccount
from laundry.reconciliation import InMemorySettlementQueue
from laundry.store import InMemoryJobStore
from laundry.washers import InMemoryWasherRegistry

ACTIVE_WASHERS = ["W1", "W2"] + [f"washer-{i}" for i in range(10)]


class FakeGateway:
    """Stripe stand-in: one outcome per idempotency key, like Stripe's replay."""

    def __init__(self):
        self.intents: Dict[str, Authorization] = {}
        self.declines: Dict[str, Exception] = {}
        self.authorize_calls: List[dict] = []
        self.refunds: List[dict] = []
        self.accounts: Dict[str, bool] = {}  # account id -> transfers active
        self.links: List[str] = []
        self.customers: Dict[str, str] = {}  # email -> customer id
        self.setup_intents: List[str] = []
        self.portal_sessions: List[dict] = []
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0

    async def authorize(self, *, amount_cents, payment_method_ref, idempotency_key, description, metadata, customer=None):
        self.authorize_calls.append(
            {
                "amount_cents": amount_cents,
                "payment_method_ref": payment_method_ref,
                "key": idempotency_key,
                "customer": customer,
            }
        )
        if idempotency_key in self.declines:
            raise self.declines[idempotency_key]
        if idempotency_key not in self.intents:
            if self.fail_with is not None:
                self.declines[idempotency_key] = self.fail_with
                raise self.fail_with
            self.intents[idempotency_key] = Authorization(
                reference=f"pi_test_{len(self.intents) + 1}", status="succeeded", amount_cents=amount_cents
            )
        # the charge exists remotely even if the response is slow to arrive
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.intents[idempotency_key]

    async def refund(self, *, payment_reference, idempotency_key):
        self.refunds.append({"payment_reference": payment_reference, "key": idempotency_key})
        return f"re_test_{len(self.refunds)}"

    async def create_connected_account(self, *, email, idempotency_key):
        account_id = f"acct_test_{len(self.accounts) + 1}"
        self.accounts[account_id] = False
        return account_id

    async def create_onboarding_link(self, *, account_id, refresh_url, return_url):
        url = f"https://connect.stripe.test/setup/{account_id}"
        self.links.append(url)
        return url

    async def can_receive_transfers(self, account_id):
        return self.accounts.get(account_id, False)

    async def find_customer(self, email):
        return self.customers.get(email)

    async def create_customer(self, *, email, idempotency_key):
        return self.customers.setdefault(email, f"cus_test_{len(self.customers) + 1}")

    async def create_setup_intent(self, *, customer_id):
        self.setup_intents.append(customer_id)
        return f"seti_test_{len(self.setup_intents)}_secret_abc"

    async def create_portal_session(self, *, customer_id, return_url):
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/session/{customer_id}"


class FakeIdentity:
    """Tokens look like ``<role>:<user id>``."""

    async def authenticate(self, token: str) -> Identity:
        role, _, user_id = token.partition(":")
        if role not in ("customer", "washer", "operator") or not user_id:
            raise Unauthenticated("Invalid or expired token")
        return Identity(user_id=user_id, role=role)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        flat_rate_cents=1500,
        gateway_timeout_seconds=0.2,
        store_timeout_seconds=2.0,
        stripe_webhook_secret="whsec_test",
        base_url="https://laundry.test",
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def registry():
    accounts = {
        w: WasherAccount(washer_id=w, external_account_id=f"acct_{w}", onboarding_state=OnboardingState.ACTIVE)
        for w in ACTIVE_WASHERS
    }
    accounts["W-new"] = WasherAccount(
        washer_id="W-new", external_account_id="acct_W-new", onboarding_state=OnboardingState.CREATED
    )
    return InMemoryWasherRegistry(accounts)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def queue():
    return InMemorySettlementQueue()


@pytest.fixture
def services(settings, store, registry, gateway, queue):
    return assemble_services(settings, store, registry, gateway, queue, FakeIdentity())


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def coordinator(services):
    return services.coordinator


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def onboarding(services):
    return services.onboarding


@pytest.fixture
def customers(services):
    return services.customers


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))
