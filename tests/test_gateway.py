"""Tests for the Stripe gateway adapter, with a mocked StripeClient."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import stripe

from laundry.errors import GatewayError, GatewayTimeout, PaymentFailed
from laundry.gateway import StripeGateway, make_stripe_gateway, transfers_active


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def gateway(client):
    return StripeGateway(client, currency="usd")


async def authorize(gateway, **extra):
    return await gateway.authorize(
        amount_cents=1500,
        payment_method_ref="pm_card_visa",
        idempotency_key="laundry-job-1-charge-pm_card_visa",
        description="Laundry job #1",
        metadata={"job_id": "1"},
        **extra,
    )


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_succeeded_intent(self, gateway, client):
        client.payment_intents.create.return_value = SimpleNamespace(id="pi_1", status="succeeded", amount=1500)

        auth = await authorize(gateway)

        assert auth.reference == "pi_1"
        assert auth.amount_cents == 1500
        kwargs = client.payment_intents.create.call_args.kwargs
        assert kwargs["options"] == {"idempotency_key": "laundry-job-1-charge-pm_card_visa"}
        assert kwargs["params"]["amount"] == 1500
        assert kwargs["params"]["confirm"] is True
        assert kwargs["params"]["metadata"] == {"job_id": "1"}
        assert "customer" not in kwargs["params"]

    @pytest.mark.asyncio
    async def test_saved_card_charges_its_customer(self, gateway, client):
        client.payment_intents.create.return_value = SimpleNamespace(id="pi_1", status="succeeded", amount=1500)

        await authorize(gateway, customer="cus_1")

        assert client.payment_intents.create.call_args.kwargs["params"]["customer"] == "cus_1"

    @pytest.mark.asyncio
    async def test_unsettled_intent_is_failure(self, gateway, client):
        client.payment_intents.create.return_value = SimpleNamespace(id="pi_1", status="requires_action", amount=1500)

        with pytest.raises(PaymentFailed):
            await authorize(gateway)

    @pytest.mark.asyncio
    async def test_card_error(self, gateway, client):
        client.payment_intents.create.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")

        with pytest.raises(PaymentFailed):
            await authorize(gateway)

    @pytest.mark.asyncio
    async def test_connection_error_is_timeout(self, gateway, client):
        client.payment_intents.create.side_effect = stripe.APIConnectionError("network down")

        with pytest.raises(GatewayTimeout):
            await authorize(gateway)


class TestConnect:
    @pytest.mark.asyncio
    async def test_refund(self, gateway, client):
        client.refunds.create.return_value = SimpleNamespace(id="re_1")

        assert await gateway.refund(payment_reference="pi_1", idempotency_key="k") == "re_1"
        assert client.refunds.create.call_args.kwargs["params"] == {"payment_intent": "pi_1"}

    @pytest.mark.asyncio
    async def test_refund_error(self, gateway, client):
        client.refunds.create.side_effect = stripe.InvalidRequestError("already refunded", "payment_intent")

        with pytest.raises(GatewayError):
            await gateway.refund(payment_reference="pi_1", idempotency_key="k")

    @pytest.mark.asyncio
    async def test_create_account_and_link(self, gateway, client):
        client.accounts.create.return_value = SimpleNamespace(id="acct_1")
        client.account_links.create.return_value = SimpleNamespace(url="https://connect.stripe.com/setup/x")

        assert await gateway.create_connected_account(email="w@example.com", idempotency_key="k") == "acct_1"
        url = await gateway.create_onboarding_link(account_id="acct_1", refresh_url="r", return_url="u")

        assert url == "https://connect.stripe.com/setup/x"
        assert client.accounts.create.call_args.kwargs["params"]["type"] == "express"
        assert client.account_links.create.call_args.kwargs["params"]["type"] == "account_onboarding"

    @pytest.mark.asyncio
    async def test_can_receive_transfers(self, gateway, client):
        client.accounts.retrieve.return_value = {"id": "acct_1", "capabilities": {"transfers": "active"}}

        assert await gateway.can_receive_transfers("acct_1") is True
        client.accounts.retrieve.assert_called_once_with("acct_1")


class TestCustomers:
    @pytest.mark.asyncio
    async def test_find_customer(self, gateway, client):
        client.customers.list.return_value = SimpleNamespace(data=[SimpleNamespace(id="cus_1")])

        assert await gateway.find_customer("a@example.com") == "cus_1"
        assert client.customers.list.call_args.kwargs["params"] == {"email": "a@example.com", "limit": 1}

    @pytest.mark.asyncio
    async def test_find_missing_customer(self, gateway, client):
        client.customers.list.return_value = SimpleNamespace(data=[])

        assert await gateway.find_customer("a@example.com") is None

    @pytest.mark.asyncio
    async def test_create_customer_and_setup_intent(self, gateway, client):
        client.customers.create.return_value = SimpleNamespace(id="cus_1")
        client.setup_intents.create.return_value = SimpleNamespace(id="seti_1", client_secret="seti_1_secret")

        assert await gateway.create_customer(email="a@example.com", idempotency_key="k") == "cus_1"
        assert await gateway.create_setup_intent(customer_id="cus_1") == "seti_1_secret"

        assert client.customers.create.call_args.kwargs["options"] == {"idempotency_key": "k"}
        assert client.setup_intents.create.call_args.kwargs["params"] == {
            "customer": "cus_1",
            "payment_method_types": ["card"],
        }

    @pytest.mark.asyncio
    async def test_portal_session(self, gateway, client):
        client.billing_portal.sessions.create.return_value = SimpleNamespace(url="https://billing.stripe.com/p/x")

        url = await gateway.create_portal_session(customer_id="cus_1", return_url="https://laundry.test/back")

        assert url == "https://billing.stripe.com/p/x"
        assert client.billing_portal.sessions.create.call_args.kwargs["params"] == {
            "customer": "cus_1",
            "return_url": "https://laundry.test/back",
        }

    @pytest.mark.asyncio
    async def test_customer_lookup_error(self, gateway, client):
        client.customers.list.side_effect = stripe.AuthenticationError("bad key")

        with pytest.raises(GatewayError):
            await gateway.find_customer("a@example.com")


def test_transfers_active():
    assert transfers_active({"capabilities": {"transfers": "active"}})
    assert not transfers_active({"capabilities": {"transfers": "pending"}})
    assert not transfers_active({})


def test_gateway_requires_key():
    with pytest.raises(RuntimeError):
        make_stripe_gateway(None, "usd")
