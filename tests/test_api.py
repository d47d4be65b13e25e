"""
Integration tests for the HTTP API.

The application runs in-process against the test database and the fake
Stripe Connect client.
"""
from typing import Any, AsyncGenerator, Callable, Dict, Tuple

import httpx
import pytest
import pytest_asyncio

from deferred_payouts.api import create_app
from deferred_payouts.api.dependencies import ServiceContainer
from deferred_payouts.config import Settings
from deferred_payouts.database.connection import Database
from deferred_payouts.integrations.stripe_client import StripeError, StripeErrorType


@pytest.fixture
def container(
    test_settings: Settings,
    database: Database,
    fake_stripe: Any,
    locks: Any,
    notifier: Any,
) -> ServiceContainer:
    return ServiceContainer.build(
        test_settings,
        db=database,
        stripe_client=fake_stripe,
        locks=locks,
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    app = create_app(container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def _register(client: httpx.AsyncClient, seller_id: str = "user_api_1") -> Dict[str, Any]:
    response = await client.post(
        "/sellers",
        json={"seller_id": seller_id, "email": f"{seller_id}@example.com", "country": "us"},
    )
    assert response.status_code == 201
    return response.json()


async def _sell(
    client: httpx.AsyncClient, seller_id: str, product_id: str, price: str
) -> Dict[str, Any]:
    response = await client.post(
        "/sales/sessions",
        json={
            "seller_id": seller_id,
            "product": {"id": product_id, "title": f"Item {product_id}", "price": price},
            "buyer_email": "buyer@example.com",
        },
    )
    assert response.status_code == 201
    return response.json()


async def _deliver(
    client: httpx.AsyncClient,
    signed_event: Callable[..., Tuple[bytes, str]],
    event_type: str,
    data_object: Dict[str, Any],
    **kwargs: Any,
) -> httpx.Response:
    body, header = signed_event(event_type, data_object, **kwargs)
    return await client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": header, "Content-Type": "application/json"},
    )


class TestSellerEndpoints:
    """Seller registration and onboarding endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_register_seller(self, client: httpx.AsyncClient) -> None:
        seller = await _register(client)

        assert seller == {
            "seller_id": "user_api_1",
            "email": "user_api_1@example.com",
            "country": "US",
            "verification_status": "unprovisioned",
            "payout_mode": "manual",
            "destination_account_id": None,
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_email_taken_is_409(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post(
            "/sellers",
            json={"seller_id": "user_api_2", "email": "user_api_1@example.com"},
        )
        again = await client.post(
            "/sellers",
            json={"seller_id": "user_api_1", "email": "user_api_1@example.com"},
        )

        assert response.status_code == 409
        assert "already registered" in response.json()["detail"]
        assert again.status_code == 201

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_seller_is_404(self, client: httpx.AsyncClient) -> None:
        earnings = await client.get("/sellers/nobody/earnings")
        account = await client.post("/sellers/nobody/account")

        assert earnings.status_code == 404
        assert account.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_account_and_onboarding_link(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        no_account = await client.post("/sellers/user_api_1/onboarding-link")
        account = await client.post("/sellers/user_api_1/account")
        link = await client.post("/sellers/user_api_1/onboarding-link")

        assert no_account.status_code == 400
        assert account.status_code == 200
        account_id = account.json()["account_id"]
        assert link.status_code == 200
        assert link.json()["url"] == f"https://connect.stripe.test/setup/{account_id}"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provisioning_failure_is_502(
        self, client: httpx.AsyncClient, fake_stripe: Any
    ) -> None:
        await _register(client)
        fake_stripe.fail_next["create_identity"] = StripeError(
            "Country not supported", StripeErrorType.PERMANENT
        )

        response = await client.post("/sellers/user_api_1/account")

        assert response.status_code == 502
        assert "Country" not in response.json()["detail"]


class TestSaleSessions:
    """Sale session endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_first_sale_of_new_seller_is_held(
        self, client: httpx.AsyncClient, fake_stripe: Any
    ) -> None:
        await _register(client)

        session = await _sell(client, "user_api_1", "prod_1", "40.00")

        assert session["payment_strategy"] == "platform_held"
        assert session["onboarding_required"] is True
        assert session["seller_account_id"] in fake_stripe.accounts
        assert fake_stripe.checkout_sessions[session["session_id"]]["amount"] == 4000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_price_below_minimum_rejected(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post(
            "/sales/sessions",
            json={
                "seller_id": "user_api_1",
                "product": {"id": "prod_cheap", "title": "Sticker", "price": "0.49"},
            },
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_checkout_failure_is_502(
        self, client: httpx.AsyncClient, fake_stripe: Any
    ) -> None:
        await _register(client)
        fake_stripe.fail_next["create_checkout_session"] = StripeError(
            "api down", StripeErrorType.TRANSIENT
        )

        response = await client.post(
            "/sales/sessions",
            json={
                "seller_id": "user_api_1",
                "product": {"id": "prod_1", "title": "Poster", "price": "40.00"},
            },
        )

        assert response.status_code == 502


class TestWebhookEndpoint:
    """Stripe webhook endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_held_sales_settle_after_verification(
        self,
        client: httpx.AsyncClient,
        fake_stripe: Any,
        notifier: Any,
        signed_event: Callable[..., Tuple[bytes, str]],
    ) -> None:
        await _register(client)
        sessions = [
            await _sell(client, "user_api_1", f"prod_{i}", price)
            for i, price in enumerate(["40.00", "30.00", "57.50"])
        ]

        for session in sessions:
            checkout = fake_stripe.checkout_sessions[session["session_id"]]
            response = await _deliver(
                client,
                signed_event,
                "checkout.session.completed",
                {
                    "id": session["session_id"],
                    "object": "checkout.session",
                    "payment_status": "paid",
                    "metadata": checkout["metadata"],
                },
            )
            assert response.status_code == 200
            assert response.json()["status"] == "success"

        earnings = (await client.get("/sellers/user_api_1/earnings")).json()
        assert earnings["pending_balance_cents"] == 3600 + 2700 + 5175
        assert earnings["sale_count"] == 3
        assert earnings["needs_onboarding"] is True
        assert len(notifier.sent) == 1

        account_id = sessions[0]["seller_account_id"]
        fake_stripe.verify(account_id)
        response = await _deliver(
            client,
            signed_event,
            "account.updated",
            {
                "id": account_id,
                "object": "account",
                "charges_enabled": True,
                "capabilities": {"transfers": "active", "card_payments": "active"},
            },
        )

        assert response.status_code == 200
        assert response.json()["result"]["outcome"] == "settled"
        assert fake_stripe.transferred_cents == 11475

        earnings = (await client.get("/sellers/user_api_1/earnings")).json()
        assert earnings["pending_balance_cents"] == 0
        assert earnings["verification_status"] == "verified"
        assert earnings["payout_mode"] == "automatic"
        assert earnings["needs_onboarding"] is False

        after = await _sell(client, "user_api_1", "prod_after", "40.00")
        assert after["payment_strategy"] == "direct_transfer"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/stripe",
            content=b'{"id": "evt_1"}',
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )

        assert response.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_signature_header_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/webhooks/stripe", content=b"{}")

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_failure_is_500(
        self, client: httpx.AsyncClient, signed_event: Callable[..., Tuple[bytes, str]]
    ) -> None:
        response = await _deliver(
            client,
            signed_event,
            "checkout.session.completed",
            {
                "id": "cs_orphan",
                "object": "checkout.session",
                "payment_status": "paid",
                "metadata": {
                    "seller_id": "nobody",
                    "payment_strategy": "platform_held",
                    "seller_amount_cents": "900",
                },
            },
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"


class TestMonitoring:
    """Health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "stripe"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_fails_when_stripe_unreachable(
        self, client: httpx.AsyncClient, fake_stripe: Any
    ) -> None:
        fake_stripe.fail_next["ping"] = StripeError("down", StripeErrorType.TRANSIENT)

        response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["detail"]["checks"]["stripe"]["status"] == "unhealthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        await _register(client)
        await _sell(client, "user_api_1", "prod_m", "40.00")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "sale_sessions_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["service"] == "deferred-payouts-test"
