"""
Pytest configuration and fixtures.

Tests run against a temporary SQLite database and an in-memory stand-in
for the Stripe Connect client; nothing touches the network.
"""
import asyncio
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import PayoutMode
from deferred_payouts.core.ledger import EarningsLedger
from deferred_payouts.core.locks import InProcessSellerLocks
from deferred_payouts.core.provisioning import AccountProvisioner
from deferred_payouts.core.routing import RoutingDecider
from deferred_payouts.core.sales import SaleSessionService
from deferred_payouts.core.settlement import SettlementReconciler
from deferred_payouts.database.connection import Database
from deferred_payouts.integrations.stripe_client import (
    PAYOUT_INTERVALS,
    AccountSnapshot,
    CheckoutSession,
    StripeError,
    StripeErrorType,
)
from deferred_payouts.integrations.webhook_handler import WebhookHandler


class FakeStripeConnect:
    """
    In-memory Stripe Connect.

    Honours idempotency keys the way Stripe does: repeating a key returns
    the original object. ``fail_next[operation]`` makes the next call of that
    operation raise the given error.
    """

    def __init__(self) -> None:
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.accounts_by_key: Dict[str, str] = {}
        self.transfers: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.fail_next: Dict[str, StripeError] = {}
        self.create_identity_calls = 0
        self.transfer_calls = 0
        self.lose_next_transfer_response = False

    def _maybe_fail(self, operation: str) -> None:
        error = self.fail_next.pop(operation, None)
        if error is not None:
            raise error

    def verify(self, account_id: str) -> None:
        """Simulate the seller finishing onboarding."""
        self.accounts[account_id].update(charges_enabled=True, transfers="active")

    def delete(self, account_id: str) -> None:
        del self.accounts[account_id]

    async def create_identity(
        self,
        country: str,
        email: str,
        capabilities: List[str],
        payout_mode: PayoutMode,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        self.create_identity_calls += 1
        await asyncio.sleep(0)
        self._maybe_fail("create_identity")
        if idempotency_key in self.accounts_by_key:
            return self.accounts_by_key[idempotency_key]

        account_id = f"acct_test_{len(self.accounts_by_key) + 1:04d}"
        self.accounts[account_id] = {
            "country": country,
            "email": email,
            "charges_enabled": False,
            "transfers": "inactive",
            "payout_interval": PAYOUT_INTERVALS[payout_mode],
            "metadata": dict(metadata or {}),
        }
        self.accounts_by_key[idempotency_key] = account_id
        return account_id

    async def get_identity(self, account_id: str) -> AccountSnapshot:
        self._maybe_fail("get_identity")
        account = self.accounts.get(account_id)
        if account is None:
            raise StripeError(
                f"No such account: '{account_id}'",
                StripeErrorType.PERMANENT,
                code="resource_missing",
            )
        return AccountSnapshot(
            id=account_id,
            charges_enabled=account["charges_enabled"],
            transfers_capability=account["transfers"],
            card_payments_capability="active" if account["charges_enabled"] else "inactive",
        )

    async def update_payout_schedule(self, account_id: str, mode: PayoutMode) -> None:
        self._maybe_fail("update_payout_schedule")
        self.accounts[account_id]["payout_interval"] = PAYOUT_INTERVALS[mode]

    async def create_account_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        self._maybe_fail("create_account_link")
        return f"https://connect.stripe.test/setup/{account_id}"

    async def transfer(
        self,
        destination_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> str:
        self.transfer_calls += 1
        self._maybe_fail("transfer")
        existing = self.transfers.get(idempotency_key)
        if existing is not None and (
            existing["destination"] != destination_id or existing["amount"] != amount_cents
        ):
            raise StripeError(
                "Keys for idempotent requests can only be used with the same parameters",
                StripeErrorType.UNKNOWN_OUTCOME,
                code="idempotency_error",
            )
        if existing is None:
            self.transfers[idempotency_key] = {
                "id": f"tr_test_{len(self.transfers) + 1:04d}",
                "destination": destination_id,
                "amount": amount_cents,
                "currency": currency,
                "metadata": dict(metadata or {}),
            }
        if self.lose_next_transfer_response:
            # Transfer exists at the provider but the caller never hears back.
            self.lose_next_transfer_response = False
            raise StripeError("Stripe create_transfer timed out", StripeErrorType.UNKNOWN_OUTCOME)
        return self.transfers[idempotency_key]["id"]

    async def create_checkout_session(
        self,
        product_name: str,
        amount_cents: int,
        currency: str,
        payment_intent_data: Dict[str, Any],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        product_description: Optional[str] = None,
        images: Optional[List[str]] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        self._maybe_fail("create_checkout_session")
        session_id = f"cs_test_{len(self.checkout_sessions) + 1:04d}"
        self.checkout_sessions[session_id] = {
            "product_name": product_name,
            "amount": amount_cents,
            "currency": currency,
            "payment_intent_data": payment_intent_data,
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
        }
        return CheckoutSession(id=session_id, url=f"https://checkout.stripe.test/{session_id}")

    async def ping(self) -> None:
        self._maybe_fail("ping")

    @property
    def transferred_cents(self) -> int:
        return sum(t["amount"] for t in self.transfers.values())


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payouts.db'}",
        lock_backend="local",
        webhook_dedup_enabled=False,
        app_name="deferred-payouts-test",
        app_env="test",
        log_level="DEBUG",
        base_url="https://shop.test",
        platform_fee_bp=1000,
        notification_threshold=3,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Create a fresh database with all tables."""
    db = Database.from_settings(test_settings)
    await db.init_models()
    yield db
    await db.close()


@pytest.fixture
def fake_stripe() -> FakeStripeConnect:
    return FakeStripeConnect()


@pytest.fixture
def locks() -> InProcessSellerLocks:
    return InProcessSellerLocks()


@pytest.fixture
def ledger(test_settings: Settings) -> EarningsLedger:
    return EarningsLedger(notification_threshold=test_settings.notification_threshold)


@pytest.fixture
def provisioner(
    database: Database,
    fake_stripe: FakeStripeConnect,
    locks: InProcessSellerLocks,
    test_settings: Settings,
) -> AccountProvisioner:
    return AccountProvisioner(database, fake_stripe, locks, test_settings)


@pytest.fixture
def router(fake_stripe: FakeStripeConnect) -> RoutingDecider:
    return RoutingDecider(fake_stripe)


class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    async def notify_onboarding_threshold_reached(
        self, seller_id: str, pending_balance_cents: int, sale_count: int
    ) -> None:
        self.sent.append(
            {
                "seller_id": seller_id,
                "pending_balance_cents": pending_balance_cents,
                "sale_count": sale_count,
            }
        )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sales(
    database: Database,
    fake_stripe: FakeStripeConnect,
    provisioner: AccountProvisioner,
    router: RoutingDecider,
    ledger: EarningsLedger,
    locks: InProcessSellerLocks,
    notifier: RecordingNotifier,
    test_settings: Settings,
) -> SaleSessionService:
    return SaleSessionService(
        db=database,
        stripe_client=fake_stripe,
        provisioner=provisioner,
        router=router,
        ledger=ledger,
        locks=locks,
        notifier=notifier,
        settings=test_settings,
    )


@pytest.fixture
def reconciler(
    database: Database,
    fake_stripe: FakeStripeConnect,
    ledger: EarningsLedger,
    locks: InProcessSellerLocks,
    test_settings: Settings,
) -> SettlementReconciler:
    return SettlementReconciler(database, fake_stripe, ledger, locks, test_settings)


@pytest.fixture
def webhook_handler(
    test_settings: Settings,
    sales: SaleSessionService,
    reconciler: SettlementReconciler,
    provisioner: AccountProvisioner,
) -> WebhookHandler:
    return WebhookHandler(
        test_settings,
        sales=sales,
        reconciler=reconciler,
        provisioner=provisioner,
    )


@pytest_asyncio.fixture
async def seller(provisioner: AccountProvisioner) -> str:
    """A registered seller without a destination account."""
    await provisioner.register_seller(
        seller_id="user_seller_1",
        email="seller1@example.com",
        country="us",
        first_name="Ada",
        last_name="Lovelace",
    )
    return "user_seller_1"


@pytest_asyncio.fixture
async def provisioned_seller(provisioner: AccountProvisioner, seller: str) -> Dict[str, str]:
    """A registered seller with an unverified destination account."""
    account_id = await provisioner.ensure_destination_account(seller)
    return {"seller_id": seller, "account_id": account_id}


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_event(test_settings: Settings) -> Callable[..., Tuple[bytes, str]]:
    """Factory for signed webhook payloads: (body, Stripe-Signature header)."""

    def _build(
        event_type: str,
        data_object: Dict[str, Any],
        event_id: Optional[str] = None,
        account: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        event: Dict[str, Any] = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "api_version": test_settings.stripe_api_version,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": data_object},
        }
        if account:
            event["account"] = account
        body = json.dumps(event).encode("utf-8")
        return body, sign_payload(body, test_settings.stripe_webhook_secret)

    return _build


@pytest.fixture
def verified_event(
    webhook_handler: WebhookHandler, signed_event: Callable[..., Tuple[bytes, str]]
) -> Callable[..., Any]:
    """Factory for events that went through signature verification."""

    def _build(event_type: str, data_object: Dict[str, Any], **kwargs: Any) -> Any:
        body, header = signed_event(event_type, data_object, **kwargs)
        return webhook_handler.verify_signature(body, header)

    return _build
