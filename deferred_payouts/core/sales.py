"""
Sale sessions.

Ties the provisioning gate and the routing decision to hosted checkout
creation, and applies completed sales to the earnings ledger.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import (
    Product,
    RoutingStrategy,
    SaleCompleted,
    SaleStatus,
    VerificationStatus,
)
from deferred_payouts.core.errors import (
    DuplicateEventIgnored,
    ProvisioningFailed,
    SaleSessionFailed,
)
from deferred_payouts.core.ledger import EarningsLedger
from deferred_payouts.core.locks import SellerLocks
from deferred_payouts.core.money import format_minor_units
from deferred_payouts.core.provisioning import AccountProvisioner, get_seller
from deferred_payouts.core.routing import RoutingDecider
from deferred_payouts.database.connection import Database
from deferred_payouts.database.models import SaleRecord
from deferred_payouts.integrations.notifications import Notifier
from deferred_payouts.integrations.stripe_client import StripeConnectClient, StripeError
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SaleSessionService:
    """Creates checkout sessions and applies their completion."""

    def __init__(
        self,
        db: Database,
        stripe_client: StripeConnectClient,
        provisioner: AccountProvisioner,
        router: RoutingDecider,
        ledger: EarningsLedger,
        locks: SellerLocks,
        notifier: Notifier,
        settings: Settings,
    ):
        self.db = db
        self.stripe_client = stripe_client
        self.provisioner = provisioner
        self.router = router
        self.ledger = ledger
        self.locks = locks
        self.notifier = notifier
        self.settings = settings

    async def create_sale_session(
        self,
        seller_id: str,
        product: Product,
        buyer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a hosted checkout session for one product.

        The seller gets a destination account first if they have none, so a
        brand new seller can sell immediately.

        Args:
            seller_id: Seller identifier
            product: Product being sold
            buyer_email: Optional buyer email prefilled on the checkout page

        Returns:
            Dict: url, session_id, seller_account_id, payment_strategy,
            onboarding_required

        Raises:
            SellerNotFound: If the seller does not exist
            SaleSessionFailed: If provisioning or session creation fails
        """
        try:
            account_id = await self.provisioner.ensure_destination_account(seller_id)
        except ProvisioningFailed as e:
            raise SaleSessionFailed("Failed to set up seller payment account") from e

        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)

        plan = await self.router.decide_routing(
            seller,
            gross_cents=product.price_cents,
            fee_rate_bp=self.settings.platform_fee_bp,
            destination_id=account_id,
        )

        metadata = {
            **plan.metadata,
            "product_id": product.id,
            "payment_strategy": plan.strategy.value,
        }
        payment_intent_data = plan.payment_intent_data()
        payment_intent_data["metadata"]["product_id"] = product.id

        base_url = self.settings.base_url
        try:
            checkout = await self.stripe_client.create_checkout_session(
                product_name=product.title,
                amount_cents=plan.gross_cents,
                currency=self.settings.settlement_currency,
                payment_intent_data=payment_intent_data,
                metadata=metadata,
                success_url=(
                    f"{base_url}/success?session_id={{CHECKOUT_SESSION_ID}}"
                    f"&product_id={product.id}"
                ),
                cancel_url=f"{base_url}/products/{product.id}",
                product_description=product.description,
                images=product.images,
                customer_email=buyer_email,
            )
        except StripeError as e:
            logger.error(
                "sale_session_creation_failed",
                seller_id=seller_id,
                product_id=product.id,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise SaleSessionFailed("Failed to create checkout session") from e

        async with self.db.unit_of_work() as session:
            session.add(
                SaleRecord(
                    correlation_key=checkout.id,
                    seller_id=seller_id,
                    product_id=product.id,
                    gross_cents=plan.gross_cents,
                    fee_cents=plan.fee_cents,
                    net_cents=plan.net_cents,
                    currency=self.settings.settlement_currency,
                    strategy=plan.strategy.value,
                    status=SaleStatus.OPEN.value,
                    routing_metadata=metadata,
                )
            )

        metrics.record_sale_session(plan.strategy.value, plan.gross_cents)
        logger.info(
            "sale_session_created",
            seller_id=seller_id,
            session_id=checkout.id,
            strategy=plan.strategy.value,
            gross_cents=plan.gross_cents,
        )

        return {
            "url": checkout.url,
            "session_id": checkout.id,
            "seller_account_id": account_id,
            "payment_strategy": plan.strategy.value,
            "onboarding_required": plan.strategy is RoutingStrategy.PLATFORM_HELD,
        }

    async def complete_sale(self, event: SaleCompleted) -> Dict[str, Any]:
        """
        Apply a completed checkout session.

        DIRECT sales were already split by the provider and have no ledger
        effect. PLATFORM_HELD sales add the seller's net to the ledger once
        per correlation key.

        Returns:
            Dict: status and, for held sales, the resulting ledger state

        Raises:
            DuplicateEventIgnored: If the sale was already applied
            SellerNotFound: If the seller does not exist
        """
        if event.strategy is RoutingStrategy.DIRECT:
            async with self.db.unit_of_work() as session:
                await self._mark_completed(session, event)
            logger.info(
                "direct_sale_completed",
                seller_id=event.seller_id,
                correlation_key=event.correlation_key,
            )
            return {"status": "direct", "seller_id": event.seller_id}

        async with self.locks.hold(event.seller_id):
            async with self.db.unit_of_work() as session:
                state = await self.ledger.record_sale(
                    session,
                    event.seller_id,
                    event.net_cents,
                    event.correlation_key,
                )
                await self._mark_completed(session, event)

        if state.threshold_crossed:
            await self._notify_threshold(state.seller_id, state.pending_balance_cents, state.sale_count)

        return {
            "status": "held",
            "seller_id": state.seller_id,
            "pending_balance_cents": state.pending_balance_cents,
            "sale_count": state.sale_count,
        }

    @staticmethod
    async def _mark_completed(session: AsyncSession, event: SaleCompleted) -> None:
        result = await session.execute(
            select(SaleRecord).where(SaleRecord.correlation_key == event.correlation_key)
        )
        record = result.scalar_one_or_none()
        if record is None:
            # Session created outside this service; the ledger entry is the record.
            logger.info("sale_record_missing", correlation_key=event.correlation_key)
            return
        if record.status == SaleStatus.COMPLETED.value and event.strategy is RoutingStrategy.DIRECT:
            raise DuplicateEventIgnored(event.correlation_key)
        record.status = SaleStatus.COMPLETED.value
        record.completed_at = datetime.now(timezone.utc)

    async def _notify_threshold(self, seller_id: str, pending_balance_cents: int, sale_count: int) -> None:
        try:
            await self.notifier.notify_onboarding_threshold_reached(
                seller_id, pending_balance_cents, sale_count
            )
        except Exception as e:
            metrics.record_onboarding_notification("failed")
            logger.error("onboarding_notification_failed", seller_id=seller_id, error=str(e))
            return
        metrics.record_onboarding_notification("sent")

    async def get_earnings_summary(self, seller_id: str) -> Dict[str, Any]:
        """
        Dashboard view of a seller's held earnings.

        Raises:
            SellerNotFound: If the seller does not exist
        """
        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)
            state = await self.ledger.get_state(session, seller_id)
            status = VerificationStatus(seller.verification_status)
            payout_mode = seller.payout_mode
            has_account = seller.destination_account_id is not None

        return {
            "seller_id": seller_id,
            "pending_balance_cents": state.pending_balance_cents,
            "pending_balance": format_minor_units(state.pending_balance_cents),
            "sale_count": state.sale_count,
            "verification_status": status.value,
            "payout_mode": payout_mode,
            "has_destination_account": has_account,
            "needs_onboarding": (
                status is not VerificationStatus.VERIFIED
                and state.sale_count >= self.ledger.notification_threshold
            ),
            "notification_sent": state.notification_sent,
        }
