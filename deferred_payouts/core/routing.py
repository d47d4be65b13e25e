"""
Payment routing decision.

Decides, at sale-session creation time, whether a sale is split directly to
the seller or held entirely by the platform. The decision is taken once per
sale and never revisited.
"""
from typing import Optional

import structlog

from deferred_payouts.core.domain import RoutingPlan, RoutingStrategy
from deferred_payouts.core.errors import RoutingDecisionDegraded
from deferred_payouts.core.money import split_fee
from deferred_payouts.database.models import Seller
from deferred_payouts.integrations.stripe_client import StripeConnectClient, StripeError
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RoutingDecider:
    """
    Chooses DIRECT or PLATFORM_HELD for a sale.

    The provider's live capability state decides, not the locally cached
    verification status. Any doubt resolves to PLATFORM_HELD: holding funds
    is recoverable, a transfer to an unverified destination is not.
    """

    def __init__(self, stripe_client: StripeConnectClient):
        self.stripe_client = stripe_client

    async def _transfers_active(self, account_id: str) -> bool:
        """
        Live capability check.

        Raises:
            RoutingDecisionDegraded: If the provider could not be asked
        """
        try:
            account = await self.stripe_client.get_identity(account_id)
        except StripeError as e:
            raise RoutingDecisionDegraded(
                f"Capability check failed for {account_id}: {e}"
            ) from e
        return account.transfers_active

    async def decide_routing(
        self,
        seller: Seller,
        gross_cents: int,
        fee_rate_bp: int,
        destination_id: Optional[str] = None,
    ) -> RoutingPlan:
        """
        Build the routing plan for one sale.

        Args:
            seller: Seller receiving the sale
            gross_cents: Sale amount in cents
            fee_rate_bp: Platform fee in basis points
            destination_id: Destination account, defaults to the seller's stored one

        Returns:
            RoutingPlan: Strategy, fee split and metadata for the charge
        """
        split = split_fee(gross_cents, fee_rate_bp)
        account_id = destination_id or seller.destination_account_id

        strategy = RoutingStrategy.PLATFORM_HELD
        if account_id:
            try:
                if await self._transfers_active(account_id):
                    strategy = RoutingStrategy.DIRECT
            except RoutingDecisionDegraded as e:
                metrics.record_routing_degraded()
                logger.warning(
                    "routing_decision_degraded",
                    seller_id=seller.id,
                    account_id=account_id,
                    error=str(e),
                )

        metadata = {
            "seller_id": seller.id,
            "payment_type": strategy.value,
            "seller_amount_cents": str(split.net_cents),
            "platform_fee_cents": str(split.fee_cents),
            "onboarding_type": "deferred",
        }

        logger.info(
            "routing_decided",
            seller_id=seller.id,
            strategy=strategy.value,
            gross_cents=split.gross_cents,
            fee_cents=split.fee_cents,
            net_cents=split.net_cents,
        )

        return RoutingPlan(
            strategy=strategy,
            gross_cents=split.gross_cents,
            fee_cents=split.fee_cents,
            net_cents=split.net_cents,
            destination_id=account_id,
            metadata=metadata,
        )
