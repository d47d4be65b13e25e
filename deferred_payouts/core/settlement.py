"""
Settlement reconciler.

Runs when the provider reports a change in a destination account's
verification state. Once the account is fully verified, the seller's whole
pending balance is transferred in one movement and the seller is switched to
automatic payouts.

Ordering is what keeps money safe:
1. Persist a PENDING settlement (amount snapshot + idempotency key).
2. Transfer with that key.
3. Only after the transfer is confirmed, clear the ledger and mark the
   seller verified.

A crash between 2 and 3 leaves the PENDING row behind; the next delivery
of the event reuses its amount and key, so the provider returns the original
transfer instead of sending the money twice.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import (
    PayoutMode,
    SettlementOutcome,
    SettlementResult,
    SettlementStatus,
    VerificationChanged,
    VerificationStatus,
)
from deferred_payouts.core.errors import OrphanedEvent, TransferFailed
from deferred_payouts.core.ledger import EarningsLedger
from deferred_payouts.core.locks import SellerLocks
from deferred_payouts.core.provisioning import get_seller, get_seller_by_account
from deferred_payouts.database.connection import Database
from deferred_payouts.database.models import Settlement
from deferred_payouts.integrations.stripe_client import (
    StripeConnectClient,
    StripeError,
    StripeErrorType,
)
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SettlementReconciler:
    """Transfers held earnings to sellers once they are verified."""

    def __init__(
        self,
        db: Database,
        stripe_client: StripeConnectClient,
        ledger: EarningsLedger,
        locks: SellerLocks,
        settings: Settings,
    ):
        self.db = db
        self.stripe_client = stripe_client
        self.ledger = ledger
        self.locks = locks
        self.currency = settings.settlement_currency

    async def on_verification_changed(
        self,
        provider_account_id: str,
        charges_enabled: bool,
        transfers_active: bool,
    ) -> SettlementResult:
        """
        Handle one verification-status change.

        Safe to call repeatedly with the same event: once the balance is
        settled, later deliveries find nothing to transfer.

        Args:
            provider_account_id: Destination account ID
            charges_enabled: Whether the account can accept charges
            transfers_active: Whether the transfers capability is active

        Returns:
            SettlementResult: What was done

        Raises:
            TransferFailed: If the settlement transfer was not confirmed;
                state is unchanged and the event should be re-delivered
        """
        event = VerificationChanged(
            provider_account_id=provider_account_id,
            charges_enabled=charges_enabled,
            transfers_active=transfers_active,
        )

        if not event.fully_verified:
            logger.info(
                "verification_incomplete",
                account_id=provider_account_id,
                charges_enabled=charges_enabled,
                transfers_active=transfers_active,
            )
            metrics.record_settlement(SettlementOutcome.NOT_VERIFIED.value)
            return SettlementResult(outcome=SettlementOutcome.NOT_VERIFIED)

        try:
            seller_id = await self._resolve_seller(provider_account_id)
            async with self.locks.hold(seller_id):
                result = await self._reconcile(seller_id, provider_account_id)
        except OrphanedEvent as e:
            logger.warning("verification_event_orphaned", account_id=e.provider_account_id)
            metrics.record_settlement(SettlementOutcome.ORPHANED.value)
            return SettlementResult(outcome=SettlementOutcome.ORPHANED)

        metrics.record_settlement(result.outcome.value, result.amount_cents)
        return result

    async def _resolve_seller(self, account_id: str) -> str:
        async with self.db.unit_of_work() as session:
            seller = await get_seller_by_account(session, account_id)
            if seller is None:
                raise OrphanedEvent(account_id)
            return seller.id

    @staticmethod
    async def _pending_settlement(session: AsyncSession, seller_id: str) -> Optional[Settlement]:
        result = await session.execute(
            select(Settlement)
            .where(
                Settlement.seller_id == seller_id,
                Settlement.status == SettlementStatus.PENDING.value,
            )
            .order_by(Settlement.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _next_idempotency_key(session: AsyncSession, seller_id: str) -> str:
        result = await session.execute(
            select(func.count(Settlement.id)).where(Settlement.seller_id == seller_id)
        )
        sequence = (result.scalar_one() or 0) + 1
        return f"settlement:{seller_id}:{sequence}"

    async def _reconcile(self, seller_id: str, account_id: str) -> SettlementResult:
        """Settle one seller. Caller holds the seller lock."""
        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)
            if seller.destination_account_id != account_id:
                # The account was replaced after the event was resolved.
                raise OrphanedEvent(account_id)

            settlement = await self._pending_settlement(session, seller_id)
            resumed = settlement is not None

            if settlement is None:
                if seller.pending_balance_cents <= 0:
                    seller.verification_status = VerificationStatus.VERIFIED.value
                    flip_needed = seller.payout_mode != PayoutMode.AUTOMATIC.value
                    settlement_snapshot = None
                else:
                    settlement = Settlement(
                        seller_id=seller_id,
                        idempotency_key=await self._next_idempotency_key(session, seller_id),
                        destination_account_id=account_id,
                        amount_cents=seller.pending_balance_cents,
                        sale_count=seller.sale_count,
                        currency=self.currency,
                        status=SettlementStatus.PENDING.value,
                    )
                    session.add(settlement)
                    await session.flush()
            else:
                logger.info(
                    "settlement_resumed",
                    seller_id=seller_id,
                    settlement_id=str(settlement.id),
                    idempotency_key=settlement.idempotency_key,
                    destination_account_id=settlement.destination_account_id,
                    amount_cents=settlement.amount_cents,
                )

            if settlement is not None:
                # A resumed row is always retried against its own destination;
                # the key may already have moved money there.
                settlement_snapshot = (
                    settlement.id,
                    settlement.idempotency_key,
                    settlement.destination_account_id,
                    settlement.amount_cents,
                    settlement.sale_count,
                )

        if settlement_snapshot is None:
            logger.info("seller_verified_without_pending_earnings", seller_id=seller_id)
            if flip_needed:
                await self._enable_automatic_payouts(seller_id, account_id)
            return SettlementResult(
                outcome=SettlementOutcome.VERIFIED_NO_BALANCE,
                seller_id=seller_id,
            )

        settlement_id, idempotency_key, destination_id, amount_cents, sale_count = settlement_snapshot
        transfer_id = await self._transfer(
            settlement_id,
            seller_id,
            destination_id,
            idempotency_key,
            amount_cents,
            sale_count,
            resumed=resumed,
        )

        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)
            await self.ledger.clear(
                session,
                seller_id,
                settled_cents=amount_cents,
                correlation_key=idempotency_key,
            )
            settlement = await session.get(Settlement, settlement_id)
            settlement.status = SettlementStatus.COMPLETED.value
            settlement.transfer_id = transfer_id
            settlement.completed_at = datetime.now(timezone.utc)
            seller.verification_status = VerificationStatus.VERIFIED.value

        logger.info(
            "pending_earnings_settled",
            seller_id=seller_id,
            transfer_id=transfer_id,
            destination_id=destination_id,
            amount_cents=amount_cents,
            sale_count=sale_count,
        )

        await self._enable_automatic_payouts(seller_id, account_id)

        return SettlementResult(
            outcome=SettlementOutcome.SETTLED,
            seller_id=seller_id,
            amount_cents=amount_cents,
            transfer_id=transfer_id,
        )

    async def _transfer(
        self,
        settlement_id: object,
        seller_id: str,
        destination_id: str,
        idempotency_key: str,
        amount_cents: int,
        sale_count: int,
        resumed: bool = False,
    ) -> str:
        """
        Issue the settlement transfer.

        A rejection of a fresh key closes the settlement as FAILED so the
        next attempt starts with a new key. Every other failure keeps the
        settlement PENDING and the retry reuses the key: timeouts and
        connection errors may have reached the provider, and on a resumed
        row an earlier attempt may already have moved the money.

        Raises:
            TransferFailed: If the transfer was not confirmed
        """
        try:
            return await self.stripe_client.transfer(
                destination_id=destination_id,
                amount_cents=amount_cents,
                currency=self.currency,
                idempotency_key=idempotency_key,
                metadata={
                    "seller_user_id": seller_id,
                    "settlement_id": str(settlement_id),
                    "earnings_count": str(sale_count),
                    "onboarding_type": "deferred_completion",
                },
                description=f"Transfer of pending earnings from {sale_count} sales",
            )
        except StripeError as e:
            rejected = e.error_type is StripeErrorType.PERMANENT and not resumed
            async with self.db.unit_of_work() as session:
                settlement = await session.get(Settlement, settlement_id)
                settlement.error_message = str(e)
                if rejected:
                    settlement.status = SettlementStatus.FAILED.value
                    settlement.completed_at = datetime.now(timezone.utc)

            metrics.record_transfer_failure("rejected" if rejected else "outcome_unknown")
            logger.error(
                "settlement_transfer_failed",
                seller_id=seller_id,
                destination_id=destination_id,
                idempotency_key=idempotency_key,
                amount_cents=amount_cents,
                resumed=resumed,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise TransferFailed(
                f"Settlement transfer for seller {seller_id} failed: {e}",
                seller_id=seller_id,
                outcome_unknown=not rejected,
            ) from e

    async def _enable_automatic_payouts(self, seller_id: str, account_id: str) -> bool:
        """
        Switch a verified seller to automatic payouts.

        A failure here does not undo the settlement; the seller stays on
        manual payouts and the next delivery of the event tries again.
        """
        try:
            await self.stripe_client.update_payout_schedule(account_id, PayoutMode.AUTOMATIC)
        except StripeError as e:
            logger.error(
                "payout_schedule_update_failed",
                seller_id=seller_id,
                account_id=account_id,
                error_type=e.error_type.value,
                error=str(e),
            )
            return False

        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)
            seller.payout_mode = PayoutMode.AUTOMATIC.value

        logger.info("payouts_switched_to_automatic", seller_id=seller_id)
        return True
