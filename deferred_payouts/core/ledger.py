"""
Earnings ledger.

The single source of truth for how much the platform owes each seller.
Balances only grow through platform-held sale completions and only shrink
through a confirmed settlement transfer.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deferred_payouts.core.domain import LedgerEntryType, LedgerState
from deferred_payouts.core.errors import DuplicateEventIgnored, SellerNotFound
from deferred_payouts.database.models import LedgerEntry, Seller
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class EarningsLedger:
    """
    Seller-scoped accumulator of platform-held liabilities.

    Every method runs inside the caller's session, and callers hold the
    per-seller lock for the surrounding unit of work. Balance changes are
    single SQL updates relative to the stored value, so they stay correct
    even if two writers race.
    """

    def __init__(self, notification_threshold: int = 3):
        """
        Initialize ledger.

        Args:
            notification_threshold: Held sales before the seller is nudged to onboard
        """
        self.notification_threshold = notification_threshold

    @staticmethod
    async def _load(session: AsyncSession, seller_id: str, for_update: bool = False) -> Seller:
        stmt = select(Seller).where(Seller.id == seller_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt.execution_options(populate_existing=True))
        seller = result.scalar_one_or_none()
        if seller is None:
            raise SellerNotFound(seller_id)
        return seller

    @staticmethod
    def _state(seller: Seller, threshold_crossed: bool = False) -> LedgerState:
        return LedgerState(
            seller_id=seller.id,
            pending_balance_cents=seller.pending_balance_cents,
            sale_count=seller.sale_count,
            notification_sent=seller.notification_sent,
            last_notification_at=seller.last_notification_at,
            threshold_crossed=threshold_crossed,
        )

    async def get_state(self, session: AsyncSession, seller_id: str) -> LedgerState:
        """Current ledger state for a seller."""
        return self._state(await self._load(session, seller_id))

    async def record_sale(
        self,
        session: AsyncSession,
        seller_id: str,
        net_cents: int,
        correlation_key: str,
    ) -> LedgerState:
        """
        Add a platform-held sale to the seller's pending balance.

        Idempotent per correlation key: a second call with the same key
        changes nothing and raises ``DuplicateEventIgnored``.

        Args:
            session: Database session
            seller_id: Seller identifier
            net_cents: Seller's share of the sale in cents
            correlation_key: Checkout session ID of the sale

        Returns:
            LedgerState: State after the increment; ``threshold_crossed`` is
            set on the one call that flips the notification flag

        Raises:
            DuplicateEventIgnored: If the sale was already recorded
            SellerNotFound: If the seller does not exist
        """
        if net_cents < 0:
            raise ValueError("Net amount must not be negative")

        existing = await session.execute(
            select(LedgerEntry.id).where(LedgerEntry.correlation_key == correlation_key)
        )
        if existing.scalar_one_or_none() is not None:
            metrics.record_ledger_sale("duplicate")
            logger.info(
                "ledger_sale_duplicate_ignored",
                seller_id=seller_id,
                correlation_key=correlation_key,
            )
            raise DuplicateEventIgnored(correlation_key)

        result = await session.execute(
            update(Seller)
            .where(Seller.id == seller_id)
            .values(
                pending_balance_cents=Seller.pending_balance_cents + net_cents,
                sale_count=Seller.sale_count + 1,
            )
        )
        if result.rowcount == 0:
            raise SellerNotFound(seller_id)

        seller = await self._load(session, seller_id)

        session.add(
            LedgerEntry(
                seller_id=seller_id,
                correlation_key=correlation_key,
                entry_type=LedgerEntryType.SALE_HELD.value,
                amount_cents=net_cents,
                balance_after_cents=seller.pending_balance_cents,
            )
        )
        try:
            await session.flush()
        except IntegrityError:
            # Lost a race with another delivery of the same event.
            metrics.record_ledger_sale("duplicate")
            raise DuplicateEventIgnored(correlation_key)

        threshold_crossed = await self._check_threshold(session, seller)

        metrics.record_ledger_sale("applied", net_cents)
        logger.info(
            "ledger_sale_recorded",
            seller_id=seller_id,
            correlation_key=correlation_key,
            net_cents=net_cents,
            pending_balance_cents=seller.pending_balance_cents,
            sale_count=seller.sale_count,
        )

        return self._state(seller, threshold_crossed=threshold_crossed)

    async def _check_threshold(self, session: AsyncSession, seller: Seller) -> bool:
        """Flip the notification flag once the sale count reaches the threshold."""
        if seller.notification_sent or seller.sale_count < self.notification_threshold:
            return False

        now = datetime.now(timezone.utc)
        result = await session.execute(
            update(Seller)
            .where(Seller.id == seller.id, Seller.notification_sent.is_(False))
            .values(notification_sent=True, last_notification_at=now)
        )
        if result.rowcount == 0:
            return False

        seller.notification_sent = True
        seller.last_notification_at = now
        logger.info(
            "ledger_notification_threshold_reached",
            seller_id=seller.id,
            sale_count=seller.sale_count,
            threshold=self.notification_threshold,
        )
        return True

    async def clear(
        self,
        session: AsyncSession,
        seller_id: str,
        settled_cents: Optional[int] = None,
        correlation_key: Optional[str] = None,
    ) -> int:
        """
        Remove settled liability from the seller's pending balance.

        With ``settled_cents`` only that amount is removed, so a sale recorded
        after the settlement snapshot stays owed. Without it the balance is
        zeroed. The sale count is never reset.

        Args:
            session: Database session
            seller_id: Seller identifier
            settled_cents: Amount confirmed as transferred
            correlation_key: Settlement idempotency key, recorded on the ledger entry

        Returns:
            int: Pending balance before clearing
        """
        seller = await self._load(session, seller_id, for_update=True)
        previous = seller.pending_balance_cents
        amount = previous if settled_cents is None else settled_cents

        if amount > previous:
            raise ValueError(
                f"Cannot clear {amount} cents from a pending balance of {previous}"
            )

        await session.execute(
            update(Seller)
            .where(Seller.id == seller_id)
            .values(pending_balance_cents=Seller.pending_balance_cents - amount)
        )
        seller = await self._load(session, seller_id)

        if amount > 0 and correlation_key is not None:
            session.add(
                LedgerEntry(
                    seller_id=seller_id,
                    correlation_key=correlation_key,
                    entry_type=LedgerEntryType.SETTLEMENT.value,
                    amount_cents=-amount,
                    balance_after_cents=seller.pending_balance_cents,
                )
            )
            await session.flush()

        logger.info(
            "ledger_cleared",
            seller_id=seller_id,
            previous_balance_cents=previous,
            cleared_cents=amount,
            pending_balance_cents=seller.pending_balance_cents,
        )
        return previous
