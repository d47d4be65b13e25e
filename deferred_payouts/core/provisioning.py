"""
Account provisioning gate.

Makes sure a seller has a destination account before money is routed to
them. New accounts are minimal Express accounts with manual payouts, so a
seller can start selling before verification.
"""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import PayoutMode, VerificationStatus
from deferred_payouts.core.errors import (
    DeferredPayoutError,
    ProvisioningFailed,
    SellerEmailTaken,
    SellerNotFound,
)
from deferred_payouts.core.locks import SellerLocks
from deferred_payouts.database.connection import Database
from deferred_payouts.database.models import Seller
from deferred_payouts.integrations.stripe_client import (
    StripeConnectClient,
    StripeError,
    StripeErrorType,
)
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

REQUESTED_CAPABILITIES = ["card_payments", "transfers"]
ACCOUNT_MISSING_CODE = "resource_missing"


async def get_seller(session: AsyncSession, seller_id: str) -> Seller:
    """Load a seller or raise ``SellerNotFound``."""
    seller = await session.get(Seller, seller_id, populate_existing=True)
    if seller is None:
        raise SellerNotFound(seller_id)
    return seller


async def get_seller_by_account(session: AsyncSession, account_id: str) -> Optional[Seller]:
    """Look up a seller by destination account ID."""
    result = await session.execute(
        select(Seller)
        .where(Seller.destination_account_id == account_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class AccountProvisioner:
    """
    Creates and tracks seller destination accounts.

    At most one account is created per seller: the whole check-then-create
    sequence runs under the per-seller lock, and the creation call carries a
    deterministic idempotency key so a timed-out attempt can be repeated.
    """

    def __init__(
        self,
        db: Database,
        stripe_client: StripeConnectClient,
        locks: SellerLocks,
        settings: Settings,
    ):
        self.db = db
        self.stripe_client = stripe_client
        self.locks = locks
        self.settings = settings

    async def register_seller(
        self,
        seller_id: str,
        email: str,
        country: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Seller:
        """
        Find or create a seller record.

        New sellers start unprovisioned with an empty ledger.

        Raises:
            SellerEmailTaken: If another seller already uses the email
        """
        async with self.locks.hold(seller_id):
            try:
                async with self.db.unit_of_work() as session:
                    seller = await session.get(Seller, seller_id)
                    if seller is not None:
                        return seller

                    seller = Seller(
                        id=seller_id,
                        email=email,
                        country=(country or self.settings.default_country).upper(),
                        first_name=first_name,
                        last_name=last_name,
                        verification_status=VerificationStatus.UNPROVISIONED.value,
                        payout_mode=PayoutMode.MANUAL.value,
                        provision_generation=1,
                        pending_balance_cents=0,
                        sale_count=0,
                        notification_sent=False,
                    )
                    session.add(seller)
            except IntegrityError as e:
                logger.warning("seller_email_taken", seller_id=seller_id)
                raise SellerEmailTaken(email) from e

        logger.info("seller_registered", seller_id=seller_id, country=seller.country)
        return seller

    async def ensure_destination_account(self, seller_id: str) -> str:
        """
        Return the seller's destination account, creating one if needed.

        Args:
            seller_id: Seller identifier

        Returns:
            str: Destination account ID

        Raises:
            SellerNotFound: If the seller does not exist
            ProvisioningFailed: If the provider rejects or times out on creation
        """
        async with self.locks.hold(seller_id):
            async with self.db.unit_of_work() as session:
                seller = await get_seller(session, seller_id)

                if seller.destination_account_id:
                    if await self._account_exists(seller.destination_account_id):
                        metrics.record_provisioning("existing")
                        return seller.destination_account_id

                    logger.warning(
                        "destination_account_missing",
                        seller_id=seller_id,
                        account_id=seller.destination_account_id,
                    )
                    self._forget_account(seller)

                account_id = await self._create_account(seller)

                seller.destination_account_id = account_id
                seller.verification_status = VerificationStatus.PROVISIONED_UNVERIFIED.value
                seller.payout_mode = PayoutMode.MANUAL.value

        metrics.record_provisioning("created")
        logger.info("destination_account_provisioned", seller_id=seller_id, account_id=account_id)
        return account_id

    async def _account_exists(self, account_id: str) -> bool:
        """
        Confirm a stored account still exists with the provider.

        Only the provider saying the account does not exist counts as
        missing. Every other failure keeps the stored account, so no error
        short of that can create a second identity for the seller.
        """
        try:
            await self.stripe_client.get_identity(account_id)
        except StripeError as e:
            if e.error_type is StripeErrorType.PERMANENT and e.code == ACCOUNT_MISSING_CODE:
                return False
            logger.warning(
                "destination_account_check_degraded",
                account_id=account_id,
                error_type=e.error_type.value,
                error=str(e),
            )
        return True

    @staticmethod
    def _forget_account(seller: Seller) -> None:
        seller.destination_account_id = None
        seller.verification_status = VerificationStatus.UNPROVISIONED.value
        seller.payout_mode = PayoutMode.MANUAL.value
        seller.provision_generation += 1

    async def _create_account(self, seller: Seller) -> str:
        idempotency_key = f"account:{seller.id}:{seller.provision_generation}"
        try:
            return await self.stripe_client.create_identity(
                country=seller.country,
                email=seller.email,
                capabilities=REQUESTED_CAPABILITIES,
                payout_mode=PayoutMode.MANUAL,
                idempotency_key=idempotency_key,
                metadata={
                    "onboarding_type": "deferred",
                    "platform_user_id": seller.id,
                },
                first_name=seller.first_name,
                last_name=seller.last_name,
            )
        except StripeError as e:
            metrics.record_provisioning("failed")
            logger.error(
                "destination_account_creation_failed",
                seller_id=seller.id,
                idempotency_key=idempotency_key,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise ProvisioningFailed(f"Account creation failed for seller {seller.id}: {e}") from e

    async def mark_identity_lost(self, account_id: str) -> Optional[str]:
        """
        Handle the provider revoking a destination account.

        The seller goes back to unprovisioned and must be provisioned again.
        The pending balance is kept: it is still owed.

        Returns:
            Optional[str]: Affected seller ID, or None for unknown accounts
        """
        async with self.db.unit_of_work() as session:
            seller = await get_seller_by_account(session, account_id)
            if seller is None:
                logger.info("identity_loss_for_unknown_account", account_id=account_id)
                return None
            seller_id = seller.id

        async with self.locks.hold(seller_id):
            async with self.db.unit_of_work() as session:
                seller = await get_seller(session, seller_id)
                if seller.destination_account_id != account_id:
                    return seller_id
                self._forget_account(seller)

        logger.warning(
            "destination_account_lost",
            seller_id=seller_id,
            account_id=account_id,
        )
        return seller_id

    async def create_onboarding_link(self, seller_id: str) -> str:
        """
        Hosted onboarding link for a seller to finish verification.

        Raises:
            DeferredPayoutError: If the seller has nothing to onboard
        """
        async with self.db.unit_of_work() as session:
            seller = await get_seller(session, seller_id)
            account_id = seller.destination_account_id
            status = VerificationStatus(seller.verification_status)

        if account_id is None:
            raise DeferredPayoutError(f"Seller {seller_id} has no destination account yet")
        if status is VerificationStatus.VERIFIED:
            raise DeferredPayoutError(f"Seller {seller_id} is already verified")

        base_url = self.settings.base_url
        try:
            return await self.stripe_client.create_account_link(
                account_id,
                refresh_url=f"{base_url}/dashboard?onboarding=refresh",
                return_url=f"{base_url}/dashboard?onboarding=complete",
            )
        except StripeError as e:
            raise DeferredPayoutError(f"Could not create onboarding link: {e}") from e
