"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification
- Event deduplication using Redis (fast path, fails open)
- Dispatch of sale completion and account verification events to the core

Redis deduplication is only an optimisation. Correctness comes from the
core: sale completions are idempotent per checkout session and settlement is
idempotent per seller, so a re-delivered event never moves money twice.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import RoutingStrategy, SaleCompleted
from deferred_payouts.core.errors import DuplicateEventIgnored
from deferred_payouts.core.provisioning import AccountProvisioner
from deferred_payouts.core.sales import SaleSessionService
from deferred_payouts.core.settlement import SettlementReconciler

logger = structlog.get_logger(__name__)

EventHandler = Callable[[stripe.Event], Awaitable[Dict[str, Any]]]


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookHandler:
    """
    Handles Stripe webhook events with deduplication and processing.

    Events are marked processed only after their handler succeeds. A handler
    failure raises ``WebhookError`` so the endpoint answers 5xx and Stripe
    re-delivers the event.
    """

    def __init__(
        self,
        settings: Settings,
        sales: SaleSessionService,
        reconciler: SettlementReconciler,
        provisioner: AccountProvisioner,
        redis_client: Optional[aioredis.Redis] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings
            sales: Sale session service, applies completed sales
            reconciler: Settlement reconciler, handles verification changes
            provisioner: Account provisioner, handles revoked accounts
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = settings
        self.sales = sales
        self.reconciler = reconciler
        self.provisioner = provisioner
        self.redis_client = redis_client
        self._owns_redis = False
        self.event_handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "account.updated": self.handle_account_updated,
            "account.application.deauthorized": self.handle_account_deauthorized,
            "transfer.created": self.handle_transfer_created,
        }

        logger.info("webhook_handler_initialized", event_types=sorted(self.event_handlers))

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def verify_signature(
        self, payload: bytes, signature: str, secret: Optional[str] = None
    ) -> stripe.Event:
        """
        Verify webhook signature and construct event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Returns:
            stripe.Event: Verified Stripe event

        Raises:
            WebhookError: If signature verification fails
        """
        webhook_secret = secret or self.settings.stripe_webhook_secret

        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookError(f"Invalid webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event.id,
            event_type=event.type,
        )
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if webhook event has already been processed.

        Returns False whenever Redis is unavailable so the event is handled
        rather than lost.
        """
        if not self.settings.webhook_dedup_enabled:
            return False
        try:
            redis = await self._ensure_redis()
            exists = await redis.exists(f"webhook:processed:{event_id}")
            return bool(exists)
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(
        self, event_id: str, ttl_seconds: int = 86400 * 7  # 7 days
    ) -> None:
        """
        Mark webhook event as processed.

        Args:
            event_id: Stripe event ID
            ttl_seconds: Time to keep the record (default: 7 days)
        """
        if not self.settings.webhook_dedup_enabled:
            return
        try:
            redis = await self._ensure_redis()
            await redis.setex(f"webhook:processed:{event_id}", ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: stripe.Event) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Verified Stripe event

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            WebhookError: If event processing fails
        """
        event_id = event.id
        event_type = event.type

        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if await self.is_event_processed(event_id):
            logger.info(
                "webhook_event_already_processed",
                event_id=event_id,
                event_type=event_type,
            )
            return {
                "status": "duplicate",
                "event_id": event_id,
                "message": "Event already processed",
            }

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_no_handler", event_id=event_id, event_type=event_type)
            await self.mark_event_processed(event_id)
            return {
                "status": "no_handler",
                "event_id": event_id,
                "event_type": event_type,
            }

        try:
            result = await handler(event)
        except DuplicateEventIgnored as e:
            logger.info(
                "webhook_event_duplicate",
                event_id=event_id,
                event_type=event_type,
                correlation_key=e.correlation_key,
            )
            await self.mark_event_processed(event_id)
            return {
                "status": "duplicate",
                "event_id": event_id,
                "event_type": event_type,
            }
        except Exception as e:
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise WebhookError(f"Failed to process event {event_id}: {e}") from e

        await self.mark_event_processed(event_id)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
        )
        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    async def handle_checkout_session_completed(self, event: stripe.Event) -> Dict[str, Any]:
        """
        Handle checkout.session.completed.

        The routing decision travels in the session metadata written at
        session creation. An unknown or missing strategy tag is rejected
        outright: re-delivering the same event cannot fix it.
        """
        session = event.data.object
        session_id = session["id"]
        metadata = session.get("metadata") or {}

        if session.get("payment_status") == "unpaid":
            logger.info("checkout_session_unpaid", session_id=session_id)
            return {"status": "skipped", "reason": "unpaid"}

        try:
            strategy = RoutingStrategy.from_tag(
                metadata.get("payment_strategy") or metadata.get("payment_type")
            )
            completed = SaleCompleted(
                correlation_key=session_id,
                seller_id=metadata["seller_id"],
                strategy=strategy,
                net_cents=int(metadata.get("seller_amount_cents") or 0),
            )
        except (KeyError, ValueError) as e:
            logger.error(
                "checkout_session_metadata_rejected",
                session_id=session_id,
                metadata=dict(metadata),
                error=str(e),
            )
            return {"status": "rejected", "reason": str(e)}

        return await self.sales.complete_sale(completed)

    async def handle_account_updated(self, event: stripe.Event) -> Dict[str, Any]:
        """Handle account.updated: hand the verification change to the reconciler."""
        account = event.data.object
        capabilities = account.get("capabilities") or {}

        result = await self.reconciler.on_verification_changed(
            provider_account_id=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            transfers_active=capabilities.get("transfers") == "active",
        )
        return result.model_dump(mode="json")

    async def handle_account_deauthorized(self, event: stripe.Event) -> Dict[str, Any]:
        """Handle account.application.deauthorized: the destination account is gone."""
        account_id = event.get("account")
        if not account_id:
            logger.warning("deauthorization_without_account", event_id=event.id)
            return {"status": "skipped", "reason": "no account"}

        seller_id = await self.provisioner.mark_identity_lost(account_id)
        return {"account_id": account_id, "seller_id": seller_id}

    async def handle_transfer_created(self, event: stripe.Event) -> Dict[str, Any]:
        transfer = event.data.object
        logger.info(
            "transfer_created_notification",
            transfer_id=transfer["id"],
            destination=transfer.get("destination"),
            amount_cents=transfer.get("amount"),
        )
        return {"transfer_id": transfer["id"]}

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
