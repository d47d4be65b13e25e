"""
Stripe Connect client with timeouts, retry logic and error classification.

Implements:
- Caller-visible timeout on every call (timeout = outcome unknown)
- Exponential backoff for transient errors on read-only calls
- Circuit breaker pattern
- Idempotency keys on every mutating call
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from deferred_payouts.config import Settings
from deferred_payouts.core.domain import PayoutMode
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PAYOUT_INTERVALS = {
    PayoutMode.MANUAL: "manual",
    PayoutMode.AUTOMATIC: "daily",
}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff
    UNKNOWN_OUTCOME = "unknown_outcome"  # Timed out; retry only with the same idempotency key


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
        code: Optional[str] = None,
    ):
        """
        Initialize Stripe error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
            code: Stripe error code, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


@dataclass(frozen=True)
class AccountSnapshot:
    """The parts of a connected account the core reads."""

    id: str
    charges_enabled: bool
    transfers_capability: Optional[str]
    card_payments_capability: Optional[str]

    @property
    def transfers_active(self) -> bool:
        return self.transfers_capability == "active"

    @classmethod
    def from_stripe(cls, account: Any) -> "AccountSnapshot":
        capabilities = account.get("capabilities") or {}
        return cls(
            id=account["id"],
            charges_enabled=bool(account.get("charges_enabled")),
            transfers_capability=capabilities.get("transfers"),
            card_payments_capability=capabilities.get("card_payments"),
        )


@dataclass(frozen=True)
class CheckoutSession:
    """A hosted checkout session."""

    id: str
    url: Optional[str]


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check whether a call may go through.

        Raises:
            StripeError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise StripeError(
                    "Circuit breaker is open",
                    StripeErrorType.TRANSIENT,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class StripeConnectClient:
    """
    Wrapper for the Stripe Connect APIs the payout core depends on.

    Covers the identity provider (connected accounts), the funds-movement
    provider (transfers) and hosted checkout sessions.
    """

    def __init__(self, settings: Settings, circuit_breaker: Optional[CircuitBreaker] = None):
        """
        Initialize Stripe client.

        Args:
            settings: Application settings
            circuit_breaker: Optional circuit breaker
        """
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.timeout_seconds = settings.stripe_timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, stripe.IdempotencyError):
            # The key was already used with other parameters; that request may have succeeded.
            return StripeErrorType.UNKNOWN_OUTCOME
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.PermissionError,
                stripe.AuthenticationError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _to_error(self, operation: str, error: stripe.StripeError) -> StripeError:
        """Classify a Stripe SDK error and log it."""
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return StripeError(
            message=str(error),
            error_type=error_type,
            original_error=error,
            code=getattr(error, "code", None),
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run a blocking Stripe SDK call in a worker thread under the timeout.

        Raises:
            StripeError: Classified error; UNKNOWN_OUTCOME on timeout
        """
        self.circuit_breaker.before_call()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            self.circuit_breaker.on_failure()
            metrics.record_stripe_api_error(StripeErrorType.UNKNOWN_OUTCOME.value)
            logger.error(
                "stripe_api_timeout",
                operation=operation,
                timeout_seconds=self.timeout_seconds,
            )
            raise StripeError(
                f"Stripe {operation} timed out after {self.timeout_seconds}s",
                StripeErrorType.UNKNOWN_OUTCOME,
            )
        except stripe.StripeError as e:
            self.circuit_breaker.on_failure()
            raise self._to_error(operation, e) from e

        self.circuit_breaker.on_success()
        return result

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
        """
        Create a minimal Express account for deferred onboarding.

        Args:
            country: Two-letter country code
            email: Seller email
            capabilities: Capabilities to request (e.g. 'transfers')
            payout_mode: Initial payout schedule
            idempotency_key: Idempotency key for preventing duplicate accounts
            metadata: Optional metadata
            first_name: Optional individual first name
            last_name: Optional individual last name

        Returns:
            str: Connected account ID

        Raises:
            StripeError: If account creation fails
        """
        logger.info(
            "creating_connected_account",
            country=country,
            idempotency_key=idempotency_key,
        )

        params: Dict[str, Any] = {
            "type": "express",
            "country": country,
            "email": email,
            "business_type": "individual",
            "capabilities": {name: {"requested": True} for name in capabilities},
            "business_profile": {
                "product_description": "Online marketplace sales",
                "mcc": "5699",
            },
            "settings": {
                "payouts": {"schedule": {"interval": PAYOUT_INTERVALS[payout_mode]}}
            },
            "metadata": metadata or {},
        }
        if first_name and last_name:
            params["individual"] = {
                "first_name": first_name,
                "last_name": last_name,
                "email": email,
                "address": {"country": country},
            }

        account = await self._call(
            "create_account",
            lambda: stripe.Account.create(idempotency_key=idempotency_key, **params),
        )

        logger.info("connected_account_created", account_id=account.id)
        return account.id

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def get_identity(self, account_id: str) -> AccountSnapshot:
        """
        Retrieve a connected account's live capability state.

        Args:
            account_id: Connected account ID

        Returns:
            AccountSnapshot: Current account state

        Raises:
            StripeError: If retrieval fails
        """
        logger.info("retrieving_connected_account", account_id=account_id)

        account = await self._call(
            "retrieve_account", lambda: stripe.Account.retrieve(account_id)
        )
        return AccountSnapshot.from_stripe(account)

    async def update_payout_schedule(self, account_id: str, mode: PayoutMode) -> None:
        """
        Switch a connected account's payout schedule.

        Args:
            account_id: Connected account ID
            mode: Target payout mode

        Raises:
            StripeError: If the update fails
        """
        interval = PAYOUT_INTERVALS[mode]
        logger.info("updating_payout_schedule", account_id=account_id, interval=interval)

        await self._call(
            "update_payout_schedule",
            lambda: stripe.Account.modify(
                account_id,
                settings={"payouts": {"schedule": {"interval": interval}}},
            ),
        )

    async def create_account_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        """
        Create a hosted onboarding link for a connected account.

        Returns:
            str: Onboarding URL
        """
        link = await self._call(
            "create_account_link",
            lambda: stripe.AccountLink.create(
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            ),
        )

        logger.info("account_link_created", account_id=account_id)
        return link.url

    async def transfer(
        self,
        destination_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Move funds from the platform balance to a connected account.

        Args:
            destination_id: Connected account ID
            amount_cents: Amount in cents
            currency: Currency code
            idempotency_key: Idempotency key; retries must reuse it
            metadata: Optional metadata
            description: Optional description

        Returns:
            str: Transfer ID

        Raises:
            StripeError: If the transfer fails or its outcome is unknown
        """
        logger.info(
            "creating_transfer",
            destination=destination_id,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "amount": amount_cents,
                "currency": currency.lower(),
                "destination": destination_id,
                "metadata": metadata or {},
                "idempotency_key": idempotency_key,
            }
            if description:
                kwargs["description"] = description
            return stripe.Transfer.create(**kwargs)

        transfer = await self._call("create_transfer", _create)

        logger.info("transfer_created", transfer_id=transfer.id)
        return transfer.id

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
        """
        Create a hosted checkout session for a single product.

        Returns:
            CheckoutSession: Session ID and redirect URL

        Raises:
            StripeError: If session creation fails
        """
        logger.info(
            "creating_checkout_session",
            amount_cents=amount_cents,
            currency=currency,
        )

        product_data: Dict[str, Any] = {"name": product_name}
        if product_description:
            product_data["description"] = product_description
        if images:
            product_data["images"] = images

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "payment_method_types": ["card"],
                "mode": "payment",
                "line_items": [
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "product_data": product_data,
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                "payment_intent_data": payment_intent_data,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
            if customer_email:
                kwargs["customer_email"] = customer_email
            return stripe.checkout.Session.create(**kwargs)

        session = await self._call("create_checkout_session", _create)

        logger.info("checkout_session_created", session_id=session.id)
        return CheckoutSession(id=session.id, url=session.url)

    async def ping(self) -> None:
        """Minimal API call used by health checks."""
        await self._call("ping", lambda: stripe.Balance.retrieve())
