"""Exceptions raised by the deferred payouts core."""
from typing import Optional


class DeferredPayoutError(Exception):
    """Base exception for deferred payout errors."""

    pass


class SellerNotFound(DeferredPayoutError):
    """Raised when a seller reference does not resolve to a seller."""

    def __init__(self, seller_id: str):
        super().__init__(f"Seller {seller_id} not found")
        self.seller_id = seller_id


class ProvisioningFailed(DeferredPayoutError):
    """Raised when the provider refuses to create a destination account."""

    pass


class RoutingDecisionDegraded(DeferredPayoutError):
    """
    Raised when the live capability check cannot be completed.

    Never reaches callers of the routing decision: it is converted to a
    platform-held plan.
    """

    pass


class DuplicateEventIgnored(DeferredPayoutError):
    """Raised when an event with an already-applied correlation key arrives."""

    def __init__(self, correlation_key: str):
        super().__init__(f"Event {correlation_key} already processed")
        self.correlation_key = correlation_key


class TransferFailed(DeferredPayoutError):
    """
    Raised when a settlement transfer was not confirmed.

    ``outcome_unknown`` is set when the provider call timed out; the transfer
    may or may not exist and must only be retried with the same idempotency key.
    """

    def __init__(
        self,
        message: str,
        seller_id: Optional[str] = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(message)
        self.seller_id = seller_id
        self.outcome_unknown = outcome_unknown


class OrphanedEvent(DeferredPayoutError):
    """Raised when a provider event references an unknown destination account."""

    def __init__(self, provider_account_id: str):
        super().__init__(f"No seller for provider account {provider_account_id}")
        self.provider_account_id = provider_account_id


class SaleSessionFailed(DeferredPayoutError):
    """Raised when a sale session could not be created."""

    pass


class SellerEmailTaken(DeferredPayoutError):
    """Raised when a new seller registers with another seller's email."""

    def __init__(self, email: str):
        super().__init__(f"Email {email} is already registered to another seller")
        self.email = email
