"""External integrations: Stripe Connect, webhooks and seller notifications."""
from .notifications import LoggingNotifier, Notifier
from .stripe_client import StripeConnectClient, StripeError, StripeErrorType

__all__ = [
    "LoggingNotifier",
    "Notifier",
    "StripeConnectClient",
    "StripeError",
    "StripeErrorType",
]
