"""
Seller notification hooks.

Delivery (email, SMS) lives outside this service; the core only calls a
``Notifier``. The default implementation writes a structured log line that a
downstream consumer can pick up.
"""
from typing import Protocol

import structlog

from deferred_payouts.core.money import format_minor_units

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Best-effort, fire-and-forget seller notifications."""

    async def notify_onboarding_threshold_reached(
        self, seller_id: str, pending_balance_cents: int, sale_count: int
    ) -> None:
        ...


class LoggingNotifier:
    """Notifier that only logs."""

    async def notify_onboarding_threshold_reached(
        self, seller_id: str, pending_balance_cents: int, sale_count: int
    ) -> None:
        logger.info(
            "seller_onboarding_notification",
            seller_id=seller_id,
            pending_balance=format_minor_units(pending_balance_cents),
            pending_balance_cents=pending_balance_cents,
            sale_count=sale_count,
        )
