"""
Service wiring for the API.

Everything the routes need is built once per application and kept on
``app.state.container``; nothing is created at import time.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Request

from deferred_payouts.config import Settings
from deferred_payouts.core.ledger import EarningsLedger
from deferred_payouts.core.locks import SellerLocks, build_seller_locks
from deferred_payouts.core.provisioning import AccountProvisioner
from deferred_payouts.core.routing import RoutingDecider
from deferred_payouts.core.sales import SaleSessionService
from deferred_payouts.core.settlement import SettlementReconciler
from deferred_payouts.database.connection import Database
from deferred_payouts.integrations.notifications import LoggingNotifier, Notifier
from deferred_payouts.integrations.stripe_client import StripeConnectClient
from deferred_payouts.integrations.webhook_handler import WebhookHandler
from deferred_payouts.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    """All long-lived services of one application instance."""

    settings: Settings
    db: Database
    stripe_client: StripeConnectClient
    locks: SellerLocks
    ledger: EarningsLedger
    provisioner: AccountProvisioner
    router: RoutingDecider
    sales: SaleSessionService
    reconciler: SettlementReconciler
    webhooks: WebhookHandler
    health: HealthCheck

    @classmethod
    def build(
        cls,
        settings: Settings,
        db: Optional[Database] = None,
        stripe_client: Optional[StripeConnectClient] = None,
        locks: Optional[SellerLocks] = None,
        notifier: Optional[Notifier] = None,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> "ServiceContainer":
        """
        Wire services from settings.

        Any collaborator can be passed in to replace the default built from
        settings.
        """
        db = db or Database.from_settings(settings)
        stripe_client = stripe_client or StripeConnectClient(settings)
        locks = locks or build_seller_locks(settings)
        notifier = notifier or LoggingNotifier()

        ledger = EarningsLedger(notification_threshold=settings.notification_threshold)
        provisioner = AccountProvisioner(db, stripe_client, locks, settings)
        router = RoutingDecider(stripe_client)
        sales = SaleSessionService(
            db=db,
            stripe_client=stripe_client,
            provisioner=provisioner,
            router=router,
            ledger=ledger,
            locks=locks,
            notifier=notifier,
            settings=settings,
        )
        reconciler = SettlementReconciler(db, stripe_client, ledger, locks, settings)
        webhooks = WebhookHandler(
            settings,
            sales=sales,
            reconciler=reconciler,
            provisioner=provisioner,
            redis_client=redis_client,
        )
        health = HealthCheck(db, stripe_client, settings, redis_client=redis_client)

        return cls(
            settings=settings,
            db=db,
            stripe_client=stripe_client,
            locks=locks,
            ledger=ledger,
            provisioner=provisioner,
            router=router,
            sales=sales,
            reconciler=reconciler,
            webhooks=webhooks,
            health=health,
        )

    async def close(self) -> None:
        """Release connections held by the services."""
        await self.webhooks.close()
        await self.locks.close()
        await self.db.close()


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the application's services."""
    return request.app.state.container
