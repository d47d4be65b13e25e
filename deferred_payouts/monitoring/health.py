"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (only when a Redis-backed feature is enabled)
- Stripe API reachability
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from deferred_payouts.config import Settings
from deferred_payouts.database.connection import Database

if TYPE_CHECKING:
    from deferred_payouts.integrations.stripe_client import StripeConnectClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for monitoring system dependencies."""

    def __init__(
        self,
        db: Database,
        stripe_client: "StripeConnectClient",
        settings: Settings,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.db = db
        self.stripe_client = stripe_client
        self.settings = settings
        self.redis_client = redis_client

    @property
    def uses_redis(self) -> bool:
        return self.settings.lock_backend == "redis" or self.settings.webhook_dedup_enabled

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.db.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        owned = self.redis_client is None
        redis_client = self.redis_client or aioredis.from_url(
            self.settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            if owned:
                await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability.

        Raises:
            HealthCheckError: If Stripe check fails
        """
        try:
            await self.stripe_client.ping()
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "stripe",
            "message": "Stripe API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        probes = {
            "database": self.check_database,
            "stripe": self.check_stripe,
        }
        if self.uses_redis:
            probes["redis"] = self.check_redis

        checks: Dict[str, Any] = {}
        all_healthy = True
        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up. No dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: every dependency is reachable."""
        return await self.check_all()
