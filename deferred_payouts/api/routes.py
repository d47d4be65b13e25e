"""
API routes for deferred seller payouts.
"""
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from deferred_payouts.core.errors import (
    DeferredPayoutError,
    ProvisioningFailed,
    SaleSessionFailed,
    SellerEmailTaken,
    SellerNotFound,
)
from deferred_payouts.core.locks import SellerLockTimeout
from deferred_payouts.database.models import Seller
from deferred_payouts.integrations.webhook_handler import WebhookError
from deferred_payouts.monitoring.metrics import metrics

from .dependencies import ServiceContainer, get_container
from .schemas import (
    AccountResponse,
    CreateSaleSessionRequest,
    EarningsSummaryResponse,
    HealthCheckResponse,
    OnboardingLinkResponse,
    RegisterSellerRequest,
    SaleSessionResponse,
    SellerResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

seller_router = APIRouter(prefix="/sellers", tags=["sellers"])
sales_router = APIRouter(prefix="/sales", tags=["sales"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def _seller_payload(seller: Seller) -> Dict[str, Any]:
    return {
        "seller_id": seller.id,
        "email": seller.email,
        "country": seller.country,
        "verification_status": seller.verification_status,
        "payout_mode": seller.payout_mode,
        "destination_account_id": seller.destination_account_id,
    }


def _not_found(e: SellerNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _busy(seller_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Seller {seller_id} is busy, retry shortly",
    )


@seller_router.post(
    "",
    response_model=SellerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a seller",
    description="Find or create a seller with an empty earnings ledger",
)
async def register_seller(
    request: RegisterSellerRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Register a seller. Registering an existing seller returns it unchanged."""
    try:
        seller = await container.provisioner.register_seller(
            seller_id=request.seller_id,
            email=request.email,
            country=request.country,
            first_name=request.first_name,
            last_name=request.last_name,
        )
    except SellerEmailTaken as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except SellerLockTimeout:
        raise _busy(request.seller_id)

    return _seller_payload(seller)


@seller_router.get(
    "/{seller_id}/earnings",
    response_model=EarningsSummaryResponse,
    summary="Get held earnings",
    description="Pending balance, sale count and onboarding prompt state",
)
async def get_earnings(
    seller_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        return await container.sales.get_earnings_summary(seller_id)
    except SellerNotFound as e:
        raise _not_found(e)


@seller_router.post(
    "/{seller_id}/account",
    response_model=AccountResponse,
    summary="Ensure destination account",
    description="Create a minimal destination account for the seller if none exists",
)
async def ensure_account(
    seller_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        account_id = await container.provisioner.ensure_destination_account(seller_id)
    except SellerNotFound as e:
        raise _not_found(e)
    except SellerLockTimeout:
        raise _busy(seller_id)
    except ProvisioningFailed as e:
        logger.error("api_provisioning_failed", seller_id=seller_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to set up seller payment account",
        )

    return {"seller_id": seller_id, "account_id": account_id}


@seller_router.post(
    "/{seller_id}/onboarding-link",
    response_model=OnboardingLinkResponse,
    summary="Create onboarding link",
    description="Hosted onboarding link for the seller to complete verification",
)
async def create_onboarding_link(
    seller_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        url = await container.provisioner.create_onboarding_link(seller_id)
    except SellerNotFound as e:
        raise _not_found(e)
    except DeferredPayoutError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"seller_id": seller_id, "url": url}


@sales_router.post(
    "/sessions",
    response_model=SaleSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a sale session",
    description=(
        "Create a hosted checkout session. Sellers without a destination account "
        "get one first; unverified sellers have their share held by the platform."
    ),
)
async def create_sale_session(
    request: CreateSaleSessionRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    start_time = time.time()
    logger.info(
        "api_create_sale_session_request",
        seller_id=request.seller_id,
        product_id=request.product.id,
    )

    try:
        result = await container.sales.create_sale_session(
            seller_id=request.seller_id,
            product=request.product.to_domain(),
            buyer_email=request.buyer_email,
        )
    except SellerNotFound as e:
        raise _not_found(e)
    except SellerLockTimeout:
        raise _busy(request.seller_id)
    except SaleSessionFailed as e:
        logger.error("api_create_sale_session_failed", seller_id=request.seller_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout session",
        )

    logger.info(
        "api_create_sale_session_success",
        session_id=result["session_id"],
        strategy=result["payment_strategy"],
        duration_seconds=time.time() - start_time,
    )
    return result


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    A bad signature is answered with 400. A processing failure is answered
    with 500 so Stripe re-delivers the event.
    """
    start_time = time.time()
    body = await request.body()

    try:
        event = container.webhooks.verify_signature(body, stripe_signature)
    except WebhookError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        result = await container.webhooks.process_event(event)
    except WebhookError as e:
        metrics.record_webhook_event(event.type, "failed", time.time() - start_time)
        logger.error("api_webhook_error", event_id=event.id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    metrics.record_webhook_event(event.type, result["status"], time.time() - start_time)
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await container.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
