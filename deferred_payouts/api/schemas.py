"""
Pydantic schemas for API request/response models.

Amounts cross the API as display decimals only where a human types them
(product price); everything else is integer cents.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from deferred_payouts.core.domain import Product
from deferred_payouts.core.money import to_minor_units


class RegisterSellerRequest(BaseModel):
    """Request schema for registering a seller."""

    seller_id: str = Field(..., min_length=1, max_length=255, description="Platform user identifier")
    email: str = Field(..., min_length=3, max_length=320, description="Seller email")
    country: Optional[str] = Field(
        default=None, min_length=2, max_length=2, description="ISO country code"
    )
    first_name: Optional[str] = Field(default=None, max_length=255)
    last_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "seller_id": "user_2abc",
                    "email": "seller@example.com",
                    "country": "US",
                    "first_name": "Ada",
                    "last_name": "Lovelace",
                }
            ]
        }
    }


class SellerResponse(BaseModel):
    """Response schema for a seller."""

    seller_id: str
    email: str
    country: str
    verification_status: str
    payout_mode: str
    destination_account_id: Optional[str] = None


class EarningsSummaryResponse(BaseModel):
    """Response schema for a seller's held earnings."""

    seller_id: str
    pending_balance_cents: int = Field(..., description="Held earnings in cents")
    pending_balance: str = Field(..., description="Held earnings for display (e.g. 127.50)")
    sale_count: int
    verification_status: str
    payout_mode: str
    has_destination_account: bool
    needs_onboarding: bool = Field(..., description="Whether to prompt the seller to onboard")
    notification_sent: bool


class AccountResponse(BaseModel):
    """Response schema for a provisioned destination account."""

    seller_id: str
    account_id: str


class OnboardingLinkResponse(BaseModel):
    """Response schema for an onboarding link."""

    seller_id: str
    url: str


class ProductInfo(BaseModel):
    """Product being sold."""

    id: str = Field(..., min_length=1, max_length=255)
    title: str = Field(..., min_length=1, max_length=500)
    price: Decimal = Field(..., gt=0, description="Price in display units (e.g. 40.00)")
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    def to_domain(self) -> Product:
        return Product(
            id=self.id,
            title=self.title,
            price_cents=to_minor_units(self.price),
            description=self.description,
            images=self.images,
        )


class CreateSaleSessionRequest(BaseModel):
    """Request schema for creating a sale session."""

    seller_id: str = Field(..., min_length=1, description="Seller receiving the sale")
    product: ProductInfo
    buyer_email: Optional[str] = Field(default=None, description="Prefilled buyer email")

    @field_validator("product")
    @classmethod
    def validate_minimum(cls, v: ProductInfo) -> ProductInfo:
        """Validate minimum amount."""
        if to_minor_units(v.price) < 50:
            raise ValueError("Price must be at least 0.50 (Stripe minimum)")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "seller_id": "user_2abc",
                    "product": {"id": "prod_1", "title": "Poster", "price": "40.00"},
                    "buyer_email": "buyer@example.com",
                }
            ]
        }
    }


class SaleSessionResponse(BaseModel):
    """Response schema for a created sale session."""

    url: str = Field(..., description="Hosted checkout URL")
    session_id: str
    seller_account_id: str
    payment_strategy: str
    onboarding_required: bool


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    message: Optional[str] = None
    result: Optional[Any] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    message: Optional[str] = None
    checks: Optional[Dict[str, Any]] = None
