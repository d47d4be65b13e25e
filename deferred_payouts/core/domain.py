"""
Domain types for deferred payouts.

Enums here are closed: strategy tags and statuses coming from the outside
world are parsed into these types at the boundary, and anything unrecognised
is rejected instead of falling through.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class VerificationStatus(str, Enum):
    """Seller progress through provider identity checks."""

    UNPROVISIONED = "unprovisioned"
    PROVISIONED_UNVERIFIED = "provisioned_unverified"
    VERIFIED = "verified"


class PayoutMode(str, Enum):
    """How the provider pays out the seller's provider-side balance."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"


class RoutingStrategy(str, Enum):
    """Where the proceeds of a sale go when the charge settles."""

    DIRECT = "direct_transfer"
    PLATFORM_HELD = "platform_held"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> RoutingStrategy:
        """
        Parse a strategy tag carried in provider metadata.

        Raises:
            ValueError: If the tag is missing or unknown
        """
        if tag is None:
            raise ValueError("Missing routing strategy tag")
        try:
            return cls(tag)
        except ValueError:
            raise ValueError(f"Unknown routing strategy tag: {tag!r}") from None


class SettlementOutcome(str, Enum):
    """Result of handling one verification-status change."""

    NOT_VERIFIED = "not_verified"
    ORPHANED = "orphaned"
    VERIFIED_NO_BALANCE = "verified_no_balance"
    SETTLED = "settled"


class SettlementStatus(str, Enum):
    """Lifecycle of a settlement transfer attempt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerEntryType(str, Enum):
    """Kinds of earnings ledger movements."""

    SALE_HELD = "sale_held"
    SETTLEMENT = "settlement"


class SaleStatus(str, Enum):
    """Lifecycle of a sale record."""

    OPEN = "open"
    COMPLETED = "completed"


class FeeSplit(BaseModel):
    """Gross amount split into platform fee and seller net, in minor units."""

    gross_cents: int = Field(..., ge=0)
    fee_cents: int = Field(..., ge=0)
    net_cents: int = Field(..., ge=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_no_leakage(self) -> FeeSplit:
        """Fee and net must add back up to gross."""
        if self.fee_cents + self.net_cents != self.gross_cents:
            raise ValueError("fee + net must equal gross")
        return self


class RoutingPlan(BaseModel):
    """
    Routing decision for one sale.

    ``metadata`` travels with the charge so the completion handler can act
    without asking the provider again.
    """

    strategy: RoutingStrategy
    gross_cents: int
    fee_cents: int
    net_cents: int
    destination_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def payment_intent_data(self) -> Dict[str, Any]:
        """
        Build the provider payment instructions for this plan.

        DIRECT splits the charge at settlement time. PLATFORM_HELD keeps the
        whole charge on the platform account and only carries metadata.
        """
        if self.strategy is RoutingStrategy.DIRECT:
            return {
                "application_fee_amount": self.fee_cents,
                "transfer_data": {"destination": self.destination_id},
                "metadata": dict(self.metadata),
            }
        if self.strategy is RoutingStrategy.PLATFORM_HELD:
            return {"metadata": dict(self.metadata)}
        raise ValueError(f"Unhandled routing strategy: {self.strategy}")


class LedgerState(BaseModel):
    """Snapshot of a seller's earnings ledger."""

    seller_id: str
    pending_balance_cents: int
    sale_count: int
    notification_sent: bool
    last_notification_at: Optional[datetime] = None
    threshold_crossed: bool = False

    model_config = {"frozen": True}


class SaleCompleted(BaseModel):
    """Inbound completion of a checkout session."""

    correlation_key: str
    seller_id: str
    strategy: RoutingStrategy
    net_cents: int = Field(..., ge=0)

    model_config = {"frozen": True}


class VerificationChanged(BaseModel):
    """Inbound change of a destination account's verification state."""

    provider_account_id: str
    charges_enabled: bool
    transfers_active: bool

    model_config = {"frozen": True}

    @property
    def fully_verified(self) -> bool:
        return self.charges_enabled and self.transfers_active


class SettlementResult(BaseModel):
    """What the settlement reconciler did for one event."""

    outcome: SettlementOutcome
    seller_id: Optional[str] = None
    amount_cents: int = 0
    transfer_id: Optional[str] = None

    model_config = {"frozen": True}


class Product(BaseModel):
    """Product being sold in one checkout session."""

    id: str
    title: str
    price_cents: int = Field(..., gt=0)
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}
