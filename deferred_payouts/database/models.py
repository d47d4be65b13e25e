"""SQLAlchemy database models for deferred seller payouts."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Seller(Base):
    """
    Sellers known to the platform.

    The earnings ledger is embedded: one row holds both the seller's
    verification state and the platform-held liability owed to them.
    """

    __tablename__ = "sellers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country: Mapped[str] = mapped_column(String(2), nullable=False)
    destination_account_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    verification_status: Mapped[str] = mapped_column(
        String(50), nullable=False, default="unprovisioned", index=True
    )
    payout_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    provision_generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Earnings ledger
    pending_balance_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sale_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_notification_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("pending_balance_cents >= 0", name="non_negative_pending_balance"),
        CheckConstraint("sale_count >= 0", name="non_negative_sale_count"),
        CheckConstraint(
            "verification_status IN ('unprovisioned', 'provisioned_unverified', 'verified')",
            name="valid_verification_status",
        ),
        CheckConstraint("payout_mode IN ('manual', 'automatic')", name="valid_payout_mode"),
    )

    def __repr__(self) -> str:
        """String representation of Seller."""
        return (
            f"<Seller(id={self.id}, account={self.destination_account_id}, "
            f"status={self.verification_status}, pending={self.pending_balance_cents})>"
        )


class SaleRecord(Base):
    """
    One row per checkout session.

    The fee split and routing strategy are fixed when the session is created
    and never recomputed.
    """

    __tablename__ = "sale_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    correlation_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    seller_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("sellers.id"), nullable=False, index=True
    )
    product_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gross_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fee_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    strategy: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    routing_metadata: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("fee_cents + net_cents = gross_cents", name="fee_net_sum_to_gross"),
        CheckConstraint(
            "strategy IN ('direct_transfer', 'platform_held')", name="valid_strategy"
        ),
        CheckConstraint("status IN ('open', 'completed')", name="valid_sale_status"),
        Index("idx_sale_records_seller_status", "seller_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of SaleRecord."""
        return (
            f"<SaleRecord(key={self.correlation_key}, seller={self.seller_id}, "
            f"strategy={self.strategy}, net={self.net_cents})>"
        )


class LedgerEntry(Base):
    """
    Earnings ledger movements.

    The unique correlation key is what makes sale completion idempotent.
    Immutable once written.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("sellers.id"), nullable=False, index=True
    )
    correlation_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "entry_type IN ('sale_held', 'settlement')", name="valid_ledger_entry_type"
        ),
        Index("idx_ledger_entries_seller_created", "seller_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of LedgerEntry."""
        return (
            f"<LedgerEntry(seller={self.seller_id}, type={self.entry_type}, "
            f"amount={self.amount_cents})>"
        )


class Settlement(Base):
    """
    Settlement transfer attempts.

    A PENDING row is written before the transfer is requested, so a retry
    after a crash reuses the same amount and idempotency key.
    """

    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("sellers.id"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    destination_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sale_count: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    transfer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_settlement_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')", name="valid_settlement_status"
        ),
    )

    def __repr__(self) -> str:
        """String representation of Settlement."""
        return (
            f"<Settlement(seller={self.seller_id}, key={self.idempotency_key}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )
