"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


class Currency(str, enum.Enum):
    """Stablecoins accepted for payment."""

    USDC = "USDC"


class Network(str, enum.Enum):
    """Chains a payment can be settled on."""

    ETHEREUM = "ethereum"
    POLYGON = "polygon"


class Payment(Base):
    """Represents one request for funds issued by a merchant."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("ix_payments_status_expires", "status", "expires_at"),
        Index("ix_payments_merchant_status_completed", "merchant_id", "status", "completed_at"),
    )

    public_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    currency: Mapped[Currency] = mapped_column(SqlEnum(Currency), nullable=False, default=Currency.USDC)
    network: Mapped[Network] = mapped_column(SqlEnum(Network), nullable=False, default=Network.POLYGON)
    deposit_address: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    qr_code_data: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    merchant = relationship("Merchant")
    transactions = relationship("ChainTransaction", back_populates="payment")
