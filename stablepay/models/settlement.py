"""Settlement batch models."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .payment import Network


class SettlementStatus(str, PyEnum):
    """Status of a settlement batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Settlement(Base):
    """One payout cycle for one merchant over a half-open period."""

    __tablename__ = "settlements"
    __table_args__ = (
        CheckConstraint("net_amount > 0", name="ck_settlement_positive_net"),
        CheckConstraint("fee_amount >= 0", name="ck_settlement_fee_non_negative"),
        CheckConstraint("period_start < period_end", name="ck_settlement_period_order"),
        Index("ix_settlements_merchant_status", "merchant_id", "status"),
    )

    public_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    merchant_id: Mapped[int] = mapped_column(ForeignKey("merchants.id"), nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False)
    network: Mapped[Network] = mapped_column(SqlEnum(Network), nullable=False, default=Network.POLYGON)
    status: Mapped[SettlementStatus] = mapped_column(
        SqlEnum(SettlementStatus), nullable=False, default=SettlementStatus.PENDING
    )
    payout_tx_hash: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    links_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    merchant = relationship("Merchant")
    links = relationship("SettlementPayment", back_populates="settlement", cascade="all, delete-orphan")


class SettlementPayment(Base):
    """Join row linking a payment to the single batch that settled it."""

    __tablename__ = "settlement_payments"
    __table_args__ = (UniqueConstraint("payment_id", name="uq_settlement_payments_payment_id"),)

    settlement_id: Mapped[int] = mapped_column(ForeignKey("settlements.id"), nullable=False, index=True)
    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False)

    settlement = relationship("Settlement", back_populates="links")
    payment = relationship("Payment")
