"""Merchant model (owned by the merchant directory, read-only to the engine)."""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Enum as SqlEnum, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class MerchantStatus(str, PyEnum):
    """Lifecycle status of a merchant account."""

    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class SettlementSchedule(str, PyEnum):
    """How often a merchant's completed payments are netted and paid out."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Merchant(Base):
    """Represents a merchant accepting stablecoin payments."""

    __tablename__ = "merchants"
    __table_args__ = (
        CheckConstraint(
            "fee_rate IS NULL OR (fee_rate >= 0 AND fee_rate <= 0.05)",
            name="ck_merchant_fee_rate_bounds",
        ),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[MerchantStatus] = mapped_column(
        SqlEnum(MerchantStatus), nullable=False, default=MerchantStatus.PENDING_VERIFICATION, index=True
    )
    fee_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    settlement_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    settlement_schedule: Mapped[SettlementSchedule] = mapped_column(
        SqlEnum(SettlementSchedule), nullable=False, default=SettlementSchedule.DAILY
    )
    webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(128), nullable=True)
