"""Observed chain transfer model."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base
from .payment import Network


class TransactionStatus(str, PyEnum):
    """Confirmation state of an observed chain transfer."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ChainTransaction(Base):
    """Represents one chain transfer believed to pay a payment.

    ``tx_hash`` is unique: it is the idempotency key of the ingestion path.
    """

    __tablename__ = "chain_transactions"
    __table_args__ = (Index("ix_chain_transactions_status", "status"),)

    tx_hash: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    network: Mapped[Network] = mapped_column(SqlEnum(Network), nullable=False)
    payment_id: Mapped[int | None] = mapped_column(ForeignKey("payments.id"), nullable=True, index=True)
    from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    amount_base_units: Mapped[str] = mapped_column(String(78), nullable=False)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    confirmation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[TransactionStatus] = mapped_column(
        SqlEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    payment = relationship("Payment", back_populates="transactions")
