"""Schemas for payment entities."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from stablepay.models.payment import Currency, Network, PaymentStatus


class PaymentCreate(BaseModel):
    # Bounds are enforced by the ledger so every entry point reports INVALID_AMOUNT.
    amount: Decimal
    currency: Currency = Currency.USDC
    network: Network | None = None
    external_id: str | None = Field(default=None, max_length=128)
    expires_in: int | None = Field(default=None, description="Minutes until the payment expires.")
    description: str | None = Field(default=None, max_length=500)
    customer_email: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None


class PaymentRead(BaseModel):
    id: str = Field(validation_alias="public_id")
    merchant_id: int
    external_id: str | None
    amount: Decimal
    currency: Currency
    network: Network
    deposit_address: str
    status: PaymentStatus
    payment_url: str | None
    qr_code_data: str | None
    description: str | None
    expires_at: datetime
    completed_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class PaymentStatusRead(BaseModel):
    id: str = Field(validation_alias="public_id")
    status: PaymentStatus
    amount: Decimal
    currency: Currency
    expires_at: datetime
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class FeeEstimateRead(BaseModel):
    amount: Decimal
    fee: Decimal
    net: Decimal
    savings_vs_visa: Decimal
