"""Schemas for settlements and chain callbacks."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from stablepay.models.payment import Network
from stablepay.models.settlement import SettlementStatus


class SettlementRead(BaseModel):
    id: str = Field(validation_alias="public_id")
    merchant_id: int
    period_start: datetime
    period_end: datetime
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    fee_rate: Decimal
    transaction_count: int
    network: Network
    status: SettlementStatus
    payout_tx_hash: str | None
    error_message: str | None
    processed_at: datetime | None
    completed_at: datetime | None
    links_released_at: datetime | None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ScheduleRunRead(BaseModel):
    schedule: str
    period_start: datetime
    period_end: datetime
    created: list[str]
    completed: list[str]
    processing: list[str]
    failed: list[str]
    skipped: list[int]
    errors: dict[str, str]


class ChainEvent(BaseModel):
    tx_hash: str = Field(min_length=1, max_length=100)
    network: Network


class ChainEventResult(BaseModel):
    outcome: str
    tx_hash: str
    payment_id: str | None = None
    transaction_status: str | None = None
