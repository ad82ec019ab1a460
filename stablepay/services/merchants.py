"""Read-only merchant directory used by the engine."""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from stablepay.models.merchant import Merchant, MerchantStatus, SettlementSchedule
from stablepay.utils.errors import MerchantNotFound

logger = logging.getLogger(__name__)


def find_by_id(db: Session, merchant_id: int) -> Merchant:
    """Return the merchant or raise ``MerchantNotFound``."""

    merchant = db.get(Merchant, merchant_id)
    if merchant is None:
        raise MerchantNotFound("Merchant not found.", details={"merchant_id": merchant_id})
    return merchant


def list_for_schedule(db: Session, schedule: SettlementSchedule) -> list[Merchant]:
    """Active merchants on ``schedule`` that can receive a payout."""

    stmt = (
        select(Merchant)
        .where(
            Merchant.status == MerchantStatus.ACTIVE,
            Merchant.settlement_schedule == schedule,
            Merchant.settlement_address.is_not(None),
        )
        .order_by(Merchant.id)
    )
    return list(db.scalars(stmt))


__all__ = ["find_by_id", "list_for_schedule"]
