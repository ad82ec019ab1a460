"""Settlement batching: net a merchant's completed payments into one payout."""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stablepay.config import get_settings
from stablepay.models import (
    Payment,
    PaymentStatus,
    Settlement,
    SettlementPayment,
    SettlementSchedule,
    SettlementStatus,
)
from stablepay.services import merchants as merchant_directory
from stablepay.services.chain import ChainClient, as_network, get_chain_client
from stablepay.services.fees import compute_fee
from stablepay.services.payouts import execute_payout, load_settlement
from stablepay.utils.audit import log_audit
from stablepay.utils.errors import BatchConflict, InvalidTransition, StablePayError
from stablepay.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScheduleRunSummary:
    schedule: SettlementSchedule
    period_start: datetime
    period_end: datetime
    created: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    processing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "schedule": self.schedule.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "created": self.created,
            "completed": self.completed,
            "processing": self.processing,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": {str(key): value for key, value in self.errors.items()},
        }


def settlement_period(schedule: SettlementSchedule, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Return the half-open ``[start, end)`` UTC window a run on ``now`` settles."""

    now = ensure_utc(now) if now else utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if schedule == SettlementSchedule.DAILY:
        return midnight - timedelta(days=1), midnight
    if schedule == SettlementSchedule.WEEKLY:
        return midnight - timedelta(days=7), midnight
    first_of_month = midnight.replace(day=1)
    first_of_previous = (first_of_month - timedelta(days=1)).replace(day=1)
    return first_of_previous, first_of_month


def _select_eligible_payments(
    db: Session, merchant_id: int, period_start: datetime, period_end: datetime
) -> list[Payment]:
    already_linked = select(SettlementPayment.payment_id)
    stmt = (
        select(Payment)
        .where(
            Payment.merchant_id == merchant_id,
            Payment.status == PaymentStatus.COMPLETED,
            Payment.completed_at >= period_start,
            Payment.completed_at < period_end,
            Payment.id.not_in(already_linked),
        )
        .order_by(Payment.id)
    )
    return list(db.scalars(stmt))


def create_batch(
    db: Session,
    merchant_id: int,
    period_start: datetime,
    period_end: datetime,
) -> Settlement | None:
    """Create one pending settlement covering every unsettled completed payment.

    Returns ``None`` when there is nothing to settle or the net would not be
    positive. The settlement row and its payment links are written in one
    transaction; an overlapping run trips the unique link constraint and
    nothing from this call is kept.
    """

    merchant = merchant_directory.find_by_id(db, merchant_id)
    payments = _select_eligible_payments(db, merchant.id, period_start, period_end)
    if not payments:
        logger.info(
            "No payments to settle",
            extra={"merchant_id": merchant.id, "period_start": period_start.isoformat()},
        )
        return None

    gross = sum((Decimal(payment.amount) for payment in payments), Decimal("0"))
    fees = compute_fee(gross, merchant.fee_rate)
    if fees.net_amount <= 0:
        logger.info(
            "Settlement net not positive; skipped",
            extra={"merchant_id": merchant.id, "gross": str(fees.gross_amount), "fee": str(fees.fee_amount)},
        )
        return None

    settlement = Settlement(
        public_id=str(uuid4()),
        merchant_id=merchant.id,
        period_start=period_start,
        period_end=period_end,
        gross_amount=fees.gross_amount,
        fee_amount=fees.fee_amount,
        net_amount=fees.net_amount,
        fee_rate=fees.fee_rate,
        transaction_count=len(payments),
        network=as_network(get_settings().settlement_network),
        status=SettlementStatus.PENDING,
    )
    settlement.links = [SettlementPayment(payment_id=payment.id) for payment in payments]
    db.add(settlement)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.warning(
            "Settlement batch conflicted with a concurrent run",
            extra={"merchant_id": merchant.id, "period_start": period_start.isoformat()},
        )
        raise BatchConflict(
            "Payments are already part of another settlement.",
            details={"merchant_id": merchant.id},
        ) from exc

    log_audit(
        db,
        actor="system",
        action="SETTLEMENT_CREATED",
        entity="Settlement",
        entity_id=settlement.id,
        data={
            "public_id": settlement.public_id,
            "payments": [payment.public_id for payment in payments],
            **fees.as_dict(),
        },
    )
    db.commit()
    db.refresh(settlement)
    logger.info(
        "Settlement batch created",
        extra={
            "settlement_id": settlement.public_id,
            "merchant_id": merchant.id,
            "transaction_count": settlement.transaction_count,
            "gross_amount": str(settlement.gross_amount),
            "net_amount": str(settlement.net_amount),
        },
    )
    return settlement


def run_schedule(
    db: Session,
    schedule: SettlementSchedule,
    *,
    chain: ChainClient | None = None,
    now: datetime | None = None,
    watch_timeout: float | None = None,
    poll_interval: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ScheduleRunSummary:
    """Batch and pay out every eligible merchant on ``schedule``.

    Merchants are processed independently: an error for one is recorded in
    the summary and the run moves on.
    """

    chain = chain or get_chain_client()
    period_start, period_end = settlement_period(schedule, now)
    summary = ScheduleRunSummary(schedule=schedule, period_start=period_start, period_end=period_end)
    merchant_ids = [merchant.id for merchant in merchant_directory.list_for_schedule(db, schedule)]
    logger.info(
        "Settlement run started",
        extra={"schedule": schedule.value, "merchants": len(merchant_ids), "period_start": period_start.isoformat()},
    )

    for merchant_id in merchant_ids:
        try:
            settlement = create_batch(db, merchant_id, period_start, period_end)
            if settlement is None:
                summary.skipped.append(merchant_id)
                continue
            summary.created.append(settlement.public_id)
            settlement = execute_payout(
                db,
                settlement.public_id,
                chain=chain,
                watch_timeout=watch_timeout,
                poll_interval=poll_interval,
                sleep=sleep,
            )
        except (StablePayError, SQLAlchemyError) as exc:
            db.rollback()
            summary.errors[merchant_id] = str(exc)
            logger.exception("Settlement failed for merchant", extra={"merchant_id": merchant_id})
            continue

        if settlement.status == SettlementStatus.COMPLETED:
            summary.completed.append(settlement.public_id)
        elif settlement.status == SettlementStatus.FAILED:
            summary.failed.append(settlement.public_id)
        else:
            summary.processing.append(settlement.public_id)

    logger.info("Settlement run finished", extra={"summary": summary.as_dict()})
    return summary


def get_settlement(db: Session, settlement_id: str) -> Settlement:
    return load_settlement(db, settlement_id)


def release_failed_settlement(db: Session, settlement_id: str, *, actor: str = "operator") -> Settlement:
    """Unlink the payments of a failed batch so a future run can settle them.

    The failed batch itself is kept for the record. Releasing twice is a
    no-op.
    """

    settlement = load_settlement(db, settlement_id)
    if settlement.status != SettlementStatus.FAILED:
        raise InvalidTransition(
            "Only failed settlements can be released.",
            details={"settlement_id": settlement_id, "status": settlement.status.value},
        )
    if settlement.links_released_at is not None:
        return settlement

    released = [link.payment_id for link in settlement.links]
    settlement.links.clear()
    settlement.links_released_at = utcnow()
    log_audit(
        db,
        actor=actor,
        action="SETTLEMENT_LINKS_RELEASED",
        entity="Settlement",
        entity_id=settlement.id,
        data={"public_id": settlement_id, "payment_ids": released},
    )
    db.commit()
    db.refresh(settlement)
    logger.warning(
        "Failed settlement released",
        extra={"settlement_id": settlement_id, "payments": len(released), "actor": actor},
    )
    return settlement


__all__ = [
    "ScheduleRunSummary",
    "create_batch",
    "get_settlement",
    "release_failed_settlement",
    "run_schedule",
    "settlement_period",
]
