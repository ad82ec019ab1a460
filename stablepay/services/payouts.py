"""Payout execution for settlement batches."""
import logging
import time
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from stablepay.models import Merchant, Settlement, SettlementStatus
from stablepay.services import webhooks
from stablepay.services.chain import ChainClient, get_chain_client
from stablepay.services.confirmations import ConfirmationState, watch
from stablepay.utils.audit import log_audit
from stablepay.utils.errors import InvalidTransition, NoSettlementAddress, SettlementNotFound
from stablepay.utils.time import utcnow

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[SettlementStatus, frozenset[SettlementStatus]] = {
    SettlementStatus.PENDING: frozenset({SettlementStatus.PROCESSING, SettlementStatus.FAILED}),
    SettlementStatus.PROCESSING: frozenset({SettlementStatus.COMPLETED, SettlementStatus.FAILED}),
}


def load_settlement(db: Session, settlement_id: str) -> Settlement:
    stmt = select(Settlement).where(Settlement.public_id == settlement_id).execution_options(populate_existing=True)
    settlement = db.scalars(stmt).first()
    if settlement is None:
        raise SettlementNotFound("Settlement not found.", details={"settlement_id": settlement_id})
    return settlement


def _move(db: Session, settlement: Settlement, new_status: SettlementStatus, **values) -> None:
    """Guarded settlement status change; the caller commits."""

    current = settlement.status
    if new_status not in _TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            "Settlement status transition not allowed.",
            details={"settlement_id": settlement.public_id, "from": current.value, "to": new_status.value},
        )
    result = db.execute(
        update(Settlement)
        .where(Settlement.id == settlement.id, Settlement.status == current)
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        db.refresh(settlement)
        raise InvalidTransition(
            "Settlement changed concurrently.",
            details={"settlement_id": settlement.public_id, "from": current.value, "now": settlement.status.value},
        )
    log_audit(
        db,
        actor="system",
        action=f"SETTLEMENT_{new_status.value.upper()}",
        entity="Settlement",
        entity_id=settlement.id,
        data={"public_id": settlement.public_id, "from": current.value, "to": new_status.value, **_audit_values(values)},
    )


def _audit_values(values: dict) -> dict:
    return {key: str(value) for key, value in values.items() if value is not None}


def complete_settlement(db: Session, settlement: Settlement) -> Settlement:
    _move(db, settlement, SettlementStatus.COMPLETED, completed_at=utcnow())
    db.commit()
    db.refresh(settlement)
    logger.info(
        "Settlement completed",
        extra={
            "settlement_id": settlement.public_id,
            "merchant_id": settlement.merchant_id,
            "net_amount": str(settlement.net_amount),
            "tx_hash": settlement.payout_tx_hash,
        },
    )
    webhooks.notify(
        db,
        settlement.merchant_id,
        "settlement.completed",
        webhooks.settlement_payload(settlement),
        resource_id=settlement.public_id,
    )
    return settlement


def fail_settlement(db: Session, settlement: Settlement, reason: str) -> Settlement:
    """Mark the batch failed. Its payments stay linked until an operator releases them."""

    _move(db, settlement, SettlementStatus.FAILED, error_message=reason[:2000])
    db.commit()
    db.refresh(settlement)
    logger.error(
        "Settlement failed",
        extra={"settlement_id": settlement.public_id, "merchant_id": settlement.merchant_id, "reason": reason},
    )
    webhooks.notify(
        db,
        settlement.merchant_id,
        "settlement.failed",
        webhooks.settlement_payload(settlement),
        resource_id=settlement.public_id,
    )
    return settlement


def _apply_watch_result(db: Session, settlement: Settlement, state: ConfirmationState) -> Settlement:
    if state == ConfirmationState.CONFIRMED:
        return complete_settlement(db, settlement)
    if state == ConfirmationState.FAILED:
        return fail_settlement(db, settlement, "payout transfer reverted on chain")
    logger.info(
        "Payout not yet confirmed; left processing",
        extra={"settlement_id": settlement.public_id, "tx_hash": settlement.payout_tx_hash},
    )
    return settlement


def execute_payout(
    db: Session,
    settlement_id: str,
    *,
    chain: ChainClient | None = None,
    watch_timeout: float | None = None,
    poll_interval: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Settlement:
    """Send the net amount of a pending batch to the merchant and track it.

    A watch that times out leaves the batch ``processing`` for
    ``reconcile_processing_settlements`` to finish.
    """

    chain = chain or get_chain_client()
    settlement = load_settlement(db, settlement_id)
    merchant = db.get(Merchant, settlement.merchant_id)
    if merchant is None or not merchant.settlement_address:
        raise NoSettlementAddress(
            "Merchant has no settlement address.",
            details={"settlement_id": settlement_id, "merchant_id": settlement.merchant_id},
        )

    _move(db, settlement, SettlementStatus.PROCESSING, processed_at=utcnow())
    db.commit()
    db.refresh(settlement)
    logger.info(
        "Payout initiated",
        extra={
            "settlement_id": settlement_id,
            "merchant_id": merchant.id,
            "amount": str(settlement.net_amount),
            "network": settlement.network.value,
        },
    )

    try:
        tx_hash = chain.send_transfer(merchant.settlement_address, settlement.net_amount, settlement.network)
    except Exception as exc:  # any dispatch failure fails the batch
        logger.exception("Payout dispatch failed", extra={"settlement_id": settlement_id})
        return fail_settlement(db, settlement, f"{type(exc).__name__}: {exc}")

    settlement.payout_tx_hash = tx_hash
    log_audit(
        db,
        actor="system",
        action="SETTLEMENT_PAYOUT_SENT",
        entity="Settlement",
        entity_id=settlement.id,
        data={"public_id": settlement_id, "tx_hash": tx_hash, "to_address": merchant.settlement_address},
    )
    db.commit()
    db.refresh(settlement)

    result = watch(
        chain,
        tx_hash,
        settlement.network,
        timeout=watch_timeout,
        poll_interval=poll_interval,
        sleep=sleep,
    )
    return _apply_watch_result(db, settlement, result.state)


def reconcile_processing_settlements(db: Session, *, chain: ChainClient | None = None) -> dict[str, int]:
    """Finish ``processing`` batches whose payout watch timed out earlier."""

    chain = chain or get_chain_client()
    stmt = (
        select(Settlement)
        .where(Settlement.status == SettlementStatus.PROCESSING)
        .order_by(Settlement.id)
    )
    counts = {"checked": 0, "completed": 0, "failed": 0, "unsent": 0}
    for settlement in list(db.scalars(stmt)):
        if not settlement.payout_tx_hash:
            # Dispatch outcome unknown; needs an operator to look at the payout wallet.
            counts["unsent"] += 1
            logger.warning("Processing settlement has no payout hash", extra={"settlement_id": settlement.public_id})
            continue
        counts["checked"] += 1
        result = watch(chain, settlement.payout_tx_hash, settlement.network, timeout=0, poll_interval=0)
        try:
            _apply_watch_result(db, settlement, result.state)
        except InvalidTransition:
            logger.info("Settlement moved on during reconciliation", extra={"settlement_id": settlement.public_id})
            continue
        if result.state == ConfirmationState.CONFIRMED:
            counts["completed"] += 1
        elif result.state == ConfirmationState.FAILED:
            counts["failed"] += 1
    if counts["checked"] or counts["unsent"]:
        logger.info("Processing settlements reconciled", extra=counts)
    return counts


__all__ = [
    "complete_settlement",
    "execute_payout",
    "fail_settlement",
    "load_settlement",
    "reconcile_processing_settlements",
]
