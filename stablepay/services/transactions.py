"""Match observed chain transfers to payments and track their confirmations."""
import logging
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stablepay.models import ChainTransaction, Network, Payment, PaymentStatus, TransactionStatus
from stablepay.services import payments as ledger
from stablepay.services.chain import (
    ChainClient,
    ChainTransfer,
    as_network,
    get_chain_client,
    normalize_address,
    normalize_hash,
    to_base_units,
)
from stablepay.services.confirmations import ConfirmationState, confirmation_state
from stablepay.utils.audit import log_audit
from stablepay.utils.errors import ChainUnavailable, InvalidTransition, TransactionNotFound
from stablepay.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class IngestOutcome(str, Enum):
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    UNDERPAID = "underpaid"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    IGNORED_TERMINAL = "ignored_terminal"


@dataclass
class IngestResult:
    outcome: IngestOutcome
    transaction: ChainTransaction | None = None
    payment: Payment | None = None


def _find_by_hash(db: Session, tx_hash: str) -> ChainTransaction | None:
    return db.scalars(select(ChainTransaction).where(ChainTransaction.tx_hash == tx_hash)).first()


def _match_payment(db: Session, transfer: ChainTransfer) -> Payment | None:
    address = normalize_address(transfer.to_address)
    if not address:
        return None
    stmt = (
        select(Payment)
        .where(Payment.deposit_address == address, Payment.network == transfer.network)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def _status_for(state: ConfirmationState) -> TransactionStatus:
    return {
        ConfirmationState.PENDING: TransactionStatus.PENDING,
        ConfirmationState.CONFIRMED: TransactionStatus.CONFIRMED,
        ConfirmationState.FAILED: TransactionStatus.FAILED,
    }[state]


def _expire_if_overdue(db: Session, payment: Payment, *, tx_hash: str) -> bool:
    """Expire a pending payment whose window closed before the sweep reached it."""

    if payment.status != PaymentStatus.PENDING or ensure_utc(payment.expires_at) > utcnow():
        return False
    try:
        ledger.transition(db, payment.public_id, PaymentStatus.EXPIRED, actor=f"chain:{tx_hash}", reason="late transfer")
    except InvalidTransition:
        logger.info("Payment moved on before expiry", extra={"payment_id": payment.public_id})
    db.refresh(payment)
    return payment.status in ledger.TERMINAL_STATUSES


def _advance_payment(db: Session, payment: Payment, state: ConfirmationState, *, tx_hash: str) -> bool:
    """Drive the payment forward for a sufficient transfer. False if it was already terminal."""

    if _expire_if_overdue(db, payment, tx_hash=tx_hash):
        logger.info(
            "Transfer arrived after payment expiry",
            extra={"payment_id": payment.public_id, "tx_hash": tx_hash},
        )
        return False
    actor = f"chain:{tx_hash}"
    try:
        if payment.status == PaymentStatus.PENDING:
            ledger.transition(db, payment.public_id, PaymentStatus.PROCESSING, actor=actor)
        if state == ConfirmationState.CONFIRMED:
            ledger.transition(db, payment.public_id, PaymentStatus.COMPLETED, actor=actor)
    except InvalidTransition:
        # Expired or cancelled between the read and the write.
        db.refresh(payment)
        logger.info(
            "Payment no longer accepts transfers",
            extra={"payment_id": payment.public_id, "status": payment.status.value, "tx_hash": tx_hash},
        )
        return False
    return True


def ingest_transaction(
    db: Session,
    tx_hash: str,
    network: Network | str,
    *,
    chain: ChainClient | None = None,
) -> IngestResult:
    """Record an observed transfer and move its payment along.

    Safe to call any number of times for the same hash: the unique
    ``tx_hash`` column turns every repeat, concurrent or not, into
    ``DUPLICATE`` without further writes.
    """

    chain = chain or get_chain_client()
    net = as_network(network)
    key = normalize_hash(tx_hash)

    existing = _find_by_hash(db, key)
    if existing is not None:
        logger.info("Duplicate transaction ignored", extra={"tx_hash": key})
        return IngestResult(IngestOutcome.DUPLICATE, existing, existing.payment)

    transfer = chain.get_transaction(key, net)
    if transfer is None:
        raise TransactionNotFound("Transaction not found on chain.", details={"tx_hash": key, "network": net.value})

    payment = _match_payment(db, transfer)
    if payment is None:
        logger.info(
            "Transaction does not match any payment",
            extra={"tx_hash": key, "network": net.value, "to_address": transfer.to_address},
        )
        return IngestResult(IngestOutcome.UNMATCHED)

    state = confirmation_state(transfer, chain.required_confirmations(net))
    underpaid = state != ConfirmationState.FAILED and transfer.amount_base_units < to_base_units(payment.amount)
    now = utcnow()
    record = ChainTransaction(
        tx_hash=key,
        network=net,
        payment_id=None if underpaid else payment.id,
        from_address=normalize_address(transfer.from_address),
        to_address=normalize_address(transfer.to_address),
        amount=transfer.amount,
        amount_base_units=str(transfer.amount_base_units),
        block_number=transfer.block_number,
        confirmation_count=transfer.confirmations,
        status=TransactionStatus.PENDING if underpaid else _status_for(state),
        confirmed_at=now if state == ConfirmationState.CONFIRMED and not underpaid else None,
        failed_at=now if state == ConfirmationState.FAILED else None,
        error_message="transfer reverted on chain" if state == ConfirmationState.FAILED else None,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        # Lost the insert race to a concurrent ingestion of the same hash.
        db.rollback()
        winner = _find_by_hash(db, key)
        logger.info("Duplicate transaction ignored", extra={"tx_hash": key, "race": True})
        return IngestResult(IngestOutcome.DUPLICATE, winner, winner.payment if winner else None)

    log_audit(
        db,
        actor=f"chain:{net.value}",
        action="TRANSACTION_RECORDED",
        entity="ChainTransaction",
        entity_id=record.id,
        data={
            "tx_hash": key,
            "payment": payment.public_id,
            "amount": str(transfer.amount),
            "confirmations": transfer.confirmations,
            "underpaid": underpaid,
            "to_address": record.to_address,
        },
    )
    db.commit()

    if underpaid:
        logger.warning(
            "Transaction amount below payment amount",
            extra={
                "tx_hash": key,
                "payment_id": payment.public_id,
                "received": str(transfer.amount),
                "expected": str(payment.amount),
            },
        )
        return IngestResult(IngestOutcome.UNDERPAID, record, payment)

    if state == ConfirmationState.FAILED:
        # The customer may still pay with another transfer before expiry.
        logger.warning("Transaction reverted on chain", extra={"tx_hash": key, "payment_id": payment.public_id})
        return IngestResult(IngestOutcome.FAILED, record, payment)

    if payment.status in ledger.TERMINAL_STATUSES or not _advance_payment(db, payment, state, tx_hash=key):
        logger.warning(
            "Transaction received for terminal payment",
            extra={"tx_hash": key, "payment_id": payment.public_id, "status": payment.status.value},
        )
        return IngestResult(IngestOutcome.IGNORED_TERMINAL, record, payment)

    outcome = IngestOutcome.CONFIRMED if state == ConfirmationState.CONFIRMED else IngestOutcome.PENDING
    logger.info(
        "Transaction ingested",
        extra={"tx_hash": key, "payment_id": payment.public_id, "outcome": outcome.value},
    )
    return IngestResult(outcome, record, payment)


def _refresh_one(db: Session, record: ChainTransaction, chain: ChainClient) -> TransactionStatus:
    try:
        transfer = chain.get_transaction(record.tx_hash, record.network)
    except ChainUnavailable as exc:
        logger.warning("Chain unavailable during refresh", extra={"tx_hash": record.tx_hash, "error": str(exc)})
        return record.status
    if transfer is None:
        # Dropped from the mempool view; keep waiting until it reappears or the payment expires.
        return record.status

    state = confirmation_state(transfer, chain.required_confirmations(record.network))
    record.confirmation_count = transfer.confirmations
    record.block_number = transfer.block_number
    now = utcnow()
    if state == ConfirmationState.CONFIRMED:
        record.status = TransactionStatus.CONFIRMED
        record.confirmed_at = now
    elif state == ConfirmationState.FAILED:
        record.status = TransactionStatus.FAILED
        record.failed_at = now
        record.error_message = "transfer reverted on chain"
    db.commit()

    payment = record.payment
    if payment is None or payment.status in ledger.TERMINAL_STATUSES:
        return record.status
    actor = f"chain:{record.tx_hash}"
    try:
        if state == ConfirmationState.CONFIRMED:
            _advance_payment(db, payment, state, tx_hash=record.tx_hash)
        elif state == ConfirmationState.FAILED:
            ledger.transition(db, payment.public_id, PaymentStatus.FAILED, actor=actor, reason="transfer reverted")
    except InvalidTransition:
        logger.info("Payment moved on before refresh", extra={"payment_id": payment.public_id})
    return record.status


def refresh_pending_transactions(db: Session, *, chain: ChainClient | None = None) -> dict[str, int]:
    """Re-check every pending transaction that is linked to a payment."""

    chain = chain or get_chain_client()
    stmt = (
        select(ChainTransaction)
        .where(ChainTransaction.status == TransactionStatus.PENDING, ChainTransaction.payment_id.is_not(None))
        .order_by(ChainTransaction.id)
    )
    counts = {"checked": 0, "confirmed": 0, "failed": 0}
    for record in list(db.scalars(stmt)):
        counts["checked"] += 1
        status = _refresh_one(db, record, chain)
        if status == TransactionStatus.CONFIRMED:
            counts["confirmed"] += 1
        elif status == TransactionStatus.FAILED:
            counts["failed"] += 1
    if counts["checked"]:
        logger.info("Pending transactions refreshed", extra=counts)
    return counts


__all__ = ["IngestOutcome", "IngestResult", "ingest_transaction", "refresh_pending_transactions"]
