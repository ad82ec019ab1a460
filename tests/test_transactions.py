"""Tests for chain transaction matching, confirmation counting and refresh."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from stablepay.models import ChainTransaction, Network, Payment, PaymentStatus, TransactionStatus
from stablepay.services import payments as ledger
from stablepay.services import transactions
from stablepay.services.transactions import IngestOutcome, ingest_transaction, refresh_pending_transactions
from stablepay.utils.errors import TransactionNotFound
from stablepay.utils.time import utcnow


def _transaction_count(db_session) -> int:
    return db_session.scalar(select(func.count()).select_from(ChainTransaction))


def test_confirmed_transfer_completes_payment(db_session, chain, make_merchant, make_payment, deposit, webhook_transport):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=10)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.CONFIRMED
    assert result.transaction.status == TransactionStatus.CONFIRMED
    assert result.transaction.confirmed_at is not None
    assert result.transaction.payment_id == payment.id
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.COMPLETED
    assert webhook_transport.events == ["payment.completed"]


def test_unconfirmed_transfer_moves_payment_to_processing(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=2)

    result = ingest_transaction(db_session, tx_hash, Network.POLYGON, chain=chain)

    assert result.outcome == IngestOutcome.PENDING
    assert result.transaction.status == TransactionStatus.PENDING
    assert result.transaction.confirmation_count == 2
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.PROCESSING


def test_ethereum_needs_fewer_confirmations(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant(), network=Network.ETHEREUM)
    tx_hash = deposit(payment, confirmations=3)

    result = ingest_transaction(db_session, tx_hash, "ethereum", chain=chain)
    assert result.outcome == IngestOutcome.CONFIRMED


def test_repeated_ingestion_is_a_duplicate(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=10)

    first = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)
    second = ingest_transaction(db_session, tx_hash.upper().replace("0X", "0x"), "polygon", chain=chain)

    assert first.outcome == IngestOutcome.CONFIRMED
    assert second.outcome == IngestOutcome.DUPLICATE
    assert second.transaction.id == first.transaction.id
    assert _transaction_count(db_session) == 1


def test_concurrent_insert_of_same_hash_reports_duplicate(
    db_session, chain, monkeypatch, make_merchant, make_payment, deposit
):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=2)
    ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    real_find = transactions._find_by_hash
    calls = {"count": 0}

    def find_missing_once(db, key):
        calls["count"] += 1
        if calls["count"] == 1:
            # The other worker's row is not visible yet.
            return None
        return real_find(db, key)

    monkeypatch.setattr(transactions, "_find_by_hash", find_missing_once)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.DUPLICATE
    assert result.transaction is not None
    assert _transaction_count(db_session) == 1
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.PROCESSING


def test_unknown_hash_raises(db_session, chain):
    with pytest.raises(TransactionNotFound):
        ingest_transaction(db_session, "0x" + "0" * 64, "polygon", chain=chain)


def test_transfer_to_unknown_address_is_not_recorded(db_session, chain, make_merchant, make_payment):
    make_payment(make_merchant())
    tx_hash = chain.add_transfer("0x" + "ab" * 32, network="polygon", to_address="0x" + "9" * 40, amount="50")

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.UNMATCHED
    assert result.transaction is None
    assert _transaction_count(db_session) == 0


def test_transfer_on_other_network_does_not_match(db_session, chain, make_merchant, make_payment):
    payment = make_payment(make_merchant())
    tx_hash = chain.add_transfer(
        "0x" + "cd" * 32, network="ethereum", to_address=payment.deposit_address, amount="50", confirmations=5
    )

    result = ingest_transaction(db_session, tx_hash, "ethereum", chain=chain)
    assert result.outcome == IngestOutcome.UNMATCHED


def test_underpaid_transfer_is_recorded_unlinked(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, amount="49.999999", confirmations=10)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.UNDERPAID
    assert result.transaction.payment_id is None
    assert result.transaction.status == TransactionStatus.PENDING
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.PENDING


def test_overpayment_is_accepted(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, amount=Decimal("60"), confirmations=10)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)
    assert result.outcome == IngestOutcome.CONFIRMED


def test_transfer_for_terminal_payment_leaves_it_untouched(db_session, chain, make_merchant, make_payment, deposit):
    merchant = make_merchant()
    payment = make_payment(merchant)
    ledger.cancel_payment(db_session, merchant.id, payment.public_id)
    tx_hash = deposit(payment, confirmations=10)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.IGNORED_TERMINAL
    assert result.transaction.payment_id == payment.id
    refreshed = ledger.get_payment(db_session, payment.public_id)
    assert refreshed.status == PaymentStatus.CANCELLED
    assert refreshed.completed_at is None


def test_late_transfer_expires_overdue_payment_instead_of_completing_it(
    db_session, chain, make_merchant, make_payment, deposit, webhook_transport
):
    payment = make_payment(make_merchant(), expires_in=5)
    db_session.execute(
        update(Payment)
        .where(Payment.id == payment.id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    db_session.commit()
    tx_hash = deposit(payment, confirmations=20)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.IGNORED_TERMINAL
    refreshed = ledger.get_payment(db_session, payment.public_id)
    assert refreshed.status == PaymentStatus.EXPIRED
    assert refreshed.completed_at is None
    assert webhook_transport.events == ["payment.expired"]


def test_transfer_after_sweep_leaves_expired_payment_untouched(
    db_session, chain, make_merchant, make_payment, deposit, webhook_transport
):
    payment = make_payment(make_merchant(), expires_in=5)
    assert ledger.sweep_expired(db_session, now=utcnow() + timedelta(minutes=6)) == [payment.public_id]
    tx_hash = deposit(payment, confirmations=20)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.IGNORED_TERMINAL
    assert result.transaction.payment_id == payment.id
    refreshed = ledger.get_payment(db_session, payment.public_id)
    assert refreshed.status == PaymentStatus.EXPIRED
    assert refreshed.completed_at is None
    assert webhook_transport.events == ["payment.expired"]


def test_reverted_transfer_is_recorded_failed(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=4, reverted=True)

    result = ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert result.outcome == IngestOutcome.FAILED
    assert result.transaction.status == TransactionStatus.FAILED
    assert result.transaction.failed_at is not None
    # The customer can still pay before expiry.
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.PENDING


def test_refresh_confirms_pending_transaction(db_session, chain, make_merchant, make_payment, deposit, webhook_transport):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=1)
    ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert refresh_pending_transactions(db_session, chain=chain) == {"checked": 1, "confirmed": 0, "failed": 0}

    chain.mine("polygon", 9)
    counts = refresh_pending_transactions(db_session, chain=chain)

    assert counts == {"checked": 1, "confirmed": 1, "failed": 0}
    record = db_session.scalars(select(ChainTransaction)).one()
    assert record.status == TransactionStatus.CONFIRMED
    assert record.confirmation_count == 10
    assert ledger.get_payment(db_session, payment.public_id).status == PaymentStatus.COMPLETED
    assert webhook_transport.events == ["payment.completed"]


def test_refresh_fails_payment_when_transfer_reverts(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, confirmations=1)
    ingest_transaction(db_session, tx_hash, "polygon", chain=chain)
    chain.revert(tx_hash)

    counts = refresh_pending_transactions(db_session, chain=chain)

    assert counts == {"checked": 1, "confirmed": 0, "failed": 1}
    refreshed = ledger.get_payment(db_session, payment.public_id)
    assert refreshed.status == PaymentStatus.FAILED
    assert refreshed.failed_at is not None


def test_refresh_skips_unlinked_transactions(db_session, chain, make_merchant, make_payment, deposit):
    payment = make_payment(make_merchant())
    tx_hash = deposit(payment, amount="1.00", confirmations=1)
    ingest_transaction(db_session, tx_hash, "polygon", chain=chain)

    assert refresh_pending_transactions(db_session, chain=chain)["checked"] == 0
