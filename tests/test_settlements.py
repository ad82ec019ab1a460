"""Tests for settlement batching, schedule runs and failed-batch release."""
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from stablepay.models import (
    Network,
    PaymentStatus,
    Settlement,
    SettlementPayment,
    SettlementSchedule,
    SettlementStatus,
)
from stablepay.services import payments as ledger
from stablepay.services import settlements
from stablepay.services.chain import InMemoryChainClient
from stablepay.services.payouts import execute_payout
from stablepay.services.settlements import create_batch, release_failed_settlement, run_schedule, settlement_period
from stablepay.utils.errors import BatchConflict, InvalidTransition, SettlementNotFound
from stablepay.utils.time import utcnow


def _window() -> tuple[datetime, datetime]:
    now = utcnow()
    return now - timedelta(days=1), now + timedelta(minutes=1)


def _settlement_count(db_session) -> int:
    return db_session.scalar(select(func.count()).select_from(Settlement))


def test_batch_nets_completed_payments(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant(fee_rate=Decimal("0.02"))
    for amount in ("50", "75", "25"):
        complete_payment(make_payment(merchant, amount))

    settlement = create_batch(db_session, merchant.id, *_window())

    assert settlement is not None
    assert settlement.status == SettlementStatus.PENDING
    assert settlement.gross_amount == Decimal("150.00")
    assert settlement.fee_amount == Decimal("3.00")
    assert settlement.net_amount == Decimal("147.00")
    assert settlement.transaction_count == 3
    assert settlement.fee_rate == Decimal("0.02")
    assert len(settlement.links) == 3


def test_sub_cent_batch_keeps_net_equal_to_gross_minus_fee(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    complete_payment(make_payment(merchant, "100.005"))

    settlement = create_batch(db_session, merchant.id, *_window())

    assert settlement is not None
    assert settlement.gross_amount == Decimal("100.01")
    assert settlement.fee_amount == Decimal("1.50")
    assert settlement.net_amount == settlement.gross_amount - settlement.fee_amount


def test_batch_ignores_unfinished_and_out_of_period_payments(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    make_payment(merchant, "10")
    processing = make_payment(merchant, "20")
    ledger.transition(db_session, processing.public_id, PaymentStatus.PROCESSING)
    complete_payment(make_payment(merchant, "30"))

    start, end = _window()
    assert create_batch(db_session, merchant.id, start - timedelta(days=5), start) is None

    settlement = create_batch(db_session, merchant.id, start, end)
    assert settlement.transaction_count == 1
    assert settlement.gross_amount == Decimal("30.00")


def test_payment_settles_at_most_once(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    complete_payment(make_payment(merchant))

    first = create_batch(db_session, merchant.id, *_window())
    second = create_batch(db_session, merchant.id, *_window())

    assert first is not None
    assert second is None
    assert _settlement_count(db_session) == 1


def test_no_completed_payments_creates_nothing(db_session, make_merchant):
    merchant = make_merchant()
    assert create_batch(db_session, merchant.id, *_window()) is None
    assert _settlement_count(db_session) == 0


def test_non_positive_net_creates_nothing(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    # The minimum fee swallows the whole amount.
    complete_payment(make_payment(merchant, "0.30"))
    assert create_batch(db_session, merchant.id, *_window()) is None
    assert _settlement_count(db_session) == 0


def test_overlapping_batch_rolls_back_entirely(db_session, monkeypatch, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    linked = complete_payment(make_payment(merchant, "40"))
    create_batch(db_session, merchant.id, *_window())
    fresh = complete_payment(make_payment(merchant, "60"))

    # A concurrent run read the same payments before our links were visible.
    def stale_selection(db, merchant_id, start, end):
        return [ledger.get_payment(db, linked.public_id), ledger.get_payment(db, fresh.public_id)]

    monkeypatch.setattr(settlements, "_select_eligible_payments", stale_selection)

    with pytest.raises(BatchConflict):
        create_batch(db_session, merchant.id, *_window())

    assert _settlement_count(db_session) == 1
    linked_ids = db_session.scalars(select(SettlementPayment.payment_id)).all()
    assert linked_ids == [linked.id]


@pytest.mark.parametrize(
    ("schedule", "expected"),
    [
        (SettlementSchedule.DAILY, (datetime(2026, 10, 17, tzinfo=UTC), datetime(2026, 10, 18, tzinfo=UTC))),
        (SettlementSchedule.WEEKLY, (datetime(2026, 10, 11, tzinfo=UTC), datetime(2026, 10, 18, tzinfo=UTC))),
        (SettlementSchedule.MONTHLY, (datetime(2026, 9, 1, tzinfo=UTC), datetime(2026, 10, 1, tzinfo=UTC))),
    ],
)
def test_settlement_period(schedule, expected):
    assert settlement_period(schedule, datetime(2026, 10, 18, 13, 45, tzinfo=UTC)) == expected


def test_monthly_period_crosses_year_boundary():
    start, end = settlement_period(SettlementSchedule.MONTHLY, datetime(2027, 1, 1, 0, 15, tzinfo=UTC))
    assert start == datetime(2026, 12, 1, tzinfo=UTC)
    assert end == datetime(2027, 1, 1, tzinfo=UTC)


def _mining_sleep(chain: InMemoryChainClient):
    return lambda _seconds: chain.mine(Network.POLYGON, 10)


def test_run_schedule_pays_every_eligible_merchant(db_session, chain, make_merchant, make_payment, complete_payment):
    paid = make_merchant()
    complete_payment(make_payment(paid, "100"))
    idle = make_merchant()
    weekly = make_merchant(settlement_schedule=SettlementSchedule.WEEKLY)
    complete_payment(make_payment(weekly, "100"))
    no_address = make_merchant(settlement_address=None)
    complete_payment(make_payment(no_address, "100"))

    summary = run_schedule(
        db_session,
        SettlementSchedule.DAILY,
        chain=chain,
        now=utcnow() + timedelta(days=1),
        watch_timeout=30,
        poll_interval=1,
        sleep=_mining_sleep(chain),
    )

    assert len(summary.created) == 1
    assert summary.completed == summary.created
    assert summary.skipped == [idle.id]
    assert summary.errors == {}
    settlement = settlements.get_settlement(db_session, summary.completed[0])
    assert settlement.merchant_id == paid.id
    assert settlement.net_amount == Decimal("98.50")
    assert chain.sent[0][0] == paid.settlement_address


def test_run_schedule_isolates_merchant_failures(db_session, monkeypatch, make_merchant, make_payment, complete_payment):
    small = make_merchant()
    complete_payment(make_payment(small, "50"))
    large = make_merchant()
    complete_payment(make_payment(large, "500"))
    broken = make_merchant()
    complete_payment(make_payment(broken, "10"))

    real_create_batch = settlements.create_batch

    def create_batch_or_conflict(db, merchant_id, start, end):
        if merchant_id == broken.id:
            raise BatchConflict("Payments are already part of another settlement.")
        return real_create_batch(db, merchant_id, start, end)

    monkeypatch.setattr(settlements, "create_batch", create_batch_or_conflict)
    wallet = InMemoryChainClient(balances={Network.POLYGON: Decimal("100")})

    summary = run_schedule(
        db_session,
        SettlementSchedule.DAILY,
        chain=wallet,
        now=utcnow() + timedelta(days=1),
        watch_timeout=30,
        poll_interval=1,
        sleep=_mining_sleep(wallet),
    )

    assert len(summary.completed) == 1
    assert len(summary.failed) == 1
    assert list(summary.errors) == [broken.id]
    failed = settlements.get_settlement(db_session, summary.failed[0])
    assert failed.merchant_id == large.id
    assert "InsufficientBalance" in failed.error_message
    assert wallet.balance(Network.POLYGON) == Decimal("100") - Decimal("49.25")


def _failed_settlement(db_session, merchant) -> Settlement:
    settlement = create_batch(db_session, merchant.id, *_window())
    empty_wallet = InMemoryChainClient()
    return execute_payout(db_session, settlement.public_id, chain=empty_wallet, watch_timeout=0)


def test_release_returns_payments_to_the_pool(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    payment = complete_payment(make_payment(merchant, "80"))
    failed = _failed_settlement(db_session, merchant)
    assert failed.status == SettlementStatus.FAILED

    # Still linked: a new run must not pick the payment up on its own.
    assert create_batch(db_session, merchant.id, *_window()) is None

    released = release_failed_settlement(db_session, failed.public_id)
    assert released.links_released_at is not None
    assert released.links == []
    assert released.status == SettlementStatus.FAILED

    retry = create_batch(db_session, merchant.id, *_window())
    assert retry is not None
    assert [link.payment_id for link in retry.links] == [payment.id]


def test_release_is_idempotent(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    complete_payment(make_payment(merchant))
    failed = _failed_settlement(db_session, merchant)

    first = release_failed_settlement(db_session, failed.public_id)
    released_at = first.links_released_at
    second = release_failed_settlement(db_session, failed.public_id)
    assert second.links_released_at == released_at


def test_release_requires_failed_batch(db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    complete_payment(make_payment(merchant))
    settlement = create_batch(db_session, merchant.id, *_window())

    with pytest.raises(InvalidTransition):
        release_failed_settlement(db_session, settlement.public_id)
    with pytest.raises(SettlementNotFound):
        release_failed_settlement(db_session, "missing")


@pytest.mark.anyio
async def test_settlement_api(client, db_session, make_merchant, make_payment, complete_payment):
    merchant = make_merchant()
    complete_payment(make_payment(merchant, "100"))
    settlement = create_batch(db_session, merchant.id, *_window())

    fetched = await client.get(f"/settlements/{settlement.public_id}")
    assert fetched.status_code == 200
    assert fetched.json()["status"] == "pending"
    assert Decimal(fetched.json()["net_amount"]) == Decimal("98.50")

    conflict = await client.post(f"/settlements/{settlement.public_id}/release")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "INVALID_TRANSITION"

    payout = await client.post(f"/settlements/{settlement.public_id}/payout")
    assert payout.status_code == 200
    # The watch timeout is zero in tests, so the batch waits for reconciliation.
    assert payout.json()["status"] == "processing"
    assert payout.json()["payout_tx_hash"]

    missing = await client.get("/settlements/missing")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "SETTLEMENT_NOT_FOUND"


@pytest.mark.anyio
async def test_run_schedule_api(client, make_merchant):
    make_merchant()
    response = await client.post("/settlements/run/daily")
    assert response.status_code == 200
    body = response.json()
    assert body["schedule"] == "daily"
    assert body["created"] == []
    assert len(body["skipped"]) == 1

    unknown = await client.post("/settlements/run/hourly")
    assert unknown.status_code == 422
