from decimal import Decimal

import pytest

from stablepay.models import MerchantStatus, Network, SettlementSchedule
from stablepay.services.chain import (
    InMemoryChainClient,
    TransferStatus,
    as_network,
    from_base_units,
    to_base_units,
)
from stablepay.services.merchants import list_for_schedule
from stablepay.utils.errors import InsufficientBalance, InvalidNetwork


def test_base_unit_conversion_truncates_dust():
    assert to_base_units(Decimal("50")) == 50_000_000
    assert to_base_units(Decimal("0.0000019")) == 1
    assert from_base_units(1_500_000) == Decimal("1.5")


def test_network_parsing():
    assert as_network(" Polygon ") == Network.POLYGON
    with pytest.raises(InvalidNetwork):
        as_network("solana")


def test_required_confirmations_per_network():
    client = InMemoryChainClient()
    assert client.required_confirmations(Network.ETHEREUM) == 3
    assert client.required_confirmations("polygon") == 10


def test_deposit_addresses_are_deterministic_and_distinct():
    client = InMemoryChainClient()
    first = client.deposit_address("pay-1", Network.POLYGON)
    assert first == client.deposit_address("pay-1", Network.POLYGON)
    assert first != client.deposit_address("pay-2", Network.POLYGON)
    assert first != client.deposit_address("pay-1", Network.ETHEREUM)
    assert len(first) == 42


def test_send_transfer_debits_wallet_and_is_observable():
    client = InMemoryChainClient(balances={Network.POLYGON: Decimal("10")})

    tx_hash = client.send_transfer("0x" + "a" * 40, Decimal("4.5"), Network.POLYGON)

    assert client.balance(Network.POLYGON) == Decimal("5.5")
    transfer = client.get_transaction(tx_hash, Network.POLYGON)
    assert transfer.amount == Decimal("4.5")
    assert transfer.status == TransferStatus.SUCCEEDED
    assert client.get_transaction(tx_hash, Network.ETHEREUM) is None


def test_send_transfer_without_funds():
    client = InMemoryChainClient()
    with pytest.raises(InsufficientBalance):
        client.send_transfer("0x" + "a" * 40, Decimal("1"), Network.ETHEREUM)
    assert client.sent == []


def test_merchants_listed_for_schedule(db_session, make_merchant):
    daily = make_merchant()
    make_merchant(settlement_schedule=SettlementSchedule.MONTHLY)
    make_merchant(status=MerchantStatus.SUSPENDED)
    make_merchant(settlement_address=None)

    assert [merchant.id for merchant in list_for_schedule(db_session, SettlementSchedule.DAILY)] == [daily.id]
