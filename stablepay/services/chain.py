"""Chain client contract and an in-memory implementation.

The engine never talks to a node directly: it goes through a stateless
``ChainClient`` invoked per call. Production deployments plug in a client
backed by their node provider; ``InMemoryChainClient`` is used for local
development and the test suite.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from enum import Enum
from uuid import uuid4

from stablepay.models.payment import Network
from stablepay.utils.errors import InsufficientBalance, InvalidNetwork

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6

# Fixed per network, not user configurable.
REQUIRED_CONFIRMATIONS: dict[Network, int] = {
    Network.ETHEREUM: 3,
    Network.POLYGON: 10,
}


class TransferStatus(str, Enum):
    PENDING = "pending"  # broadcast, not yet in a block
    SUCCEEDED = "succeeded"
    FAILED = "failed"  # included but reverted


@dataclass(frozen=True)
class ChainTransfer:
    """A token transfer as reported by the chain."""

    tx_hash: str
    network: Network
    from_address: str | None
    to_address: str | None
    amount_base_units: int
    confirmations: int
    block_number: int | None
    status: TransferStatus

    @property
    def amount(self) -> Decimal:
        return from_base_units(self.amount_base_units)


def as_network(value: Network | str) -> Network:
    if isinstance(value, Network):
        return value
    try:
        return Network(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidNetwork(f"Unsupported network: {value!r}") from exc


def to_base_units(amount: Decimal, decimals: int = USDC_DECIMALS) -> int:
    """Convert a token amount to integer base units, truncating sub-unit dust."""

    scaled = (Decimal(amount) * (Decimal(10) ** decimals)).quantize(Decimal("1"), rounding=ROUND_DOWN)
    return int(scaled)


def from_base_units(units: int, decimals: int = USDC_DECIMALS) -> Decimal:
    return Decimal(units) / (Decimal(10) ** decimals)


def normalize_address(address: str | None) -> str | None:
    if address is None:
        return None
    return address.strip().lower()


def normalize_hash(tx_hash: str) -> str:
    return tx_hash.strip().lower()


class ChainClient(ABC):
    """Stateless access to a chain's transfers, blocks and payout wallet."""

    @abstractmethod
    def get_transaction(self, tx_hash: str, network: Network) -> ChainTransfer | None:
        """Return the transfer for ``tx_hash`` or ``None`` if the chain has no such hash."""

    @abstractmethod
    def send_transfer(self, to_address: str, amount: Decimal, network: Network) -> str:
        """Send ``amount`` tokens to ``to_address`` and return the transaction hash.

        Raises ``InsufficientBalance`` when the payout wallet cannot cover it.
        """

    @abstractmethod
    def current_block_height(self, network: Network) -> int:
        """Return the latest block number of ``network``."""

    @abstractmethod
    def deposit_address(self, payment_id: str, network: Network) -> str:
        """Return the deposit address dedicated to ``payment_id``."""

    def required_confirmations(self, network: Network) -> int:
        return REQUIRED_CONFIRMATIONS[as_network(network)]


@dataclass
class _RecordedTransfer:
    network: Network
    from_address: str | None
    to_address: str | None
    amount_base_units: int
    block_number: int | None
    reverted: bool = False


class InMemoryChainClient(ChainClient):
    """Deterministic chain double for development and tests.

    Blocks only advance when ``mine`` is called.
    """

    def __init__(
        self,
        *,
        payout_wallet: str = "0x" + "f" * 40,
        balances: dict[Network, Decimal] | None = None,
        start_height: int = 1_000,
    ) -> None:
        self.payout_wallet = payout_wallet
        self._lock = threading.Lock()
        self._heights: dict[Network, int] = {network: start_height for network in Network}
        self._transfers: dict[str, _RecordedTransfer] = {}
        self._balances: dict[Network, int] = {
            network: to_base_units(amount) for network, amount in (balances or {}).items()
        }
        self.sent: list[tuple[str, Decimal, Network, str]] = []

    # -- test helpers ---------------------------------------------------------
    def add_transfer(
        self,
        tx_hash: str,
        *,
        network: Network | str,
        to_address: str,
        amount: Decimal | str,
        from_address: str = "0x" + "1" * 40,
        confirmations: int | None = 0,
        reverted: bool = False,
    ) -> str:
        """Record an inbound transfer; ``confirmations=None`` leaves it unmined."""

        net = as_network(network)
        with self._lock:
            height = self._heights[net]
            block = None if confirmations is None else height - confirmations
            self._transfers[normalize_hash(tx_hash)] = _RecordedTransfer(
                network=net,
                from_address=normalize_address(from_address),
                to_address=normalize_address(to_address),
                amount_base_units=to_base_units(Decimal(str(amount))),
                block_number=block,
                reverted=reverted,
            )
        return normalize_hash(tx_hash)

    def mine(self, network: Network | str, blocks: int = 1) -> int:
        net = as_network(network)
        with self._lock:
            self._heights[net] += blocks
            for transfer in self._transfers.values():
                if transfer.network == net and transfer.block_number is None:
                    transfer.block_number = self._heights[net]
            return self._heights[net]

    def revert(self, tx_hash: str) -> None:
        with self._lock:
            self._transfers[normalize_hash(tx_hash)].reverted = True

    def fund(self, network: Network | str, amount: Decimal | str) -> None:
        net = as_network(network)
        with self._lock:
            self._balances[net] = self._balances.get(net, 0) + to_base_units(Decimal(str(amount)))

    def balance(self, network: Network | str) -> Decimal:
        return from_base_units(self._balances.get(as_network(network), 0))

    # -- ChainClient ----------------------------------------------------------
    def get_transaction(self, tx_hash: str, network: Network) -> ChainTransfer | None:
        net = as_network(network)
        key = normalize_hash(tx_hash)
        with self._lock:
            transfer = self._transfers.get(key)
            if transfer is None or transfer.network != net:
                return None
            height = self._heights[net]
            if transfer.block_number is None:
                confirmations, status = 0, TransferStatus.PENDING
            else:
                confirmations = max(0, height - transfer.block_number)
                status = TransferStatus.FAILED if transfer.reverted else TransferStatus.SUCCEEDED
            return ChainTransfer(
                tx_hash=key,
                network=net,
                from_address=transfer.from_address,
                to_address=transfer.to_address,
                amount_base_units=transfer.amount_base_units,
                confirmations=confirmations,
                block_number=transfer.block_number,
                status=status,
            )

    def send_transfer(self, to_address: str, amount: Decimal, network: Network) -> str:
        net = as_network(network)
        units = to_base_units(Decimal(amount))
        with self._lock:
            available = self._balances.get(net, 0)
            if available < units:
                raise InsufficientBalance(
                    "Payout wallet balance is insufficient.",
                    details={"network": net.value, "required": str(from_base_units(units))},
                )
            self._balances[net] = available - units
            tx_hash = "0x" + uuid4().hex + uuid4().hex
            self._transfers[tx_hash] = _RecordedTransfer(
                network=net,
                from_address=normalize_address(self.payout_wallet),
                to_address=normalize_address(to_address),
                amount_base_units=units,
                block_number=self._heights[net],
            )
            self.sent.append((to_address, Decimal(amount), net, tx_hash))
        logger.info("Transfer sent", extra={"tx_hash": tx_hash, "network": net.value, "amount": str(amount)})
        return tx_hash

    def current_block_height(self, network: Network) -> int:
        with self._lock:
            return self._heights[as_network(network)]

    def deposit_address(self, payment_id: str, network: Network) -> str:
        digest = hashlib.sha256(f"{as_network(network).value}:{payment_id}".encode("utf-8")).hexdigest()
        return "0x" + digest[:40]


_client: ChainClient | None = None


def set_chain_client(client: ChainClient | None) -> None:
    """Install the process-wide chain client (called at startup or by tests)."""

    global _client
    _client = client


def get_chain_client() -> ChainClient:
    global _client
    if _client is None:
        logger.warning("No chain client configured; falling back to the in-memory chain")
        _client = InMemoryChainClient()
    return _client


__all__ = [
    "ChainClient",
    "get_chain_client",
    "set_chain_client",
    "ChainTransfer",
    "InMemoryChainClient",
    "REQUIRED_CONFIRMATIONS",
    "TransferStatus",
    "USDC_DECIMALS",
    "as_network",
    "from_base_units",
    "normalize_address",
    "normalize_hash",
    "to_base_units",
]
