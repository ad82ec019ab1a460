"""Bounded polling of a transaction until it reaches its confirmation depth."""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from stablepay.config import get_settings
from stablepay.models.payment import Network
from stablepay.services.chain import ChainClient, ChainTransfer, TransferStatus, as_network
from stablepay.utils.errors import ChainUnavailable

logger = logging.getLogger(__name__)


class ConfirmationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class WatchResult:
    state: ConfirmationState
    confirmations: int


def confirmation_state(transfer: ChainTransfer, required: int) -> ConfirmationState:
    """Classify a transfer against ``required`` confirmations."""

    if transfer.status == TransferStatus.FAILED:
        return ConfirmationState.FAILED
    if transfer.status == TransferStatus.SUCCEEDED and transfer.confirmations >= required:
        return ConfirmationState.CONFIRMED
    return ConfirmationState.PENDING


def watch(
    chain: ChainClient,
    tx_hash: str,
    network: Network | str,
    *,
    timeout: float | None = None,
    poll_interval: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WatchResult:
    """Poll ``tx_hash`` until confirmed, failed on chain, or ``timeout`` elapses.

    A timeout yields ``PENDING``: the transfer is not known to have failed, so
    the caller must leave its state non-terminal and re-check later.
    """

    settings = get_settings()
    net = as_network(network)
    timeout = settings.CONFIRMATION_WATCH_TIMEOUT_SECONDS if timeout is None else timeout
    poll_interval = settings.CONFIRMATION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
    required = chain.required_confirmations(net)
    deadline = clock() + timeout
    confirmations = 0

    while True:
        try:
            transfer = chain.get_transaction(tx_hash, net)
        except ChainUnavailable as exc:
            logger.warning(
                "Chain unavailable while watching transaction",
                extra={"tx_hash": tx_hash, "network": net.value, "error": str(exc)},
            )
            transfer = None

        if transfer is not None:
            confirmations = transfer.confirmations
            state = confirmation_state(transfer, required)
            if state != ConfirmationState.PENDING:
                logger.info(
                    "Transaction watch finished",
                    extra={"tx_hash": tx_hash, "state": state.value, "confirmations": confirmations},
                )
                return WatchResult(state, confirmations)

        if clock() >= deadline:
            logger.info(
                "Transaction watch timed out",
                extra={"tx_hash": tx_hash, "confirmations": confirmations, "required": required},
            )
            return WatchResult(ConfirmationState.PENDING, confirmations)
        sleep(poll_interval)


__all__ = ["ConfirmationState", "WatchResult", "confirmation_state", "watch"]
