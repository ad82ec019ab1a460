"""Fee computation for payments and settlement batches."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from stablepay.config import get_settings
from stablepay.utils.errors import InvalidAmount, InvalidFeeRate

CENT = Decimal("0.01")

# Published flat rates of card networks, used for display comparisons only.
VISA_FEE_RATE = Decimal("0.029")
MASTERCARD_FEE_RATE = Decimal("0.031")


@dataclass(frozen=True)
class FeeCalculation:
    gross_amount: Decimal
    fee_amount: Decimal
    net_amount: Decimal
    fee_rate: Decimal
    minimum_fee: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "gross_amount": str(self.gross_amount),
            "fee_amount": str(self.fee_amount),
            "net_amount": str(self.net_amount),
            "fee_rate": str(self.fee_rate),
            "minimum_fee": str(self.minimum_fee),
        }


def to_decimal(value: Any) -> Decimal:
    """Convert an int, float, str or Decimal amount without float artefacts."""

    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise InvalidAmount(f"Invalid money amount: {value!r}") from exc


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_fee_rate(fee_rate: Any | None) -> Decimal:
    """Return the effective rate, falling back to the system default when unset."""

    settings = get_settings()
    if fee_rate is None:
        return Decimal(settings.DEFAULT_FEE_RATE)
    rate = to_decimal(fee_rate)
    if rate < 0 or rate > Decimal(settings.MAX_FEE_RATE):
        raise InvalidFeeRate(
            "Fee rate must be between 0 and the configured maximum.",
            details={"fee_rate": str(rate), "max_fee_rate": str(settings.MAX_FEE_RATE)},
        )
    return rate


def compute_fee(gross_amount: Any, fee_rate: Any | None = None) -> FeeCalculation:
    """Split ``gross_amount`` into fee and net.

    The fee is ``max(gross * rate, MIN_FEE)`` computed at full precision and
    rounded half up to cents once. The net is the rounded gross minus the
    rounded fee, so ``net_amount == gross_amount - fee_amount`` always holds
    even for sub-cent gross sums.
    """

    gross = to_decimal(gross_amount)
    rate = resolve_fee_rate(fee_rate)
    minimum_fee = Decimal(get_settings().MIN_FEE)

    fee = round_money(max(gross * rate, minimum_fee))
    gross = round_money(gross)
    return FeeCalculation(
        gross_amount=gross,
        fee_amount=fee,
        net_amount=gross - fee,
        fee_rate=rate,
        minimum_fee=minimum_fee,
    )


def compare_processor_fees(amount: Any, fee_rate: Any | None = None) -> dict[str, Any]:
    """Compare our fee with card-network flat rates (display only)."""

    gross = to_decimal(amount)
    rate = resolve_fee_rate(fee_rate)
    crypto_fee = gross * rate
    visa_fee = gross * VISA_FEE_RATE
    mastercard_fee = gross * MASTERCARD_FEE_RATE
    return {
        "crypto_fee": round_money(crypto_fee),
        "visa_fee": round_money(visa_fee),
        "mastercard_fee": round_money(mastercard_fee),
        "savings": {
            "vs_visa": round_money(visa_fee - crypto_fee),
            "vs_mastercard": round_money(mastercard_fee - crypto_fee),
        },
    }


def fee_estimates(amounts: Iterable[Any], fee_rate: Any | None = None) -> list[dict[str, Decimal]]:
    estimates = []
    for amount in amounts:
        calculation = compute_fee(amount, fee_rate)
        savings = compare_processor_fees(amount, fee_rate)
        estimates.append(
            {
                "amount": calculation.gross_amount,
                "fee": calculation.fee_amount,
                "net": calculation.net_amount,
                "savings_vs_visa": savings["savings"]["vs_visa"],
            }
        )
    return estimates


__all__ = [
    "FeeCalculation",
    "compute_fee",
    "compare_processor_fees",
    "fee_estimates",
    "resolve_fee_rate",
    "round_money",
    "to_decimal",
]
