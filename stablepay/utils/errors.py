"""Domain error taxonomy and standardized error responses."""
from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class StablePayError(Exception):
    """Base class for every error raised by the settlement engine."""

    code = "STABLEPAY_ERROR"
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details or None)


# --- Bad input: surfaced, never retried ------------------------------------
class ValidationError(StablePayError):
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidFeeRate(ValidationError):
    code = "INVALID_FEE_RATE"


class InvalidExpiry(ValidationError):
    code = "INVALID_EXPIRY"


class InvalidNetwork(ValidationError):
    code = "INVALID_NETWORK"


# --- Unknown entities --------------------------------------------------------
class NotFoundError(StablePayError):
    code = "NOT_FOUND"
    http_status = 404


class PaymentNotFound(NotFoundError):
    code = "PAYMENT_NOT_FOUND"


class SettlementNotFound(NotFoundError):
    code = "SETTLEMENT_NOT_FOUND"


class MerchantNotFound(NotFoundError):
    code = "MERCHANT_NOT_FOUND"


class TransactionNotFound(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"


# --- Illegal state changes ---------------------------------------------------
class StateConflictError(StablePayError):
    code = "STATE_CONFLICT"
    http_status = 409


class InvalidTransition(StateConflictError):
    code = "INVALID_TRANSITION"


class BatchConflict(StateConflictError):
    code = "SETTLEMENT_BATCH_CONFLICT"


class NoSettlementAddress(StateConflictError):
    code = "NO_SETTLEMENT_ADDRESS"


class MerchantNotActive(StablePayError):
    code = "MERCHANT_NOT_ACTIVE"
    http_status = 403


# --- Collaborator failures: logged, left for a later scheduled retry ---------
class ExternalServiceError(StablePayError):
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502


class ChainUnavailable(ExternalServiceError):
    code = "CHAIN_UNAVAILABLE"


class InsufficientBalance(ExternalServiceError):
    code = "INSUFFICIENT_BALANCE"


__all__ = [
    "error_response",
    "StablePayError",
    "ValidationError",
    "InvalidAmount",
    "InvalidFeeRate",
    "InvalidExpiry",
    "InvalidNetwork",
    "NotFoundError",
    "PaymentNotFound",
    "SettlementNotFound",
    "MerchantNotFound",
    "TransactionNotFound",
    "StateConflictError",
    "InvalidTransition",
    "BatchConflict",
    "NoSettlementAddress",
    "MerchantNotActive",
    "ExternalServiceError",
    "ChainUnavailable",
    "InsufficientBalance",
]
