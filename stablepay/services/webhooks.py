"""Signed, single-attempt merchant webhook notifications.

Every notification is recorded as a ``WebhookDelivery`` row before the HTTP
call and resolved to ``delivered`` or ``failed`` afterwards. There is exactly
one attempt per event; a durable retry queue does not exist yet.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stablepay.config import get_settings
from stablepay.models.merchant import Merchant
from stablepay.models.payment import Payment
from stablepay.models.settlement import Settlement
from stablepay.models.webhook import WebhookDelivery, WebhookDeliveryStatus
from stablepay.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "StablePay-Webhook/1.0"


class WebhookTransport(Protocol):
    def post(self, url: str, body: bytes, headers: Mapping[str, str], timeout: float) -> int:
        """POST ``body`` and return the HTTP status code."""


class HttpxWebhookTransport:
    """Default transport backed by httpx."""

    def post(self, url: str, body: bytes, headers: Mapping[str, str], timeout: float) -> int:
        response = httpx.post(url, content=body, headers=dict(headers), timeout=timeout)
        return response.status_code


_transport: WebhookTransport | None = None


def set_webhook_transport(transport: WebhookTransport | None) -> None:
    global _transport
    _transport = transport


def get_webhook_transport() -> WebhookTransport:
    global _transport
    if _transport is None:
        _transport = HttpxWebhookTransport()
    return _transport


def serialize_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialise once; the signature covers exactly these bytes."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Helper for merchants verifying a received notification."""

    return hmac.compare_digest(compute_signature(secret, body), signature)


def _iso(value) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def payment_payload(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.public_id,
        "external_id": payment.external_id,
        "amount": str(payment.amount),
        "currency": payment.currency.value,
        "network": payment.network.value,
        "status": payment.status.value,
        "expires_at": _iso(payment.expires_at),
        "completed_at": _iso(payment.completed_at),
        "cancelled_at": _iso(payment.cancelled_at),
        "metadata": payment.metadata_json,
    }


def settlement_payload(settlement: Settlement) -> dict[str, Any]:
    return {
        "id": settlement.public_id,
        "gross_amount": str(settlement.gross_amount),
        "fee_amount": str(settlement.fee_amount),
        "net_amount": str(settlement.net_amount),
        "transaction_count": settlement.transaction_count,
        "period_start": _iso(settlement.period_start),
        "period_end": _iso(settlement.period_end),
        "status": settlement.status.value,
        "payout_tx_hash": settlement.payout_tx_hash,
        "error_message": settlement.error_message,
    }


def notify(
    db: Session,
    merchant_id: int,
    event_type: str,
    data: dict[str, Any],
    *,
    resource_id: str | None = None,
    transport: WebhookTransport | None = None,
) -> WebhookDelivery | None:
    """Deliver ``event_type`` to the merchant's webhook URL once.

    Callers must have committed their own state first: this function commits
    the delivery record on ``db``. It never raises.
    """

    try:
        merchant = db.get(Merchant, merchant_id)
        if merchant is None or not merchant.webhook_url:
            return None

        envelope = {
            "event": event_type,
            "data": data,
            "merchant_id": merchant_id,
            "timestamp": utcnow().isoformat(),
        }
        body = serialize_payload(envelope)
        secret = merchant.webhook_secret
        delivery = WebhookDelivery(
            merchant_id=merchant_id,
            event_type=event_type,
            resource_id=resource_id,
            payload_json=json.loads(body),
            signature=compute_signature(secret, body) if secret else "",
            status=WebhookDeliveryStatus.PENDING,
        )
        db.add(delivery)
        db.commit()

        if not secret:
            logger.warning(
                "Webhook secret missing; notification not sent",
                extra={"merchant_id": merchant_id, "event_type": event_type},
            )
            _resolve(db, delivery, status_code=None, error="webhook secret not configured")
            return delivery

        _deliver(db, delivery, merchant.webhook_url, body, transport or get_webhook_transport())
        return delivery
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "Failed to record webhook delivery",
            extra={"merchant_id": merchant_id, "event_type": event_type},
        )
        return None


def _deliver(
    db: Session,
    delivery: WebhookDelivery,
    url: str,
    body: bytes,
    transport: WebhookTransport,
) -> None:
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: delivery.signature,
        "User-Agent": USER_AGENT,
    }
    timeout = float(get_settings().WEBHOOK_TIMEOUT_SECONDS)
    delivery.attempted_at = utcnow()
    try:
        status_code = transport.post(url, body, headers, timeout)
    except Exception as exc:
        logger.warning(
            "Webhook delivery failed",
            extra={"merchant_id": delivery.merchant_id, "event_type": delivery.event_type, "error": str(exc)},
        )
        _resolve(db, delivery, status_code=None, error=f"{type(exc).__name__}: {exc}")
        return

    error = None if 200 <= status_code < 300 else f"HTTP {status_code}"
    _resolve(db, delivery, status_code=status_code, error=error)
    if error is None:
        logger.info(
            "Webhook delivered",
            extra={"merchant_id": delivery.merchant_id, "event_type": delivery.event_type},
        )
    else:
        logger.warning(
            "Webhook rejected by merchant endpoint",
            extra={"merchant_id": delivery.merchant_id, "event_type": delivery.event_type, "status": status_code},
        )


def _resolve(db: Session, delivery: WebhookDelivery, *, status_code: int | None, error: str | None) -> None:
    delivery.response_status = status_code
    if error is None:
        delivery.status = WebhookDeliveryStatus.DELIVERED
        delivery.delivered_at = utcnow()
    else:
        delivery.status = WebhookDeliveryStatus.FAILED
        delivery.error_message = error
    db.add(delivery)
    db.commit()


__all__ = [
    "HttpxWebhookTransport",
    "SIGNATURE_HEADER",
    "WebhookTransport",
    "compute_signature",
    "get_webhook_transport",
    "notify",
    "payment_payload",
    "serialize_payload",
    "set_webhook_transport",
    "settlement_payload",
    "verify_signature",
]
