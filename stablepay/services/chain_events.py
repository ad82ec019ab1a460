"""Verification of inbound chain monitor callbacks."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Mapping

from fastapi import HTTPException, status

from stablepay.config import get_settings
from stablepay.utils.errors import error_response
from stablepay.utils.time import parse_iso_utc

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Chain-Signature"
TIMESTAMP_HEADER = "X-Chain-Timestamp"


def _get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def compute_chain_signature(secret: str, body: bytes, timestamp: str) -> str:
    """HMAC-SHA256 over ``"<timestamp>.<body>"``."""

    msg = timestamp.encode("utf-8") + b"." + body
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def _parse_timestamp(raw: str) -> int:
    try:
        return int(float(raw))
    except ValueError:
        pass
    try:
        return int(parse_iso_utc(raw).timestamp())
    except ValueError as exc:
        logger.warning("Invalid chain webhook timestamp format")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_TIMESTAMP_INVALID", "Invalid timestamp format."),
        ) from exc


def verify_chain_webhook_signature(
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    now: float | None = None,
) -> int:
    """Validate signature and timestamp drift; return the timestamp in seconds."""

    settings = get_settings()
    secret = settings.chain_webhook_secret
    if not secret:
        logger.error("Chain webhook secret is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("WEBHOOK_SECRET_NOT_CONFIGURED", "Chain webhook secret is not configured."),
        )

    provided = _get_header(headers, SIGNATURE_HEADER)
    ts = _get_header(headers, TIMESTAMP_HEADER)
    if not provided or not ts:
        logger.warning("Missing chain webhook signature or timestamp")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_SIGNATURE_MISSING", "Signature or timestamp header missing."),
        )

    ts_seconds = _parse_timestamp(ts)
    current = time.time() if now is None else now
    if abs(current - ts_seconds) > settings.chain_webhook_max_drift_seconds:
        logger.warning("Chain webhook timestamp outside drift window", extra={"drift": current - ts_seconds})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_TIMESTAMP_EXPIRED", "Webhook timestamp outside the allowed window."),
        )

    expected = compute_chain_signature(secret, raw_body, ts)
    if not hmac.compare_digest(expected, provided):
        logger.warning("Chain webhook signature mismatch")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_SIGNATURE_INVALID", "Invalid chain webhook signature."),
        )
    return ts_seconds


__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "compute_chain_signature",
    "verify_chain_webhook_signature",
]
