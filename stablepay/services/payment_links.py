"""Hosted payment page links and scannable QR codes."""
import base64
import json
import logging
from io import BytesIO

import qrcode
import qrcode.constants
from qrcode.main import QRCode

from stablepay.config import get_settings
from stablepay.models.payment import Payment

logger = logging.getLogger(__name__)


def build_payment_url(public_id: str, base_url: str | None = None) -> str:
    base = (base_url or get_settings().payment_base_url).rstrip("/")
    return f"{base}/pay/{public_id}"


def build_qr_payload(payment: Payment) -> str:
    """Compact JSON a wallet app needs to pay: where, how much, which asset."""

    return json.dumps(
        {
            "address": payment.deposit_address,
            "amount": str(payment.amount),
            "currency": payment.currency.value,
            "network": payment.network.value,
            "payment_id": payment.public_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def generate_qr_data_url(data: str, *, box_size: int = 10, border: int = 4) -> str:
    """Render ``data`` as a PNG QR code and return it as a ``data:`` URL."""

    qr = QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, format="PNG")
    encoded = base64.b64encode(buffered.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def attach_payment_links(payment: Payment) -> Payment:
    """Fill ``payment_url`` and ``qr_code_data`` on an unsaved or flushed payment."""

    payment.payment_url = build_payment_url(payment.public_id)
    payment.qr_code_data = generate_qr_data_url(build_qr_payload(payment))
    logger.debug("Payment links generated", extra={"payment_id": payment.public_id})
    return payment


__all__ = ["attach_payment_links", "build_payment_url", "build_qr_payload", "generate_qr_data_url"]
