"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from stablepay.models.audit import AuditLog
from stablepay.utils.time import utcnow


ADDRESS_KEYS = {
    "deposit_address",
    "settlement_address",
    "from_address",
    "to_address",
}
SENSITIVE_KEYS = ADDRESS_KEYS | {"customer_email", "email", "webhook_secret", "webhook_url"}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in ADDRESS_KEYS:
        text = str(value)
        if len(text) <= 10:
            return "***"
        return f"{text[:6]}***{text[-4:]}"

    if key in {"email", "customer_email"}:
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "webhook_url":
        text = str(value)
        base = text.split("?", 1)[0]
        if "//" in base:
            scheme, rest = base.split("//", 1)
            host = rest.split("/", 1)[0]
            return f"{scheme}//{host}/***"
        return "***"

    return "***"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with addresses, emails and secrets masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the shared AuditLog table (caller commits)."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )
