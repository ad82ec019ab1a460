"""Payment ledger: creation and the payment state machine."""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from stablepay.config import get_settings
from stablepay.models import Merchant, MerchantStatus, Payment, PaymentStatus
from stablepay.schemas.payment import PaymentCreate
from stablepay.services import merchants as merchant_directory
from stablepay.services import webhooks
from stablepay.services.chain import ChainClient, as_network, get_chain_client, normalize_address
from stablepay.services.fees import to_decimal
from stablepay.services.payment_links import attach_payment_links
from stablepay.utils.audit import log_audit
from stablepay.utils.errors import (
    InvalidAmount,
    InvalidExpiry,
    InvalidTransition,
    MerchantNotActive,
    PaymentNotFound,
    StateConflictError,
)
from stablepay.utils.time import utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}
)

_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED, PaymentStatus.FAILED}
    ),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
}

# Statuses merchants hear about; ``processing`` is internal bookkeeping.
_NOTIFIED_STATUSES = TERMINAL_STATUSES


def can_transition(current: PaymentStatus, new_status: PaymentStatus) -> bool:
    return new_status in _TRANSITIONS.get(current, frozenset())


def _validate_amount(raw) -> Decimal:
    settings = get_settings()
    amount = to_decimal(raw)
    if amount <= 0 or amount > Decimal(settings.MAX_PAYMENT_AMOUNT):
        raise InvalidAmount(
            "Payment amount must be positive and not exceed the configured ceiling.",
            details={"amount": str(amount), "max_amount": str(settings.MAX_PAYMENT_AMOUNT)},
        )
    return amount


def _expiry_minutes(expires_in: int | None) -> int:
    settings = get_settings()
    if expires_in is None:
        return settings.DEFAULT_EXPIRY_MINUTES
    if not settings.MIN_EXPIRY_MINUTES <= expires_in <= settings.MAX_EXPIRY_MINUTES:
        raise InvalidExpiry(
            "Expiry must be between the configured bounds (minutes).",
            details={
                "expires_in": expires_in,
                "min": settings.MIN_EXPIRY_MINUTES,
                "max": settings.MAX_EXPIRY_MINUTES,
            },
        )
    return expires_in


def create_payment(
    db: Session,
    merchant_id: int,
    request: PaymentCreate,
    *,
    chain: ChainClient | None = None,
) -> Payment:
    """Persist a new ``pending`` payment with its own deposit address."""

    merchant: Merchant = merchant_directory.find_by_id(db, merchant_id)
    if merchant.status != MerchantStatus.ACTIVE:
        raise MerchantNotActive(
            "Merchant is not active.",
            details={"merchant_id": merchant_id, "status": merchant.status.value},
        )

    amount = _validate_amount(request.amount)
    minutes = _expiry_minutes(request.expires_in)
    network = as_network(request.network or get_settings().default_network)
    chain = chain or get_chain_client()

    public_id = str(uuid4())
    now = utcnow()
    payment = Payment(
        public_id=public_id,
        merchant_id=merchant.id,
        external_id=request.external_id,
        amount=amount,
        currency=request.currency,
        network=network,
        deposit_address=normalize_address(chain.deposit_address(public_id, network)),
        status=PaymentStatus.PENDING,
        expires_at=now + timedelta(minutes=minutes),
        description=request.description,
        customer_email=request.customer_email,
        metadata_json=request.metadata,
    )
    attach_payment_links(payment)
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=f"merchant:{merchant.id}",
        action="PAYMENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "public_id": public_id,
            "amount": str(amount),
            "network": network.value,
            "deposit_address": payment.deposit_address,
            "customer_email": request.customer_email,
        },
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment created",
        extra={
            "payment_id": public_id,
            "merchant_id": merchant.id,
            "amount": str(amount),
            "currency": payment.currency.value,
            "expires_in_minutes": minutes,
        },
    )
    return payment


def get_payment(db: Session, payment_id: str) -> Payment:
    stmt = select(Payment).where(Payment.public_id == payment_id).execution_options(populate_existing=True)
    payment = db.scalars(stmt).first()
    if payment is None:
        raise PaymentNotFound("Payment not found.", details={"payment_id": payment_id})
    return payment


def get_payment_status(db: Session, payment_id: str) -> Payment:
    return get_payment(db, payment_id)


def list_payments(db: Session, merchant_id: int, *, limit: int = 50, offset: int = 0) -> list[Payment]:
    stmt = (
        select(Payment)
        .where(Payment.merchant_id == merchant_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(stmt))


def _timestamps_for(new_status: PaymentStatus, now: datetime) -> dict[str, datetime]:
    if new_status == PaymentStatus.COMPLETED:
        return {"completed_at": now}
    if new_status == PaymentStatus.CANCELLED:
        return {"cancelled_at": now}
    if new_status == PaymentStatus.FAILED:
        return {"failed_at": now}
    return {}


def transition(
    db: Session,
    payment_id: str,
    new_status: PaymentStatus,
    *,
    actor: str = "system",
    reason: str | None = None,
) -> Payment:
    """Move a payment along the state machine.

    Requesting the current status is a successful no-op, since completion
    triggers may fire more than once. The write is a compare-and-set on the
    observed status; losing a race re-reads the row and re-evaluates.
    """

    payment = get_payment(db, payment_id)
    for _ in range(len(PaymentStatus)):
        current = payment.status
        if current == new_status:
            logger.info(
                "Payment already in requested status",
                extra={"payment_id": payment_id, "status": current.value},
            )
            return payment
        if not can_transition(current, new_status):
            raise InvalidTransition(
                "Payment status transition not allowed.",
                details={"payment_id": payment_id, "from": current.value, "to": new_status.value},
            )

        now = utcnow()
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == current)
            .values(status=new_status, updated_at=now, **_timestamps_for(new_status, now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            log_audit(
                db,
                actor=actor,
                action=f"PAYMENT_{new_status.value.upper()}",
                entity="Payment",
                entity_id=payment.id,
                data={"public_id": payment_id, "from": current.value, "to": new_status.value, "reason": reason},
            )
            db.commit()
            db.refresh(payment)
            logger.info(
                "Payment status changed",
                extra={"payment_id": payment_id, "from": current.value, "to": new_status.value},
            )
            if new_status in _NOTIFIED_STATUSES:
                webhooks.notify(
                    db,
                    payment.merchant_id,
                    f"payment.{new_status.value}",
                    webhooks.payment_payload(payment),
                    resource_id=payment.public_id,
                )
            return payment

        # Someone else moved the row first.
        db.rollback()
        db.refresh(payment)
        logger.info(
            "Payment transition lost a race; re-evaluating",
            extra={"payment_id": payment_id, "observed": current.value, "now": payment.status.value},
        )

    raise StateConflictError("Payment status kept changing concurrently.", details={"payment_id": payment_id})


def cancel_payment(db: Session, merchant_id: int, payment_id: str) -> Payment:
    payment = get_payment(db, payment_id)
    if payment.merchant_id != merchant_id:
        # Do not reveal other merchants' payments.
        raise PaymentNotFound("Payment not found.", details={"payment_id": payment_id})
    return transition(db, payment_id, PaymentStatus.CANCELLED, actor=f"merchant:{merchant_id}")


def sweep_expired(db: Session, *, now: datetime | None = None) -> list[str]:
    """Expire every ``pending`` payment whose expiry time has passed.

    Guarded by ``status = pending`` in the UPDATE itself, so a payment that
    completed a moment earlier is never touched.
    """

    now = now or utcnow()
    candidates = list(
        db.scalars(
            select(Payment.id).where(Payment.status == PaymentStatus.PENDING, Payment.expires_at < now)
        )
    )
    if not candidates:
        return []

    db.execute(
        update(Payment)
        .where(
            Payment.id.in_(candidates),
            Payment.status == PaymentStatus.PENDING,
            Payment.expires_at < now,
        )
        .values(status=PaymentStatus.EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    expired = list(
        db.scalars(
            select(Payment).where(Payment.id.in_(candidates), Payment.status == PaymentStatus.EXPIRED)
        )
    )
    for payment in expired:
        log_audit(
            db,
            actor="scheduler",
            action="PAYMENT_EXPIRED",
            entity="Payment",
            entity_id=payment.id,
            data={"public_id": payment.public_id},
        )
    db.commit()

    for payment in expired:
        db.refresh(payment)
        webhooks.notify(
            db,
            payment.merchant_id,
            "payment.expired",
            webhooks.payment_payload(payment),
            resource_id=payment.public_id,
        )
    if expired:
        logger.info("Expired pending payments", extra={"count": len(expired)})
    return [payment.public_id for payment in expired]


__all__ = [
    "TERMINAL_STATUSES",
    "can_transition",
    "cancel_payment",
    "create_payment",
    "get_payment",
    "get_payment_status",
    "list_payments",
    "sweep_expired",
    "transition",
]
