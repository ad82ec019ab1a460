"""Payment creation and status endpoints."""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from stablepay.db import get_db
from stablepay.schemas.payment import PaymentCreate, PaymentRead, PaymentStatusRead
from stablepay.services import payments as payments_service
from stablepay.services.chain import get_chain_client

router = APIRouter(tags=["payments"])


@router.post(
    "/merchants/{merchant_id}/payments",
    response_model=PaymentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_payment(merchant_id: int, payload: PaymentCreate, db: Session = Depends(get_db)):
    """Create a payment with its own deposit address."""

    return payments_service.create_payment(db, merchant_id, payload, chain=get_chain_client())


@router.get("/merchants/{merchant_id}/payments", response_model=list[PaymentRead])
def list_payments(
    merchant_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return payments_service.list_payments(db, merchant_id, limit=limit, offset=offset)


@router.get("/payments/{payment_id}", response_model=PaymentStatusRead)
def get_payment_status(payment_id: str, db: Session = Depends(get_db)):
    return payments_service.get_payment_status(db, payment_id)


@router.post("/merchants/{merchant_id}/payments/{payment_id}/cancel", response_model=PaymentRead)
def cancel_payment(merchant_id: int, payment_id: str, db: Session = Depends(get_db)):
    return payments_service.cancel_payment(db, merchant_id, payment_id)
