"""Fee estimate endpoint."""
from decimal import Decimal

from fastapi import APIRouter, Query

from stablepay.schemas.payment import FeeEstimateRead
from stablepay.services.fees import fee_estimates

router = APIRouter(prefix="/fees", tags=["fees"])


@router.get("/estimate", response_model=list[FeeEstimateRead])
def estimate_fees(
    amount: list[Decimal] = Query(...),
    fee_rate: Decimal | None = Query(None),
):
    """Fee, net and savings against card rates for each requested amount."""

    return fee_estimates(amount, fee_rate)
