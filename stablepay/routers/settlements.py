"""Settlement run and payout endpoints (operator facing)."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stablepay.db import get_db
from stablepay.models.merchant import SettlementSchedule
from stablepay.schemas.settlement import ScheduleRunRead, SettlementRead
from stablepay.services import payouts, settlements
from stablepay.services.chain import get_chain_client

router = APIRouter(prefix="/settlements", tags=["settlements"])


@router.post("/run/{schedule}", response_model=ScheduleRunRead)
def run_settlement_schedule(schedule: SettlementSchedule, db: Session = Depends(get_db)):
    summary = settlements.run_schedule(db, schedule, chain=get_chain_client())
    return summary.as_dict()


@router.get("/{settlement_id}", response_model=SettlementRead)
def get_settlement(settlement_id: str, db: Session = Depends(get_db)):
    return settlements.get_settlement(db, settlement_id)


@router.post("/{settlement_id}/payout", response_model=SettlementRead)
def execute_payout(settlement_id: str, db: Session = Depends(get_db)):
    """Pay out a pending batch; stays ``processing`` if the watch times out."""

    return payouts.execute_payout(db, settlement_id, chain=get_chain_client())


@router.post("/{settlement_id}/release", response_model=SettlementRead)
def release_settlement(settlement_id: str, db: Session = Depends(get_db)):
    """Return the payments of a failed batch to the unsettled pool."""

    return settlements.release_failed_settlement(db, settlement_id)
