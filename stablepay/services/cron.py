"""Background jobs run by APScheduler on the lock-holding runner.

Each job opens its own session, logs and records its outcome, and never
lets an exception escape into the scheduler: whatever it did not finish
stays in a non-terminal state and is picked up by the next run.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from stablepay.core.runtime_state import record_job_run
from stablepay.db import session_scope
from stablepay.models.merchant import SettlementSchedule
from stablepay.services import payments, payouts, settlements, transactions
from stablepay.services.chain import get_chain_client
from stablepay.services.scheduler_lock import refresh_scheduler_lock
from stablepay.utils.errors import StablePayError
from stablepay.utils.time import utcnow

logger = logging.getLogger(__name__)


def _run(job: str, work: Callable[[Any], dict[str, Any]]) -> None:
    started = utcnow()
    try:
        with session_scope() as db:
            detail = work(db)
    except (StablePayError, SQLAlchemyError) as exc:
        logger.exception("Scheduled job failed", extra={"job": job})
        record_job_run(job, at=started, ok=False, detail={"error": str(exc)})
        return
    record_job_run(job, at=started, ok=True, detail=detail)


def sweep_expired_payments_once() -> None:
    _run("sweep-expired-payments", lambda db: {"expired": len(payments.sweep_expired(db))})


def refresh_pending_transactions_once() -> None:
    _run(
        "refresh-pending-transactions",
        lambda db: transactions.refresh_pending_transactions(db, chain=get_chain_client()),
    )


def reconcile_settlements_once() -> None:
    _run(
        "reconcile-settlements",
        lambda db: payouts.reconcile_processing_settlements(db, chain=get_chain_client()),
    )


def run_settlements_once(schedule: SettlementSchedule | str) -> None:
    schedule = SettlementSchedule(schedule)

    def work(db) -> dict[str, Any]:
        summary = settlements.run_schedule(db, schedule, chain=get_chain_client())
        return {
            "created": len(summary.created),
            "completed": len(summary.completed),
            "failed": len(summary.failed),
            "errors": len(summary.errors),
        }

    _run(f"settlements-{schedule.value}", work)


def heartbeat_scheduler_lock() -> None:
    try:
        held = refresh_scheduler_lock()
    except SQLAlchemyError:
        logger.exception("Scheduler lock heartbeat failed")
        return
    if not held:
        logger.error("Scheduler lock lost; another runner may start jobs")


__all__ = [
    "heartbeat_scheduler_lock",
    "reconcile_settlements_once",
    "refresh_pending_transactions_once",
    "run_settlements_once",
    "sweep_expired_payments_once",
]
