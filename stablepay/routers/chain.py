"""Inbound chain monitor callbacks."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from stablepay.db import get_db
from stablepay.schemas.settlement import ChainEvent, ChainEventResult
from stablepay.services import chain_events
from stablepay.services.chain import get_chain_client
from stablepay.services.transactions import ingest_transaction
from stablepay.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chain", tags=["chain"])


@router.post("/webhook", response_model=ChainEventResult, status_code=status.HTTP_200_OK)
async def chain_webhook(request: Request, db: Session = Depends(get_db)) -> ChainEventResult:
    raw_body = await request.body()
    chain_events.verify_chain_webhook_signature(raw_body, request.headers)

    try:
        event = ChainEvent.model_validate_json(raw_body)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=error_response("CHAIN_EVENT_INVALID", "Invalid chain event payload."),
        ) from exc

    # Ingestion is blocking: chain lookups and merchant webhook POSTs.
    result = await run_in_threadpool(
        ingest_transaction, db, event.tx_hash, event.network, chain=get_chain_client()
    )
    logger.info(
        "Chain webhook processed",
        extra={"tx_hash": event.tx_hash, "outcome": result.outcome.value},
    )
    return ChainEventResult(
        outcome=result.outcome.value,
        tx_hash=event.tx_hash.strip().lower(),
        payment_id=result.payment.public_id if result.payment is not None else None,
        transaction_status=result.transaction.status.value if result.transaction is not None else None,
    )


__all__ = ["router"]
