"""DB-backed lease so that only one runner executes the recurring jobs."""
from __future__ import annotations

import logging
import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stablepay import db
from stablepay.models.scheduler_lock import SchedulerLock
from stablepay.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

LOCK_NAME = "settlement-scheduler"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _load(session: Session, name: str) -> SchedulerLock | None:
    stmt = select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    owner: str | None = None,
    db_session: Session | None = None,
) -> bool:
    """Take the lease if it is free, expired, or already ours."""

    session, should_close = _session(db_session)
    owner = owner or owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)
    try:
        lock = _load(session, name)
        if lock is None:
            session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, heartbeat_at=now, expires_at=expires))
            try:
                session.commit()
            except IntegrityError:
                # Another runner inserted the row first.
                session.rollback()
                return False
            logger.info("Scheduler lock acquired", extra={"lock": name, "owner": owner})
            return True

        if lock.owner != owner and ensure_utc(lock.expires_at) > now:
            session.rollback()
            return False

        if lock.owner != owner:
            logger.warning(
                "Taking over expired scheduler lock",
                extra={"lock": name, "previous_owner": lock.owner, "owner": owner},
            )
            lock.owner = owner
            lock.acquired_at = now
        lock.heartbeat_at = now
        lock.expires_at = expires
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    owner: str | None = None,
    db_session: Session | None = None,
) -> bool:
    """Extend the lease when held by this runner. Returns whether we still hold it."""

    session, should_close = _session(db_session)
    owner = owner or owner_id()
    try:
        lock = _load(session, name)
        if lock is None or lock.owner != owner:
            session.rollback()
            logger.warning("Scheduler lock no longer held", extra={"lock": name, "owner": owner})
            return False
        now = utcnow()
        lock.heartbeat_at = now
        lock.expires_at = now + timedelta(seconds=ttl_seconds)
        session.commit()
        return True
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(
    name: str = LOCK_NAME, *, owner: str | None = None, db_session: Session | None = None
) -> None:
    session, should_close = _session(db_session)
    owner = owner or owner_id()
    try:
        lock = _load(session, name)
        if lock is not None and lock.owner == owner:
            session.delete(lock)
            session.commit()
            logger.info("Scheduler lock released", extra={"lock": name, "owner": owner})
        else:
            session.rollback()
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Lightweight view of the lease for the health endpoint."""

    session, should_close = _session(db_session)
    try:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None}
        now = utcnow()
        expires_in = (ensure_utc(lock.expires_at) - now).total_seconds()
        return {
            "status": "owned_by_self" if lock.owner == owner_id() else "owned_by_other",
            "owner": lock.owner,
            "expires_in_seconds": expires_in,
            "stale": expires_in < 0,
        }
    finally:
        if should_close:
            session.close()


__all__ = [
    "LOCK_NAME",
    "describe_scheduler_lock",
    "owner_id",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
