from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from stablepay.models.scheduler_lock import SchedulerLock
from stablepay.services.scheduler_lock import (
    LOCK_NAME,
    describe_scheduler_lock,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)


def test_scheduler_lock_enforces_single_owner(db_session):
    assert try_acquire_scheduler_lock(owner="node-A", db_session=db_session) is True
    # Re-acquiring our own lease just extends it.
    assert try_acquire_scheduler_lock(owner="node-A", db_session=db_session) is True
    assert try_acquire_scheduler_lock(owner="node-B", db_session=db_session) is False

    release_scheduler_lock(owner="node-A", db_session=db_session)
    assert try_acquire_scheduler_lock(owner="node-B", db_session=db_session) is True


def test_lock_can_be_taken_over_after_expiry(db_session):
    assert try_acquire_scheduler_lock(owner="node-A", ttl_seconds=60, db_session=db_session)

    lock = db_session.execute(select(SchedulerLock).where(SchedulerLock.name == LOCK_NAME)).scalar_one()
    lock.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.commit()

    assert try_acquire_scheduler_lock(owner="node-B", ttl_seconds=300, db_session=db_session)
    assert refresh_scheduler_lock(owner="node-A", db_session=db_session) is False
    assert refresh_scheduler_lock(owner="node-B", db_session=db_session) is True


def test_release_by_other_owner_is_ignored(db_session):
    assert try_acquire_scheduler_lock(owner="node-A", db_session=db_session)
    release_scheduler_lock(owner="node-B", db_session=db_session)
    assert try_acquire_scheduler_lock(owner="node-B", db_session=db_session) is False


def test_describe_scheduler_lock(db_session):
    assert describe_scheduler_lock(db_session=db_session) == {"status": "none", "owner": None}

    assert try_acquire_scheduler_lock(owner="node-A", ttl_seconds=60, db_session=db_session)
    info = describe_scheduler_lock(db_session=db_session)

    assert info["status"] == "owned_by_other"
    assert info["owner"] == "node-A"
    assert 0 < info["expires_in_seconds"] <= 60
    assert info["stale"] is False


def test_lock_with_default_owner_is_owned_by_self():
    assert try_acquire_scheduler_lock()
    try:
        assert describe_scheduler_lock()["status"] == "owned_by_self"
    finally:
        release_scheduler_lock()
    assert describe_scheduler_lock()["status"] == "none"
