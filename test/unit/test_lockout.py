"""Unit tests for brute-force lockout."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select

from accounts import lockout as lockout_module
from accounts.lockout import LOCKOUT_REASON, LockoutService
from errors import LockoutError, ValidationError
from ledger.service import AuditAction, ResourceType
from models import LockoutRecord
from services.database import session_scope


@pytest.fixture
def lockout(sqlite_session_factory, ledger, clock) -> LockoutService:
    """Provide a lockout service with the default threshold."""
    return LockoutService(sqlite_session_factory, ledger=ledger, now_provider=clock.now)


def test_unknown_identity_is_clear(lockout) -> None:
    """Identities without a record are not locked."""
    info = lockout.get_info("nobody")

    assert info.is_locked is False
    assert info.failed_attempts == 0
    assert info.unlocks_at is None


def test_fifth_failure_locks_for_fifteen_minutes(lockout, clock) -> None:
    """Five failures inside the window lock the identity until now + 15m."""
    for attempt in range(1, 5):
        info = lockout.record_failed_attempt("alice")
        assert info.failed_attempts == attempt
        assert info.is_locked is False

    info = lockout.record_failed_attempt("alice")

    assert info.is_locked is True
    assert info.failed_attempts == 5
    assert info.locked_until == clock.now() + timedelta(minutes=15)
    assert info.lockout_reason == LOCKOUT_REASON
    assert lockout.is_locked("alice") is True


def test_attempts_while_locked_do_not_extend_lock(lockout, clock) -> None:
    """Failures during an active lock are counted but keep the original expiry."""
    for _ in range(5):
        lockout.record_failed_attempt("alice")
    original = lockout.get_info("alice").locked_until

    clock.advance(minutes=5)
    info = lockout.record_failed_attempt("alice")

    assert info.failed_attempts == 6
    assert info.locked_until == original


def test_expired_lock_is_cleared_lazily(lockout, clock) -> None:
    """Reading state after expiry returns Clear and resets the counter."""
    for _ in range(5):
        lockout.record_failed_attempt("alice")

    clock.advance(minutes=15)

    assert lockout.is_locked("alice") is False
    assert lockout.get_info("alice").failed_attempts == 0


def test_failure_after_expiry_restarts_count(lockout, clock) -> None:
    """The first failure after a lock expires starts a new count at one."""
    for _ in range(5):
        lockout.record_failed_attempt("alice")
    clock.advance(minutes=16)

    info = lockout.record_failed_attempt("alice")

    assert info.failed_attempts == 1
    assert info.is_locked is False


def test_ensure_not_locked_raises_with_unlock_time(lockout, clock) -> None:
    """Locked identities raise LockoutError naming when they unlock."""
    lockout.ensure_not_locked("alice")
    for _ in range(5):
        lockout.record_failed_attempt("alice")

    with pytest.raises(LockoutError) as excinfo:
        lockout.ensure_not_locked("alice")

    assert excinfo.value.unlocks_at == clock.now() + timedelta(minutes=15)
    assert excinfo.value.to_dict()["code"] == "ACCOUNT_LOCKED"


def test_clear_failed_attempts_resets_counter(lockout) -> None:
    """A successful login returns the identity to Clear."""
    lockout.record_failed_attempt("alice")
    lockout.record_failed_attempt("alice")

    lockout.clear_failed_attempts("alice")

    assert lockout.get_info("alice").failed_attempts == 0


def test_unlock_account_records_ledger_entry(lockout, ledger) -> None:
    """Administrative unlock clears the lock and leaves a ledger trace."""
    for _ in range(5):
        lockout.record_failed_attempt("alice")

    info = lockout.unlock_account("alice", actor_id="admin-1")

    assert info.is_locked is False
    entries = ledger.query_by_resource("alice").entries
    assert len(entries) == 1
    assert entries[0].action is AuditAction.UPDATE
    assert entries[0].resource_type is ResourceType.USER
    assert entries[0].actor_id == "admin-1"
    assert entries[0].reason == "Admin unlock"
    assert entries[0].previous_value["failed_attempts"] == 5


def test_identities_are_tracked_independently(lockout) -> None:
    """Failures for one identity never affect another."""
    for _ in range(5):
        lockout.record_failed_attempt("alice")

    assert lockout.is_locked("bob") is False


def test_concurrent_failures_are_all_counted(lockout) -> None:
    """Concurrent increments for one identity serialize without lost updates."""
    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda _: lockout.record_failed_attempt("carol"), range(4)))

    info = lockout.get_info("carol")
    assert info.failed_attempts == 4
    assert info.is_locked is False


def test_blank_identity_is_rejected(lockout) -> None:
    """Identities must be non-empty."""
    with pytest.raises(ValidationError):
        lockout.record_failed_attempt("   ")


def test_record_created_concurrently_is_retried(
    lockout, sqlite_session_factory, clock, monkeypatch, caplog
) -> None:
    """A row inserted by another writer after the lookup is picked up on retry."""
    caplog.set_level(logging.INFO, logger="accounts.lockout")
    real_lock_record = lockout_module._lock_record
    lookups = []

    def lookup_then_race(session, key):
        lookups.append(key)
        if len(lookups) == 1:
            with session_scope(sqlite_session_factory) as other:
                other.add(
                    LockoutRecord(
                        identity=key,
                        failed_attempts=2,
                        last_attempt_at=clock.now(),
                        created_at=clock.now(),
                        updated_at=clock.now(),
                    )
                )
            return None
        return real_lock_record(session, key)

    monkeypatch.setattr(lockout_module, "_lock_record", lookup_then_race)

    info = lockout.record_failed_attempt("carol")

    assert lookups == ["carol", "carol"]
    assert info.failed_attempts == 3
    assert info.is_locked is False
    with session_scope(sqlite_session_factory) as session:
        rows = session.scalars(select(LockoutRecord)).all()
        assert [(row.identity, row.failed_attempts) for row in rows] == [("carol", 3)]
    assert "created concurrently; retrying" in caplog.text
