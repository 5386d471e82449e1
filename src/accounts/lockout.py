"""Brute-force protection: per-identity failed-attempt counting and lockout.

Each identity moves between three states:

* Clear: no record, or a zero counter and no lock.
* Flagged(n): ``0 < n < threshold`` failed attempts and no lock.
* Locked(until): locked until ``until``; expiry is applied lazily on the next
  read or failed attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import LockoutError, ValidationError
from ledger.service import AuditAction, AuditLedger, LedgerDetails, ResourceType
from models import LockoutRecord
from services.database import SessionFactory, session_scope
from services.locks import KeyedLocks
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

LOCKOUT_REASON = "Brute-force protection: too many failed login attempts"
DEFAULT_UNLOCK_REASON = "Admin unlock"


@dataclass(frozen=True)
class LockoutInfo:
    """Current lockout state for one identity."""

    identity: str
    is_locked: bool
    failed_attempts: int
    locked_until: datetime | None
    lockout_reason: str | None

    @property
    def unlocks_at(self) -> datetime | None:
        """Return when the lock lifts, or None when not locked."""
        return self.locked_until if self.is_locked else None


class LockoutService:
    """Track failed authentication attempts and lock identities."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        max_failed_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        ledger: AuditLedger | None = None,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the service with thresholds and a clock."""
        self._session_factory = session_factory
        self._threshold = max_failed_attempts
        self._duration = lockout_duration
        self._ledger = ledger
        self._now = now_provider
        self._locks = KeyedLocks()

    def record_failed_attempt(self, identity: str) -> LockoutInfo:
        """Count one failed attempt, locking the identity at the threshold."""
        key = _normalize_identity(identity)

        def handler(session: Session, now: datetime) -> LockoutInfo:
            record = _lock_record(session, key)
            if record is None:
                record = LockoutRecord(
                    identity=key,
                    failed_attempts=1,
                    last_attempt_at=now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
            elif _lock_expired(record, now):
                record.failed_attempts = 1
                record.locked_until = None
                record.lockout_reason = None
            else:
                record.failed_attempts += 1
            record.last_attempt_at = now
            record.updated_at = now

            if record.failed_attempts >= self._threshold and not _is_active(record, now):
                record.locked_until = now + self._duration
                record.lockout_reason = LOCKOUT_REASON
                logger.warning(
                    "Locked %s after %s failed attempts until %s",
                    key,
                    record.failed_attempts,
                    record.locked_until.isoformat(),
                )
            session.flush()
            return _info(record, now)

        return self._run(key, handler)

    def is_locked(self, identity: str) -> bool:
        """Return True while the identity's lock is active."""
        return self.get_info(identity).is_locked

    def get_info(self, identity: str) -> LockoutInfo:
        """Return the identity's lockout state, clearing an expired lock."""
        key = _normalize_identity(identity)

        def handler(session: Session, now: datetime) -> LockoutInfo:
            record = _lock_record(session, key)
            if record is None:
                return LockoutInfo(key, False, 0, None, None)
            if _lock_expired(record, now):
                _reset(record, now)
                session.flush()
                logger.info("Lockout for %s expired", key)
            return _info(record, now)

        return self._run(key, handler)

    def ensure_not_locked(self, identity: str) -> None:
        """Raise LockoutError when the identity is currently locked."""
        info = self.get_info(identity)
        if info.is_locked and info.unlocks_at is not None:
            raise LockoutError(info.identity, info.unlocks_at)

    def clear_failed_attempts(self, identity: str) -> None:
        """Reset the counter after a successful authentication."""
        key = _normalize_identity(identity)

        def handler(session: Session, now: datetime) -> None:
            record = _lock_record(session, key)
            if record is not None:
                _reset(record, now)
                session.flush()

        self._run(key, handler)

    def unlock_account(
        self,
        identity: str,
        reason: str = DEFAULT_UNLOCK_REASON,
        *,
        actor_id: str | None = None,
    ) -> LockoutInfo:
        """Unconditionally clear the identity's lock and counter."""
        key = _normalize_identity(identity)

        def handler(session: Session, now: datetime) -> tuple[LockoutInfo, dict]:
            record = _lock_record(session, key)
            if record is None:
                return LockoutInfo(key, False, 0, None, None), {}
            previous = {
                "failed_attempts": record.failed_attempts,
                "locked_until": ensure_utc(record.locked_until),
            }
            _reset(record, now)
            session.flush()
            return _info(record, now), previous

        info, previous = self._run(key, handler)
        logger.info("Unlocked %s: %s", key, reason)
        if self._ledger is not None:
            self._ledger.record(
                actor_id,
                AuditAction.UPDATE,
                ResourceType.USER,
                key,
                details=LedgerDetails(
                    previous_value=previous or None,
                    new_value={"failed_attempts": 0, "locked_until": None},
                    reason=reason,
                ),
            )
        return info

    def _run(self, key: str, handler):
        """Serialize work on one identity; retry once if its row was created concurrently."""
        with self._locks.hold(key):
            for attempt in (1, 2):
                try:
                    with session_scope(self._session_factory) as session:
                        return handler(session, self._now())
                except sa_exc.IntegrityError:
                    if attempt == 2:
                        raise
                    logger.info("Lockout record for %s created concurrently; retrying", key)


def _normalize_identity(identity: str) -> str:
    key = (identity or "").strip()
    if not key:
        raise ValidationError("Lockout identity must be non-empty.")
    return key


def _lock_record(session: Session, key: str) -> LockoutRecord | None:
    return session.scalars(
        select(LockoutRecord).where(LockoutRecord.identity == key).with_for_update()
    ).first()


def _is_active(record: LockoutRecord, now: datetime) -> bool:
    locked_until = ensure_utc(record.locked_until)
    return locked_until is not None and now < locked_until


def _lock_expired(record: LockoutRecord, now: datetime) -> bool:
    locked_until = ensure_utc(record.locked_until)
    return locked_until is not None and now >= locked_until


def _reset(record: LockoutRecord, now: datetime) -> None:
    record.failed_attempts = 0
    record.locked_until = None
    record.lockout_reason = None
    record.updated_at = now


def _info(record: LockoutRecord, now: datetime) -> LockoutInfo:
    active = _is_active(record, now)
    return LockoutInfo(
        identity=record.identity,
        is_locked=active,
        failed_attempts=record.failed_attempts,
        locked_until=ensure_utc(record.locked_until) if active else None,
        lockout_reason=record.lockout_reason if active else None,
    )
