"""Fixity verification: recompute content digests and compare with stored ones."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from archive.metadata import MetadataService
from archive.records import parse_file_id
from errors import StorageIOError
from ledger.service import AuditAction, AuditLedger, LedgerDetails, ResourceType
from models import ArchivedFile
from services.database import SessionFactory, session_scope
from services.hashing import DEFAULT_CHUNK_BYTES, digest_stream
from services.locks import KeyedLocks

logger = logging.getLogger(__name__)

ERROR_NOT_FOUND = "not_found"
ERROR_MISSING = "missing"
ERROR_MISMATCH = "mismatch"

STATUS_VALID = "valid"
STATUS_INVALID = "invalid"
STATUS_UNKNOWN = "unknown"


@dataclass(frozen=True)
class FixityResult:
    """Outcome of verifying one file."""

    file_id: str
    is_valid: bool
    error: str | None = None
    stored_digest: str | None = None
    current_digest: str | None = None


@dataclass(frozen=True)
class FixityFailure:
    """One failed verification inside a batch."""

    file_id: str
    error: str


@dataclass(frozen=True)
class FixityBatchReport:
    """Summary of a batch verification run."""

    total: int
    verified: int
    failed: int
    errors: list[FixityFailure] = field(default_factory=list)


@dataclass(frozen=True)
class FixityCheck:
    """One historical verification drawn from the ledger."""

    timestamp: datetime
    is_valid: bool
    stored_digest: str | None
    current_digest: str | None
    error: str | None


@dataclass(frozen=True)
class FixityReport:
    """Verification history and current status of one file."""

    file_id: str
    status: str
    last_checked: datetime | None
    checks: list[FixityCheck]


@dataclass(frozen=True)
class _FixityTarget:
    file_id: UUID
    file_path: str
    file_hash: str


class FixityEngine:
    """Detect silent corruption or tampering of archived content."""

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: AuditLedger,
        metadata: MetadataService,
        *,
        max_workers: int = 4,
        report_history: int = 20,
        chunk_size: int = DEFAULT_CHUNK_BYTES,
        file_locks: KeyedLocks | None = None,
    ) -> None:
        """Initialize the engine with its collaborators and pool size.

        Share ``file_locks`` with the content service so a check never
        interleaves with a version commit for the same file.
        """
        self._session_factory = session_factory
        self._ledger = ledger
        self._metadata = metadata
        self._max_workers = max_workers
        self._report_history = report_history
        self._chunk_size = chunk_size
        self._file_locks = file_locks if file_locks is not None else KeyedLocks()

    def verify_file(self, file_id: UUID | str) -> FixityResult:
        """Recompute one file's digest and compare it with the stored value.

        Unknown ids and unreadable content are reported in the result, never
        raised.
        """
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            row = session.get(ArchivedFile, file_key)
            target = (
                _FixityTarget(row.id, row.file_path, row.file_hash) if row is not None else None
            )
        if target is None:
            return FixityResult(file_id=str(file_key), is_valid=False, error=ERROR_NOT_FOUND)
        return self._verify_target(target)

    def verify_all(self, limit: int = 100) -> FixityBatchReport:
        """Verify up to ``limit`` accessible files, most recently updated first.

        Individual failures are collected; the batch always runs to completion.
        """
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(ArchivedFile.id, ArchivedFile.file_path, ArchivedFile.file_hash)
                .where(ArchivedFile.is_accessible.is_(True))
                .order_by(ArchivedFile.updated_at.desc())
                .limit(limit)
            ).all()
        targets = [_FixityTarget(*row) for row in rows]
        if not targets:
            return FixityBatchReport(total=0, verified=0, failed=0)

        workers = max(1, min(self._max_workers, len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fixity") as pool:
            results = list(pool.map(self._verify_guarded, targets))

        failures = [
            FixityFailure(file_id=result.file_id, error=result.error or ERROR_MISMATCH)
            for result in results
            if not result.is_valid
        ]
        report = FixityBatchReport(
            total=len(results),
            verified=len(results) - len(failures),
            failed=len(failures),
            errors=failures,
        )
        logger.info(
            "Fixity batch complete: total=%s verified=%s failed=%s",
            report.total,
            report.verified,
            report.failed,
        )
        return report

    def get_fixity_report(self, file_id: UUID | str) -> FixityReport:
        """Summarize recent verification history for one file."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            exists = session.get(ArchivedFile, file_key) is not None
        if not exists:
            return FixityReport(
                file_id=str(file_key), status=STATUS_UNKNOWN, last_checked=None, checks=[]
            )

        page = self._ledger.query_by_resource(
            str(file_key), limit=self._report_history, action=AuditAction.VALIDATE
        )
        checks = [
            FixityCheck(
                timestamp=entry.created_at,
                is_valid=entry.success,
                stored_digest=_digest_from(entry.previous_value),
                current_digest=_digest_from(entry.new_value),
                error=entry.error_message,
            )
            for entry in page.entries
        ]
        status = STATUS_INVALID if checks and not checks[0].is_valid else STATUS_VALID
        return FixityReport(
            file_id=str(file_key),
            status=status,
            last_checked=checks[0].timestamp if checks else None,
            checks=checks,
        )

    def _verify_guarded(self, target: _FixityTarget) -> FixityResult:
        try:
            return self._verify_target(target)
        except Exception as exc:
            logger.exception("Fixity verification crashed for file %s", target.file_id)
            return FixityResult(file_id=str(target.file_id), is_valid=False, error=str(exc))

    def _verify_target(self, target: _FixityTarget) -> FixityResult:
        """Hash outside any lock, then confirm and record under the file lock.

        The stored digest is re-read under the lock. If a new version landed
        while hashing, the current content is hashed again before comparing,
        so the ledger entry and the validation event describe the same check.
        """
        current = self._digest_or_none(target.file_path)
        result: FixityResult | None = None
        try:
            with self._file_locks.hold(target.file_id):
                with session_scope(self._session_factory) as session:
                    row = session.scalars(
                        select(ArchivedFile)
                        .where(ArchivedFile.id == target.file_id)
                        .with_for_update()
                    ).first()
                    if row is None:
                        return FixityResult(
                            file_id=str(target.file_id), is_valid=False, error=ERROR_NOT_FOUND
                        )
                    if (row.file_path, row.file_hash) != (target.file_path, target.file_hash):
                        logger.info(
                            "File %s changed during fixity check; re-hashing", target.file_id
                        )
                        current = self._digest_or_none(row.file_path)
                    result = _outcome(str(row.id), row.file_hash, current)
                    self._record_check(session, row, result)
        except Exception:
            if result is None:
                raise
            logger.exception("Failed to record fixity outcome for file %s", target.file_id)

        if result.error == ERROR_MISSING:
            logger.warning("Fixity check could not read file %s", result.file_id)
        elif not result.is_valid:
            logger.warning(
                "Fixity mismatch for file %s: stored=%s current=%s",
                result.file_id,
                result.stored_digest,
                result.current_digest,
            )
        return result

    def _digest_or_none(self, path: str) -> str | None:
        try:
            return digest_stream(path, self._chunk_size)
        except StorageIOError:
            return None

    def _record_check(self, session: Session, row: ArchivedFile, result: FixityResult) -> None:
        """Write the VALIDATE entry and the validation event in one transaction."""
        if result.error == ERROR_MISSING:
            message = f"File does not exist on disk: {row.file_path}"
        elif not result.is_valid:
            message = (
                f"Fixity check failed - stored: {result.stored_digest}, "
                f"current: {result.current_digest}"
            )
        else:
            message = None
        self._ledger.append(
            None,
            AuditAction.VALIDATE,
            ResourceType.FILE,
            result.file_id,
            details=LedgerDetails(
                previous_value={"file_hash": result.stored_digest},
                new_value={"file_hash": result.current_digest},
                reason="Fixity verification",
                success=result.is_valid,
                error_message=message,
            ),
            session=session,
        )
        if result.current_digest is not None:
            self._metadata.validate_fixity(row.id, result.current_digest, session=session)


def _outcome(file_id: str, stored: str, current: str | None) -> FixityResult:
    if current is None:
        return FixityResult(
            file_id=file_id, is_valid=False, error=ERROR_MISSING, stored_digest=stored
        )
    is_valid = current.lower() == stored.lower()
    return FixityResult(
        file_id=file_id,
        is_valid=is_valid,
        error=None if is_valid else ERROR_MISMATCH,
        stored_digest=stored,
        current_digest=current,
    )


def _digest_from(value: object) -> str | None:
    if isinstance(value, dict):
        digest = value.get("file_hash")
        return str(digest) if digest is not None else None
    return None
