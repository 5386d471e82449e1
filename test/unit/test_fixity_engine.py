"""Unit tests for fixity verification."""

from __future__ import annotations

import uuid

import pytest

from fixity import engine as fixity_engine
from fixity.engine import FixityEngine
from ledger.service import AuditAction, LedgerSearchCriteria
from archive.records import PreservationEventType
from services.hashing import digest_bytes


@pytest.fixture
def fixity(sqlite_session_factory, ledger, metadata_service) -> FixityEngine:
    """Provide a single-worker fixity engine."""
    return FixityEngine(sqlite_session_factory, ledger, metadata_service, max_workers=1)


def _register(archive_service, write_blob, name: str, content: bytes):
    path = write_blob(name, content)
    return archive_service.register_file(path, digest_bytes(content), "text/plain", "curator")


def test_stored_digest_mismatch_is_reported_invalid(
    fixity, archive_service, write_blob, monkeypatch
) -> None:
    """A file registered as abc123 that later hashes to def456 becomes invalid."""
    path = write_blob("record.txt", b"original")
    view = archive_service.register_file(path, "abc123", "text/plain", "curator")
    monkeypatch.setattr(fixity_engine, "digest_stream", lambda *_args: "abc123")

    first = fixity.verify_file(view.id)
    assert first.is_valid is True
    assert fixity.get_fixity_report(view.id).status == "valid"

    monkeypatch.setattr(fixity_engine, "digest_stream", lambda *_args: "def456")
    second = fixity.verify_file(view.id)

    assert second.is_valid is False
    assert second.error == "mismatch"
    assert second.stored_digest == "abc123"
    assert second.current_digest == "def456"
    report = fixity.get_fixity_report(view.id)
    assert report.status == "invalid"
    assert [check.is_valid for check in report.checks] == [False, True]


def test_modified_content_fails_verification(
    fixity, archive_service, write_blob, ledger, metadata_service, caplog
) -> None:
    """Rewriting content on disk is detected and logged to the ledger."""
    view = _register(archive_service, write_blob, "doc.txt", b"trusted bytes")
    write_blob("doc.txt", b"tampered bytes")

    result = fixity.verify_file(view.id)

    assert result.is_valid is False
    assert result.current_digest == digest_bytes(b"tampered bytes")
    entry = ledger.query_by_resource(str(view.id), action=AuditAction.VALIDATE).entries[0]
    assert entry.actor_id is None
    assert entry.success is False
    assert entry.error_message == (
        f"Fixity check failed - stored: {view.file_hash}, current: {result.current_digest}"
    )
    assert entry.previous_value == {"file_hash": view.file_hash}
    events = metadata_service.get_preservation(view.id).events
    assert events[-1].event_type is PreservationEventType.VALIDATION
    assert "FAILED" in events[-1].detail
    assert "Fixity mismatch" in caplog.text


def test_missing_file_is_reported_not_raised(
    fixity, archive_service, write_blob, ledger
) -> None:
    """Content missing from disk yields error=missing."""
    view = _register(archive_service, write_blob, "lost.txt", b"lost")
    write_blob("lost.txt", b"").unlink()

    result = fixity.verify_file(view.id)

    assert result.is_valid is False
    assert result.error == "missing"
    entry = ledger.query_by_resource(str(view.id), action=AuditAction.VALIDATE).entries[0]
    assert entry.success is False
    assert entry.error_message.startswith("File does not exist on disk")


def test_unknown_file_is_not_found(fixity) -> None:
    """Unknown ids produce a not_found result and an unknown report."""
    file_id = uuid.uuid4()

    assert fixity.verify_file(file_id).error == "not_found"
    report = fixity.get_fixity_report(file_id)
    assert report.status == "unknown"
    assert report.checks == []


def test_report_without_checks_is_valid(fixity, archive_service, write_blob) -> None:
    """A file that was never checked reports valid with no history."""
    view = _register(archive_service, write_blob, "fresh.txt", b"fresh")

    report = fixity.get_fixity_report(view.id)

    assert report.status == "valid"
    assert report.last_checked is None


def test_verify_all_collects_failures_without_aborting(
    fixity, archive_service, write_blob, ledger
) -> None:
    """A batch reports every failure and still verifies the rest."""
    good = _register(archive_service, write_blob, "good.txt", b"good")
    bad = _register(archive_service, write_blob, "bad.txt", b"bad")
    gone = _register(archive_service, write_blob, "gone.txt", b"gone")
    hidden = _register(archive_service, write_blob, "hidden.txt", b"hidden")
    write_blob("bad.txt", b"corrupted")
    write_blob("gone.txt", b"").unlink()
    archive_service.delete_file(hidden.id, "admin")

    report = fixity.verify_all(limit=10)

    assert report.total == 3
    assert report.verified == 1
    assert report.failed == 2
    assert {(failure.file_id, failure.error) for failure in report.errors} == {
        (str(bad.id), "mismatch"),
        (str(gone.id), "missing"),
    }
    validations = ledger.search(LedgerSearchCriteria(action=AuditAction.VALIDATE))
    assert validations.total == 3
    assert str(good.id) in {entry.resource_id for entry in validations.entries}


def test_verify_all_respects_limit_and_pool(
    sqlite_session_factory, ledger, metadata_service, archive_service, write_blob
) -> None:
    """The batch size caps how many files a parallel run checks."""
    for index in range(5):
        _register(archive_service, write_blob, f"f{index}.txt", f"content {index}".encode())
    engine = FixityEngine(sqlite_session_factory, ledger, metadata_service, max_workers=3)

    report = engine.verify_all(limit=4)

    assert report.total == 4
    assert report.failed == 0


def test_verify_all_on_empty_archive(fixity) -> None:
    """An empty archive produces an empty report."""
    report = fixity.verify_all()

    assert (report.total, report.verified, report.failed) == (0, 0, 0)


def test_version_committed_during_hashing_is_not_flagged(
    sqlite_session_factory, ledger, metadata_service, archive_service, write_blob, monkeypatch
) -> None:
    """A new version landing mid-check is re-hashed instead of reported as tampering."""
    view = _register(archive_service, write_blob, "draft.txt", b"version one")
    engine = FixityEngine(
        sqlite_session_factory,
        ledger,
        metadata_service,
        max_workers=1,
        file_locks=archive_service.file_locks,
    )
    real_digest = fixity_engine.digest_stream
    calls = []

    def digest_while_versioning(path, chunk_size):
        calls.append(path)
        digest = real_digest(path, chunk_size)
        if len(calls) == 1:
            new_path = write_blob("draft.txt", b"version two")
            archive_service.create_version(
                view.id, new_path, digest_bytes(b"version two"), "curator", "Second draft"
            )
        return digest

    monkeypatch.setattr(fixity_engine, "digest_stream", digest_while_versioning)

    result = engine.verify_file(view.id)

    assert len(calls) == 2
    assert result.is_valid is True
    assert result.stored_digest == digest_bytes(b"version two")
    assert engine.get_fixity_report(view.id).status == "valid"
    entry = ledger.query_by_resource(str(view.id), action=AuditAction.VALIDATE).entries[0]
    assert entry.success is True
    assert entry.previous_value == {"file_hash": digest_bytes(b"version two")}
    events = metadata_service.get_preservation(view.id).events
    assert events[-1].event_type is PreservationEventType.VALIDATION
    assert "passed" in events[-1].detail
