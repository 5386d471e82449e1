"""Unit tests for the archive content service."""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from archive.files import FileMetadataUpdate, SearchQuery
from archive.records import PreservationEventType
from errors import ConflictError, NotFoundError, StorageIOError, ValidationError
from ledger.service import AuditAction, ClientContext
from models import ArchivedFile, DescriptiveMetadata, FileVersion, PreservationMetadata
from services.database import session_scope
from services.hashing import digest_bytes


def _register(service, write_blob, name, content, mime="text/plain", owner="curator-1", **hints):
    path = write_blob(name, content)
    return service.register_file(path, digest_bytes(content), mime, owner, hints or None)


def test_register_file_writes_row_version_metadata_and_ledger(
    archive_service, write_blob, ledger, metadata_service
) -> None:
    """Registration creates every record in one unit."""
    view = _register(
        archive_service, write_blob, "scan.png", b"\x89PNG data", mime="image/png",
        description="Map of the old town",
    )

    assert view.current_version == 1
    assert view.category == "image"
    assert view.file_size == len(b"\x89PNG data")
    assert view.access_level == "public"

    versions = archive_service.get_versions(view.id)
    assert [v.version_number for v in versions] == [1]
    assert versions[0].file_hash == view.file_hash

    item = metadata_service.get_with_metadata(view.id)
    assert item.descriptive.type == "image"
    assert item.preservation.message_digest == view.file_hash

    entries = ledger.query_by_resource(str(view.id)).entries
    assert [entry.action for entry in entries] == [AuditAction.CREATE]
    assert entries[0].actor_id == "curator-1"
    assert entries[0].new_value["file_hash"] == view.file_hash


def test_register_duplicate_digest_conflicts(archive_service, write_blob, ledger) -> None:
    """The same content cannot be registered twice."""
    _register(archive_service, write_blob, "a.txt", b"same")

    with pytest.raises(ConflictError):
        _register(archive_service, write_blob, "b.txt", b"same")

    assert len(ledger.query_recent(10)) == 1


def test_register_validates_inputs(archive_service, write_blob, storage_dir) -> None:
    """Unreadable paths, bad digests and bad access levels are rejected."""
    path = write_blob("c.txt", b"content")

    with pytest.raises(StorageIOError):
        archive_service.register_file(storage_dir / "missing.txt", "ab", "text/plain", None)
    with pytest.raises(ValidationError):
        archive_service.register_file(path, "not-a-digest", "text/plain", None)
    with pytest.raises(ValidationError):
        archive_service.register_file(
            path, digest_bytes(b"content"), "text/plain", None, {"access_level": "secret"}
        )


def test_create_version_increments_and_records_history(
    archive_service, write_blob, metadata_service, ledger
) -> None:
    """A new version updates the file, history, preservation digest and ledger."""
    original = _register(archive_service, write_blob, "doc.txt", b"v1")
    new_path = write_blob("doc-v2.txt", b"version two")

    version = archive_service.create_version(
        original.id, new_path, digest_bytes(b"version two"), "editor-1", "Typo fixes",
        client=ClientContext(ip_address="192.0.2.4"),
    )

    assert version.version_number == 2
    assert version.change_details == {
        "previous_hash": original.file_hash,
        "previous_size": 2,
        "size_delta": len(b"version two") - 2,
    }
    history = archive_service.get_versions(original.id)
    assert [v.version_number for v in history] == [2, 1]
    assert history[1].file_hash == original.file_hash

    item = archive_service.get_file(original.id)
    assert item.file.current_version == 2
    assert item.file.file_hash == digest_bytes(b"version two")
    assert item.preservation.message_digest == digest_bytes(b"version two")
    modification = item.preservation.events[-1]
    assert modification.event_type is PreservationEventType.MODIFICATION
    assert modification.detail == "Version 2 created: Typo fixes"

    update = ledger.query_by_resource(str(original.id), action=AuditAction.UPDATE).entries[0]
    assert update.previous_value == {"version": 1, "file_hash": original.file_hash}
    assert update.ip_address == "192.0.2.4"


def test_create_version_rejects_identical_and_foreign_content(archive_service, write_blob) -> None:
    """Versions must carry new content not owned by another file."""
    first = _register(archive_service, write_blob, "one.txt", b"one")
    _register(archive_service, write_blob, "two.txt", b"two")

    with pytest.raises(ConflictError):
        archive_service.create_version(
            first.id, write_blob("one-again.txt", b"one"), digest_bytes(b"one"), "editor"
        )
    with pytest.raises(ConflictError):
        archive_service.create_version(
            first.id, write_blob("two-again.txt", b"two"), digest_bytes(b"two"), "editor"
        )


def test_create_version_for_unknown_file_raises(archive_service, write_blob) -> None:
    """Versioning an unknown file is NotFound."""
    path = write_blob("x.txt", b"x")

    with pytest.raises(NotFoundError):
        archive_service.create_version(uuid.uuid4(), path, digest_bytes(b"x"), "editor")


def test_concurrent_versions_are_sequential(archive_service, write_blob) -> None:
    """Concurrent callers receive distinct, gap-free version numbers."""
    original = _register(archive_service, write_blob, "shared.txt", b"base")
    payloads = [f"revision {index}".encode() for index in range(6)]
    paths = [write_blob(f"rev-{index}.txt", payload) for index, payload in enumerate(payloads)]

    def submit(index: int) -> int:
        return archive_service.create_version(
            original.id, paths[index], digest_bytes(payloads[index]), f"editor-{index}"
        ).version_number

    with ThreadPoolExecutor(max_workers=3) as pool:
        numbers = list(pool.map(submit, range(len(payloads))))

    assert sorted(numbers) == list(range(2, 2 + len(payloads)))
    history = archive_service.get_versions(original.id)
    assert [v.version_number for v in history] == list(range(1 + len(payloads), 0, -1))


def test_get_file_records_read_for_known_actor(archive_service, write_blob, ledger) -> None:
    """Reads by an identified actor are logged; anonymous reads are not."""
    view = _register(archive_service, write_blob, "read.txt", b"read me")

    archive_service.get_file(view.id)
    archive_service.get_file(view.id, "reader-7")

    reads = ledger.query_by_resource(str(view.id), action=AuditAction.READ).entries
    assert [entry.actor_id for entry in reads] == ["reader-7"]
    assert archive_service.get_file(uuid.uuid4(), "reader-7") is None


def test_update_file_metadata_is_partial(archive_service, write_blob, ledger) -> None:
    """Catalog updates change only supplied fields and are logged."""
    view = _register(
        archive_service, write_blob, "notes.txt", b"notes", creator="Anna Nowak",
    )

    item = archive_service.update_file_metadata(
        view.id, FileMetadataUpdate(description="Field notes", access_level="internal"), "ed"
    )

    assert item.file.description == "Field notes"
    assert item.file.access_level == "internal"
    assert item.descriptive.description == "Field notes"
    assert item.descriptive.creator == "Anna Nowak"
    entry = ledger.query_by_resource(str(view.id), action=AuditAction.UPDATE).entries[0]
    assert entry.previous_value["access_level"] == "public"
    assert entry.new_value == {"description": "Field notes", "access_level": "internal"}


def test_update_file_metadata_rejects_bad_input(archive_service, write_blob) -> None:
    """Unknown fields and access levels are validation errors."""
    view = _register(archive_service, write_blob, "bad.txt", b"bad")

    with pytest.raises(ValidationError):
        archive_service.update_file_metadata(view.id, {"access_level": "top-secret"}, "ed")
    with pytest.raises(ValidationError):
        archive_service.update_file_metadata(view.id, {"colour": "red"}, "ed")


def test_search_ranks_by_relevance(archive_service, write_blob, clock) -> None:
    """Filename matches outrank description-only matches."""
    by_name = _register(archive_service, write_blob, "warsaw-map.png", b"1", mime="image/png")
    clock.advance(minutes=1)
    by_desc = _register(
        archive_service, write_blob, "scan-001.png", b"2", mime="image/png",
        description="Old map of Krakow",
    )
    clock.advance(minutes=1)
    _register(archive_service, write_blob, "letter.txt", b"3")

    result = archive_service.search_files(SearchQuery(q="map"))

    assert result.total == 2
    assert [hit.file.id for hit in result.files] == [by_name.id, by_desc.id]
    assert result.files[0].relevance > result.files[1].relevance
    assert result.elapsed_ms >= 0


def test_search_requires_every_term(archive_service, write_blob) -> None:
    """Multi-term queries match only files containing all terms."""
    in_name = _register(archive_service, write_blob, "city-map.png", b"1", mime="image/png")
    split = _register(
        archive_service, write_blob, "city-plan.png", b"2", mime="image/png",
        description="Street map",
    )
    _register(archive_service, write_blob, "map-only.png", b"3", mime="image/png")

    result = archive_service.search_files({"q": "city map"})

    assert {hit.file.id for hit in result.files} == {in_name.id, split.id}


def test_search_filters_and_defaults(archive_service, write_blob, clock) -> None:
    """Filters combine with the default public access level."""
    public_doc = _register(archive_service, write_blob, "a.txt", b"a", creator="Jan Kowalski")
    clock.advance(minutes=10)
    _register(
        archive_service, write_blob, "b.txt", b"b", creator="Jan Kowalski",
        access_level="restricted",
    )
    _register(archive_service, write_blob, "c.png", b"c", mime="image/png")

    by_creator = archive_service.search_files({"creator": "kowalski"})
    restricted = archive_service.search_files({"creator": "kowalski", "access_level": "restricted"})
    documents = archive_service.search_files({"category": "document"})
    early = archive_service.search_files(
        {"date_to": clock.now() - timedelta(minutes=5), "access_level": None}
    )

    assert [hit.file.id for hit in by_creator.files] == [public_doc.id]
    assert restricted.total == 1
    assert documents.total == 1
    assert [hit.file.id for hit in early.files] == [public_doc.id]


def test_search_unknown_sort_falls_back(archive_service, write_blob, clock) -> None:
    """Unknown sort keys behave like relevance, descending."""
    first = _register(archive_service, write_blob, "alpha.txt", b"1")
    clock.advance(minutes=1)
    second = _register(archive_service, write_blob, "beta.txt", b"2")

    query = SearchQuery(order_by="popularity", order_dir="sideways")
    by_title = archive_service.search_files({"order_by": "title", "order_dir": "asc"})

    assert query.order_by == "relevance"
    assert query.order_dir == "desc"
    assert [hit.file.id for hit in archive_service.search_files(query).files] == [
        second.id,
        first.id,
    ]
    assert [hit.file.id for hit in by_title.files] == [first.id, second.id]


def test_delete_and_restore_are_reversible(archive_service, write_blob, ledger) -> None:
    """Soft delete hides a file and restore brings back its prior state."""
    view = _register(archive_service, write_blob, "keep.txt", b"keep")

    deleted = archive_service.delete_file(view.id, "admin")
    assert deleted.is_deleted is True
    assert deleted.is_accessible is False
    assert archive_service.search_files({"q": "keep"}).total == 0
    assert archive_service.get_file_statistics().total_files == 0

    restored = archive_service.restore_file(view.id, "admin")
    assert restored.is_deleted is False
    assert restored.is_accessible is True
    assert restored.deleted_at is None
    assert archive_service.search_files({"q": "keep"}).total == 1

    actions = [entry.action for entry in ledger.query_by_resource(str(view.id)).entries]
    assert actions == [AuditAction.UPDATE, AuditAction.DELETE, AuditAction.CREATE]
    delete_entry = ledger.query_by_resource(str(view.id), action=AuditAction.DELETE).entries[0]
    assert delete_entry.reason == "File moved to archive"


def test_delete_twice_and_restore_live_conflict(archive_service, write_blob) -> None:
    """Deleting a deleted file or restoring a live one is a conflict."""
    view = _register(archive_service, write_blob, "once.txt", b"once")

    with pytest.raises(ConflictError):
        archive_service.restore_file(view.id)
    archive_service.delete_file(view.id, "admin")
    with pytest.raises(ConflictError):
        archive_service.delete_file(view.id, "admin")


def test_recent_and_access_level_listings(archive_service, write_blob, clock) -> None:
    """Listings are newest first and skip deleted files."""
    old = _register(archive_service, write_blob, "old.txt", b"old")
    clock.advance(minutes=1)
    new = _register(archive_service, write_blob, "new.txt", b"new", access_level="internal")
    clock.advance(minutes=1)
    gone = _register(archive_service, write_blob, "gone.txt", b"gone")
    archive_service.delete_file(gone.id, "admin")

    assert [v.id for v in archive_service.get_recent_files(10)] == [new.id, old.id]
    assert [v.id for v in archive_service.get_files_by_access_level("internal")] == [new.id]
    with pytest.raises(ValidationError):
        archive_service.get_files_by_access_level("secret")


def test_statistics_cover_live_files(archive_service, write_blob) -> None:
    """Statistics aggregate size, categories and contributors."""
    _register(archive_service, write_blob, "a.txt", b"aaaa", owner="u1", rating=4.0)
    _register(archive_service, write_blob, "b.png", b"bb", mime="image/png", owner="u2", rating=2.0)
    gone = _register(archive_service, write_blob, "c.txt", b"cccccc", owner="u3")
    archive_service.delete_file(gone.id, "admin")

    stats = archive_service.get_file_statistics()

    assert stats.total_files == 2
    assert stats.categories == 2
    assert stats.total_size == 6
    assert stats.avg_rating == pytest.approx(3.0)
    assert stats.contributors == 2


def _row_counts(session_factory) -> dict[str, int]:
    with session_scope(session_factory) as session:
        return {
            model.__tablename__: session.scalar(select(func.count()).select_from(model))
            for model in (ArchivedFile, FileVersion, DescriptiveMetadata, PreservationMetadata)
        }


def test_register_file_rolls_back_when_ledger_write_fails(
    archive_service, write_blob, ledger, sqlite_session_factory, monkeypatch
) -> None:
    """A failed audit write leaves no partial file, version or metadata rows."""
    path = write_blob("orphan.txt", b"orphan")

    def failing_append(*_args, **_kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(ledger, "append", failing_append)

    with pytest.raises(RuntimeError):
        archive_service.register_file(path, digest_bytes(b"orphan"), "text/plain", "curator")

    assert _row_counts(sqlite_session_factory) == {
        "files": 0,
        "file_versions": 0,
        "metadata_descriptive": 0,
        "metadata_preservation": 0,
    }


def test_create_version_rolls_back_when_event_write_fails(
    archive_service, write_blob, metadata_service, ledger, monkeypatch
) -> None:
    """A failed preservation event leaves the current version untouched."""
    original = _register(archive_service, write_blob, "stable.txt", b"stable")
    events_before = metadata_service.get_preservation(original.id).events

    def failing_event(*_args, **_kwargs):
        raise RuntimeError("event store unavailable")

    monkeypatch.setattr(metadata_service, "record_event", failing_event)

    with pytest.raises(RuntimeError):
        archive_service.create_version(
            original.id, write_blob("stable-v2.txt", b"changed"), digest_bytes(b"changed"), "editor"
        )

    item = archive_service.get_file(original.id)
    assert item.file.current_version == 1
    assert item.file.file_hash == original.file_hash
    assert item.preservation.message_digest == original.file_hash
    assert item.preservation.events == events_before
    assert [v.version_number for v in archive_service.get_versions(original.id)] == [1]
    assert ledger.query_by_resource(str(original.id), action=AuditAction.UPDATE).entries == []


def test_create_version_retries_after_stale_metadata(
    archive_service, write_blob, metadata_service, monkeypatch, caplog
) -> None:
    """A stale preservation row rolls back the attempt and the next one succeeds."""
    caplog.set_level(logging.INFO, logger="archive.files")
    original = _register(archive_service, write_blob, "busy.txt", b"busy")
    real_update_digest = metadata_service.update_digest
    attempts = []

    def stale_once(*args, **kwargs):
        attempts.append(args)
        if len(attempts) == 1:
            raise StaleDataError("metadata_preservation row changed concurrently")
        return real_update_digest(*args, **kwargs)

    monkeypatch.setattr(metadata_service, "update_digest", stale_once)

    version = archive_service.create_version(
        original.id, write_blob("busy-v2.txt", b"busier"), digest_bytes(b"busier"), "editor"
    )

    assert len(attempts) == 2
    assert version.version_number == 2
    assert [v.version_number for v in archive_service.get_versions(original.id)] == [2, 1]
    events = metadata_service.get_preservation(original.id).events
    modifications = [e for e in events if e.event_type is PreservationEventType.MODIFICATION]
    assert [e.detail for e in modifications] == ["Version 2 created: No description"]
    assert "collided (attempt 1/" in caplog.text
