"""Integration tests for the fully wired archive runtime."""

from __future__ import annotations

import pytest

from config import Settings
from errors import AuthenticationError, ConfigurationError, LockoutError
from ledger.service import AuditAction
from runtime import build_runtime
from services.hashing import digest_bytes

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture
def runtime_settings(tmp_path) -> Settings:
    """Settings pointing every directory at a temp location."""
    storage = tmp_path / "storage"
    storage.mkdir()
    return Settings(
        database={"url": f"sqlite:///{tmp_path / 'archive.db'}", "schema_version": 3},
        storage={"root_dir": str(storage)},
        encryption={"key": TEST_KEY},
        backup={"directory": str(tmp_path / "backups"), "keep": 2},
        fixity={"max_workers": 1},
        scheduler={"enabled": False},
        user={"timezone": "UTC"},
    )


def test_build_runtime_requires_encryption_key(runtime_settings) -> None:
    """Startup fails fast without a usable key."""
    broken = Settings(**{**runtime_settings.model_dump(), "encryption": {"key": "change-me"}})

    with pytest.raises(ConfigurationError):
        build_runtime(broken)


def test_archive_lifecycle_through_runtime(runtime_settings, sqlite_session_factory) -> None:
    """Register, version, verify, tamper, search and delete through one runtime."""
    runtime = build_runtime(runtime_settings, session_factory=sqlite_session_factory)
    storage = runtime_settings.storage.root_dir
    first = f"{storage}/charter.txt"
    with open(first, "wb") as handle:
        handle.write(b"Town charter, 1257")

    view = runtime.archive.register_file(
        first, digest_bytes(b"Town charter, 1257"), "text/plain", "curator-1",
        {"title": "Town charter", "creator": "City council"},
    )
    second = f"{storage}/charter-v2.txt"
    with open(second, "wb") as handle:
        handle.write(b"Town charter, 1257 (transcribed)")
    runtime.archive.create_version(
        view.id, second, digest_bytes(b"Town charter, 1257 (transcribed)"), "curator-1"
    )

    assert runtime.fixity.verify_file(view.id).is_valid is True
    with open(second, "ab") as handle:
        handle.write(b" altered")
    assert runtime.fixity.verify_file(view.id).is_valid is False
    assert runtime.fixity.get_fixity_report(view.id).status == "invalid"

    hits = runtime.archive.search_files({"q": "charter"})
    assert [hit.file.id for hit in hits.files] == [view.id]
    assert hits.files[0].file.current_version == 2

    runtime.archive.delete_file(view.id, "admin-1", "Superseded")
    actions = [
        entry.action for entry in runtime.ledger.query_by_resource(str(view.id)).entries
    ]
    assert actions[0] is AuditAction.DELETE
    assert actions.count(AuditAction.VALIDATE) == 2
    assert actions[-1] is AuditAction.CREATE


def test_authentication_through_runtime(runtime_settings, sqlite_session_factory) -> None:
    """Accounts use encrypted contacts and lock after repeated failures."""
    runtime = build_runtime(runtime_settings, session_factory=sqlite_session_factory)
    runtime.accounts.register("alice", "correct horse", "alice@example.com")

    assert runtime.accounts.encrypted_contacts is True
    assert runtime.accounts.find_by_email("alice@example.com").username == "alice"

    for _ in range(4):
        with pytest.raises(AuthenticationError):
            runtime.authenticator.authenticate("alice", "wrong", client_id="c1")
    with pytest.raises(LockoutError):
        runtime.authenticator.authenticate("alice", "wrong", client_id="c1")


def test_runtime_start_and_stop(runtime_settings, sqlite_session_factory) -> None:
    """Background services start and stop cleanly."""
    enabled = Settings(**{**runtime_settings.model_dump(), "scheduler": {"enabled": True}})
    runtime = build_runtime(enabled, session_factory=sqlite_session_factory)

    runtime.start()
    try:
        assert runtime.scheduler.is_running is True
        assert set(runtime.scheduler.next_run_times()) == {"fixity", "backup", "monitoring"}
    finally:
        runtime.stop()

    assert runtime.scheduler.is_running is False
    assert runtime.backup.backup_dir.is_dir()
