"""Pytest configuration for the archive core test suite."""

import os
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator

import pytest

TEST_ENCRYPTION_KEY = "6f1c2b9a8e7d4c3b2a19087f6e5d4c3b2a1908f7e6d5c4b3a29180f7e6d5c4b3"


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("ARCHIVE_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    os.environ.setdefault("ARCHIVE_DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("ARCHIVE_SCHEDULER_ENABLED", "false")
    os.environ.setdefault("ARCHIVE_TIMEZONE", "UTC")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from argon2 import PasswordHasher  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from archive.files import ArchiveContentService  # noqa: E402
from archive.metadata import MetadataService  # noqa: E402
from ledger.service import AuditLedger  # noqa: E402
from models import Base  # noqa: E402
from services.encryption import EncryptionService  # noqa: E402


@dataclass
class DeterministicClock:
    """Deterministic clock for tests with manual time control."""

    current: datetime

    def __post_init__(self) -> None:
        """Normalize the initial time to a timezone-aware value."""
        if self.current.tzinfo is None:
            self.current = self.current.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        """Return the current clock time."""
        return self.current

    def advance(self, *, seconds: int = 0, minutes: int = 0, hours: int = 0) -> datetime:
        """Advance the clock and return the new time."""
        self.current = self.current + timedelta(seconds=seconds, minutes=minutes, hours=hours)
        return self.current


@pytest.fixture
def clock() -> DeterministicClock:
    """Provide a clock pinned to a fixed instant."""
    return DeterministicClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sqlite_session_factory(tmp_path: Path) -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory backed by a temp file."""
    db_path = tmp_path / "archive.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def encryption() -> EncryptionService:
    """Provide an encryption service keyed with the test key."""
    return EncryptionService.initialize(TEST_ENCRYPTION_KEY)


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    """Provide an argon2 hasher tuned for test speed."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def ledger(sqlite_session_factory, clock) -> AuditLedger:
    """Provide a ledger bound to the temp database and fixed clock."""
    return AuditLedger(sqlite_session_factory, now_provider=clock.now)


@pytest.fixture
def metadata_service(sqlite_session_factory, clock) -> MetadataService:
    """Provide a metadata service with the default locale."""
    return MetadataService(sqlite_session_factory, now_provider=clock.now)


@pytest.fixture
def archive_service(sqlite_session_factory, metadata_service, ledger, clock):
    """Provide an archive content service wired to the temp database."""
    return ArchiveContentService(
        sqlite_session_factory, metadata_service, ledger, now_provider=clock.now
    )


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Provide an empty content storage directory."""
    path = tmp_path / "storage"
    path.mkdir()
    return path


@pytest.fixture
def write_blob(storage_dir: Path):
    """Return a helper that writes content into the storage directory."""

    def write(name: str, content: bytes) -> Path:
        path = storage_dir / name
        path.write_bytes(content)
        return path

    return write
