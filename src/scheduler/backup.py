"""Database and content backups with generation pruning."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from time_utils import utc_now

logger = logging.getLogger(__name__)

DATABASE_PREFIX = "db_backup_"
FILES_PREFIX = "files_backup_"

DatabaseDumper = Callable[[Path], None]


@dataclass(frozen=True)
class BackupArtifact:
    """A backup file on disk."""

    name: str
    path: Path
    size: int
    created_at: datetime


@dataclass(frozen=True)
class PruneResult:
    """Outcome of pruning old backups."""

    deleted: int
    freed_bytes: int


def pg_dump_dumper(database_url: str, *, executable: str = "pg_dump") -> DatabaseDumper:
    """Return a dumper that writes a plain SQL dump via ``pg_dump``."""

    def dump(target: Path) -> None:
        binary = shutil.which(executable)
        if binary is None:
            raise FileNotFoundError(f"{executable} is not installed")
        with open(target, "wb") as handle:
            subprocess.run(
                [binary, "--no-owner", "--dbname", database_url],
                stdout=handle,
                stderr=subprocess.PIPE,
                check=True,
            )

    return dump


def sqlite_copy_dumper(database_path: str | Path) -> DatabaseDumper:
    """Return a dumper that copies a SQLite database file."""

    def dump(target: Path) -> None:
        shutil.copy2(database_path, target)

    return dump


class BackupService:
    """Produce timestamped backups and keep a bounded number of generations."""

    def __init__(
        self,
        backup_dir: str | Path,
        storage_dir: str | Path,
        *,
        database_dumper: DatabaseDumper | None = None,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the service with target and source directories."""
        self._backup_dir = Path(backup_dir)
        self._storage_dir = Path(storage_dir)
        self._dumper = database_dumper
        self._now = now_provider

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    def initialize(self) -> None:
        """Create the backup directory if it does not exist."""
        self._backup_dir.mkdir(parents=True, exist_ok=True)

    def backup_database(self) -> BackupArtifact | None:
        """Dump the database, returning None when unavailable or failed."""
        if self._dumper is None:
            logger.info("No database dumper configured; skipping database backup")
            return None
        self.initialize()
        target = self._backup_dir / f"{DATABASE_PREFIX}{self._stamp()}.sql"
        try:
            self._dumper(target)
        except Exception:
            logger.exception("Database backup failed")
            target.unlink(missing_ok=True)
            return None
        artifact = _artifact(target)
        logger.info("Database backup written: %s (%s bytes)", artifact.name, artifact.size)
        return artifact

    def backup_files(self) -> BackupArtifact | None:
        """Archive the content storage directory as a gzip tarball."""
        if not self._storage_dir.is_dir():
            logger.warning("Storage directory %s missing; skipping files backup", self._storage_dir)
            return None
        self.initialize()
        target = self._backup_dir / f"{FILES_PREFIX}{self._stamp()}.tar.gz"
        try:
            with tarfile.open(target, "w:gz") as archive:
                archive.add(self._storage_dir, arcname=self._storage_dir.name)
        except (OSError, tarfile.TarError):
            logger.exception("Files backup failed")
            target.unlink(missing_ok=True)
            return None
        artifact = _artifact(target)
        logger.info("Files backup written: %s (%s bytes)", artifact.name, artifact.size)
        return artifact

    def list_backups(self) -> list[BackupArtifact]:
        """Return all backups, newest first."""
        if not self._backup_dir.is_dir():
            return []
        artifacts = [
            _artifact(path)
            for path in self._backup_dir.iterdir()
            if path.is_file() and path.name.startswith((DATABASE_PREFIX, FILES_PREFIX))
        ]
        return sorted(artifacts, key=lambda item: (item.created_at, item.name), reverse=True)

    def clean_old_backups(self, keep: int) -> PruneResult:
        """Delete all but the newest ``keep`` backups of each kind."""
        if keep < 1:
            raise ValueError("keep must be >= 1")
        deleted = 0
        freed = 0
        for prefix in (DATABASE_PREFIX, FILES_PREFIX):
            generations = [item for item in self.list_backups() if item.name.startswith(prefix)]
            for stale in generations[keep:]:
                try:
                    stale.path.unlink()
                except OSError:
                    logger.exception("Failed to delete old backup %s", stale.path)
                    continue
                deleted += 1
                freed += stale.size
        if deleted:
            logger.info("Pruned %s old backups (%s bytes)", deleted, freed)
        return PruneResult(deleted=deleted, freed_bytes=freed)

    def _stamp(self) -> str:
        return self._now().strftime("%Y%m%dT%H%M%S%fZ")


def _artifact(path: Path) -> BackupArtifact:
    stat = path.stat()
    return BackupArtifact(
        name=path.name,
        path=path,
        size=stat.st_size,
        created_at=datetime.fromtimestamp(stat.st_mtime).astimezone(),
    )


def database_dumper_for(url: str) -> DatabaseDumper | None:
    """Pick a dumper for a SQLAlchemy database URL."""
    if url.startswith("postgresql"):
        return pg_dump_dumper(url.replace("postgresql+psycopg2://", "postgresql://", 1))
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///") :]
        return sqlite_copy_dumper(path) if path and os.path.exists(path) else None
    return None
