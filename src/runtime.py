"""Composition root: build and wire archive services from settings."""

from __future__ import annotations

import logging
import signal
import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from threading import Event

from sqlalchemy.orm import sessionmaker

from accounts.authentication import Authenticator
from accounts.lockout import LockoutService
from accounts.rate_limiter import InMemoryRateLimiter
from accounts.registry import AccountRegistry
from archive.files import ArchiveContentService
from archive.metadata import MetadataService
from config import Settings, settings as default_settings
from fixity.engine import FixityEngine
from ledger.service import AuditLedger
from scheduler.backup import BackupService, database_dumper_for
from scheduler.jobs import build_archive_jobs
from scheduler.monitoring import MonitoringService, WebhookAlertNotifier
from scheduler.runner import ArchiveScheduler
from services.database import check_connection, create_archive_engine, run_migrations
from services.encryption import EncryptionService
from services.locks import KeyedLocks
from time_utils import get_local_timezone

logger = logging.getLogger(__name__)


@dataclass
class ArchiveRuntime:
    """All archive services for one process."""

    settings: Settings
    session_factory: sessionmaker
    encryption: EncryptionService
    ledger: AuditLedger
    metadata: MetadataService
    archive: ArchiveContentService
    fixity: FixityEngine
    lockout: LockoutService
    auth_rate_limiter: InMemoryRateLimiter
    api_rate_limiter: InMemoryRateLimiter
    accounts: AccountRegistry
    authenticator: Authenticator
    backup: BackupService
    monitoring: MonitoringService
    scheduler: ArchiveScheduler

    def start(self) -> None:
        """Start background cleanup and scheduled jobs."""
        interval = self.settings.rate_limit.cleanup_interval_seconds
        self.auth_rate_limiter.start_cleanup(interval)
        self.api_rate_limiter.start_cleanup(interval)
        if self.settings.scheduler.enabled:
            self.backup.initialize()
            self.scheduler.start()
        logger.info("Archive runtime started")

    def stop(self) -> None:
        """Stop scheduled jobs and background cleanup."""
        self.scheduler.stop()
        self.auth_rate_limiter.stop_cleanup()
        self.api_rate_limiter.stop_cleanup()
        logger.info("Archive runtime stopped")


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker | None = None,
) -> ArchiveRuntime:
    """Build every service from settings.

    Fails fast with ConfigurationError when the encryption key is unusable.
    """
    cfg = settings or default_settings
    encryption = EncryptionService.from_settings(cfg)

    if session_factory is None:
        if cfg.database.run_migrations_on_start:
            run_migrations(cfg.database.url)
        session_factory = sessionmaker(bind=create_archive_engine(cfg.database.url))
    engine = session_factory.kw.get("bind")

    ledger = AuditLedger(session_factory)
    metadata = MetadataService(
        session_factory,
        default_language=cfg.metadata.default_language,
        default_rights=cfg.metadata.default_rights,
    )
    file_locks = KeyedLocks()
    archive = ArchiveContentService(session_factory, metadata, ledger, file_locks=file_locks)
    fixity = FixityEngine(
        session_factory,
        ledger,
        metadata,
        max_workers=cfg.fixity.max_workers,
        report_history=cfg.fixity.report_history,
        chunk_size=cfg.storage.hash_chunk_bytes,
        file_locks=file_locks,
    )
    lockout = LockoutService(
        session_factory,
        max_failed_attempts=cfg.lockout.max_failed_attempts,
        lockout_duration=timedelta(minutes=cfg.lockout.duration_minutes),
        ledger=ledger,
    )
    auth_rate_limiter = InMemoryRateLimiter(
        cfg.rate_limit.auth_window_seconds, cfg.rate_limit.auth_max_requests, name="auth"
    )
    api_rate_limiter = InMemoryRateLimiter(
        cfg.rate_limit.api_window_seconds, cfg.rate_limit.api_max_requests, name="api"
    )
    accounts = AccountRegistry(
        session_factory,
        encryption,
        encrypted_contacts=cfg.database.encrypted_contacts,
        ledger=ledger,
    )
    authenticator = Authenticator(accounts, lockout, auth_rate_limiter, ledger)

    backup = BackupService(
        cfg.backup.directory,
        cfg.storage.root_dir,
        database_dumper=database_dumper_for(cfg.database.url),
    )
    notifier = (
        WebhookAlertNotifier(
            cfg.monitoring.alert_webhook_url, timeout=cfg.monitoring.alert_timeout_seconds
        )
        if cfg.monitoring.alert_webhook_url
        else None
    )
    monitoring = MonitoringService(
        Path(cfg.storage.root_dir),
        cfg.monitoring,
        database_check=lambda: check_connection(engine),
        ledger=ledger,
        notifier=notifier,
    )
    local_tz = get_local_timezone(cfg.user.timezone)
    scheduler = ArchiveScheduler(
        build_archive_jobs(
            fixity=fixity if cfg.scheduler.fixity_enabled else None,
            backup=backup if cfg.scheduler.backup_enabled else None,
            monitoring=monitoring if cfg.scheduler.monitoring_enabled else None,
            ledger=ledger,
            fixity_batch_size=cfg.fixity.batch_size,
            backup_keep=cfg.backup.keep,
            backup_hour=cfg.backup.hour,
            monitoring_interval_seconds=cfg.monitoring.interval_seconds,
            tz=local_tz,
        ),
        timezone=local_tz,
    )
    logger.info(
        "Archive runtime built (encrypted_contacts=%s, schema_version=%s)",
        cfg.database.encrypted_contacts,
        cfg.database.schema_version,
    )
    return ArchiveRuntime(
        settings=cfg,
        session_factory=session_factory,
        encryption=encryption,
        ledger=ledger,
        metadata=metadata,
        archive=archive,
        fixity=fixity,
        lockout=lockout,
        auth_rate_limiter=auth_rate_limiter,
        api_rate_limiter=api_rate_limiter,
        accounts=accounts,
        authenticator=authenticator,
        backup=backup,
        monitoring=monitoring,
        scheduler=scheduler,
    )


def configure_logging(level: str) -> None:
    """Configure root logging for a standalone archive process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def main() -> None:
    """Run the archive background services until interrupted."""
    configure_logging(default_settings.log_level)
    runtime = build_runtime()

    stop_requested = Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())
    runtime.start()
    try:
        while not stop_requested.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
