"""Nightly fixity, nightly backup and periodic monitoring jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from fixity.engine import FixityBatchReport, FixityEngine
from ledger.service import AuditAction, AuditLedger, LedgerDetails, ResourceType
from scheduler.backup import BackupArtifact, BackupService, PruneResult
from scheduler.monitoring import Alert, MonitoringService
from scheduler.runner import ScheduledJob
from time_utils import get_local_timezone

logger = logging.getLogger(__name__)

FIXITY_BATCH_RESOURCE = "batch-check"
BACKUP_JOB_RESOURCE = "backup_job"


@dataclass(frozen=True)
class BackupRunSummary:
    """Outcome of one backup job run."""

    database: BackupArtifact | None
    files: BackupArtifact | None
    pruned: PruneResult


def run_fixity_job(
    fixity: FixityEngine,
    ledger: AuditLedger,
    batch_size: int,
) -> FixityBatchReport:
    """Verify a batch of files and record a summary ledger entry."""
    report = fixity.verify_all(batch_size)
    if report.failed:
        logger.warning(
            "Nightly fixity check found %s failures out of %s files",
            report.failed,
            report.total,
        )
    ledger.record(
        None,
        AuditAction.VALIDATE,
        ResourceType.FILE,
        FIXITY_BATCH_RESOURCE,
        details=LedgerDetails(
            new_value={
                "total": report.total,
                "verified": report.verified,
                "failed": report.failed,
                "failed_files": [failure.file_id for failure in report.errors],
            },
            reason="Scheduled fixity check",
            success=report.failed == 0,
            error_message=(
                f"{report.failed} of {report.total} files failed fixity" if report.failed else None
            ),
        ),
    )
    return report


def run_backup_job(backup: BackupService, ledger: AuditLedger, keep: int) -> BackupRunSummary:
    """Back up the database and content, then prune old generations."""
    database = backup.backup_database()
    files = backup.backup_files()
    pruned = backup.clean_old_backups(keep)
    summary = BackupRunSummary(database=database, files=files, pruned=pruned)
    ledger.record(
        None,
        AuditAction.CREATE,
        ResourceType.VERSION,
        BACKUP_JOB_RESOURCE,
        details=LedgerDetails(
            new_value={
                "database": database.name if database else None,
                "files": files.name if files else None,
                "pruned": pruned.deleted,
                "freed_bytes": pruned.freed_bytes,
            },
            reason="Scheduled backup",
            success=files is not None,
        ),
    )
    return summary


def run_monitoring_job(monitoring: MonitoringService) -> list[Alert]:
    """Run health checks; alerts are raised by the monitoring service."""
    alerts = monitoring.perform_health_checks()
    if not alerts:
        logger.debug("Health checks passed")
    return alerts


def build_archive_jobs(
    *,
    fixity: FixityEngine | None,
    backup: BackupService | None,
    monitoring: MonitoringService | None,
    ledger: AuditLedger,
    fixity_batch_size: int,
    backup_keep: int,
    backup_hour: int,
    monitoring_interval_seconds: float,
    tz: ZoneInfo | None = None,
) -> list[ScheduledJob]:
    """Build the standard job set; pass None to leave a job out.

    Fixity runs at local midnight, backup at ``backup_hour`` local time and
    monitoring at start and then every ``monitoring_interval_seconds``.
    """
    local_tz = tz or get_local_timezone()
    jobs: list[ScheduledJob] = []
    if fixity is not None:
        jobs.append(
            ScheduledJob(
                name="fixity",
                action=partial(run_fixity_job, fixity, ledger, fixity_batch_size),
                trigger=CronTrigger(hour=0, minute=0, timezone=local_tz),
            )
        )
    if backup is not None:
        jobs.append(
            ScheduledJob(
                name="backup",
                action=partial(run_backup_job, backup, ledger, backup_keep),
                trigger=CronTrigger(hour=backup_hour, minute=0, timezone=local_tz),
            )
        )
    if monitoring is not None:
        jobs.append(
            ScheduledJob(
                name="monitoring",
                action=partial(run_monitoring_job, monitoring),
                trigger=IntervalTrigger(seconds=monitoring_interval_seconds, timezone=local_tz),
                run_immediately=True,
            )
        )
    return jobs
