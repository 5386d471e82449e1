"""System health checks and alerting."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

import httpx
import psutil

from config import MonitoringConfig
from ledger.service import AuditAction, AuditLedger, LedgerDetails, ResourceType
from time_utils import utc_now

logger = logging.getLogger(__name__)


class AlertSeverity(str, Enum):
    """Alert severities in increasing order of urgency."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthState(str, Enum):
    """Overall health classification."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class SystemMetrics:
    """Host and process resource usage."""

    memory_percent: float
    memory_used_bytes: int
    memory_total_bytes: int
    cpu_percent: float
    process_uptime_seconds: float
    collected_at: datetime


@dataclass(frozen=True)
class StorageMetrics:
    """Content storage usage."""

    file_count: int
    stored_bytes: int
    disk_percent: float
    disk_free_bytes: int


@dataclass(frozen=True)
class HealthStatus:
    """Result of the individual health checks."""

    status: HealthState
    checks: dict[str, bool]
    checked_at: datetime


@dataclass(frozen=True)
class Alert:
    """An operator-facing alert."""

    severity: AlertSeverity
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: datetime | None = None


class AlertNotifier(Protocol):
    """Delivers critical alerts to an operator channel."""

    def notify(self, alert: Alert) -> None: ...


class WebhookAlertNotifier:
    """POST alerts as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    def notify(self, alert: Alert) -> None:
        payload = {
            "severity": alert.severity.value,
            "message": alert.message,
            "details": alert.details,
            "raised_at": alert.raised_at.isoformat() if alert.raised_at else None,
        }
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            response = client.post(self._url, json=payload)
            response.raise_for_status()


MetricsProvider = Callable[[], SystemMetrics]


def collect_system_metrics() -> SystemMetrics:
    """Sample memory, CPU and process uptime via psutil."""
    memory = psutil.virtual_memory()
    process = psutil.Process(os.getpid())
    return SystemMetrics(
        memory_percent=float(memory.percent),
        memory_used_bytes=int(memory.used),
        memory_total_bytes=int(memory.total),
        cpu_percent=float(psutil.cpu_percent(interval=None)),
        process_uptime_seconds=max(0.0, time.time() - process.create_time()),
        collected_at=utc_now(),
    )


class MonitoringService:
    """Evaluate health and raise alerts on threshold breaches."""

    def __init__(
        self,
        storage_dir: str | Path,
        config: MonitoringConfig,
        *,
        database_check: Callable[[], bool],
        ledger: AuditLedger | None = None,
        notifier: AlertNotifier | None = None,
        metrics_provider: MetricsProvider = collect_system_metrics,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the service with thresholds and health checks."""
        self._storage_dir = Path(storage_dir)
        self._config = config
        self._database_check = database_check
        self._ledger = ledger
        self._notifier = notifier
        self._metrics_provider = metrics_provider
        self._now = now_provider
        self._open_alerts = 0

    def get_system_metrics(self) -> SystemMetrics:
        return self._metrics_provider()

    def get_storage_metrics(self) -> StorageMetrics:
        """Walk the storage root and report its size and disk usage."""
        file_count = 0
        stored_bytes = 0
        if self._storage_dir.is_dir():
            for root, _dirs, files in os.walk(self._storage_dir):
                for name in files:
                    try:
                        stored_bytes += os.path.getsize(os.path.join(root, name))
                    except OSError:
                        continue
                    file_count += 1
            usage = psutil.disk_usage(str(self._storage_dir))
            disk_percent, disk_free = float(usage.percent), int(usage.free)
        else:
            disk_percent, disk_free = 0.0, 0
        return StorageMetrics(
            file_count=file_count,
            stored_bytes=stored_bytes,
            disk_percent=disk_percent,
            disk_free_bytes=disk_free,
        )

    def get_health_status(self) -> HealthStatus:
        """Run the database, storage and memory checks."""
        metrics = self.get_system_metrics()
        checks = {
            "database": bool(self._database_check()),
            "storage": self._storage_dir.is_dir() and os.access(self._storage_dir, os.R_OK),
            "memory": metrics.memory_percent < self._config.memory_healthy_percent,
        }
        if not checks["database"]:
            status = HealthState.UNHEALTHY
        elif all(checks.values()):
            status = HealthState.HEALTHY
        else:
            status = HealthState.DEGRADED
        return HealthStatus(status=status, checks=checks, checked_at=self._now())

    def perform_health_checks(self) -> list[Alert]:
        """Evaluate thresholds and raise an alert for each breach.

        The first clean run after a run that raised alerts emits one INFO
        recovery alert.
        """
        alerts: list[Alert] = []
        config = self._config

        if not self._database_check():
            alerts.append(Alert(AlertSeverity.CRITICAL, "Database connection failed"))

        metrics = self.get_system_metrics()
        if metrics.memory_percent > config.memory_critical_percent:
            alerts.append(
                Alert(
                    AlertSeverity.CRITICAL,
                    f"Memory usage critical: {metrics.memory_percent:.1f}%",
                    {"memory_percent": metrics.memory_percent},
                )
            )
        elif metrics.memory_percent > config.memory_warning_percent:
            alerts.append(
                Alert(
                    AlertSeverity.WARNING,
                    f"Memory usage high: {metrics.memory_percent:.1f}%",
                    {"memory_percent": metrics.memory_percent},
                )
            )

        storage = self.get_storage_metrics()
        storage_limit = config.max_storage_bytes * config.storage_warning_ratio
        if storage.stored_bytes > storage_limit:
            alerts.append(
                Alert(
                    AlertSeverity.WARNING,
                    "Archive storage nearing capacity",
                    {
                        "stored_bytes": storage.stored_bytes,
                        "max_storage_bytes": config.max_storage_bytes,
                    },
                )
            )
        if storage.disk_percent > config.disk_critical_percent:
            alerts.append(
                Alert(
                    AlertSeverity.CRITICAL,
                    f"Disk usage critical: {storage.disk_percent:.1f}%",
                    {"disk_percent": storage.disk_percent},
                )
            )

        if not alerts and self._open_alerts:
            alerts.append(
                Alert(
                    AlertSeverity.INFO,
                    "Health checks passing again",
                    {"previous_alerts": self._open_alerts},
                )
            )
            self._open_alerts = 0
        else:
            self._open_alerts = len(alerts)

        return [self.raise_alert(alert) for alert in alerts]

    def raise_alert(self, alert: Alert) -> Alert:
        """Log, record and (for critical alerts) deliver an alert."""
        stamped = Alert(alert.severity, alert.message, dict(alert.details), self._now())
        level = {
            AlertSeverity.INFO: logging.INFO,
            AlertSeverity.WARNING: logging.WARNING,
            AlertSeverity.CRITICAL: logging.ERROR,
        }[stamped.severity]
        logger.log(level, "[%s] %s", stamped.severity.value.upper(), stamped.message)

        if self._ledger is not None:
            self._ledger.record(
                None,
                AuditAction.VALIDATE,
                ResourceType.FILE,
                f"alert_{stamped.severity.value}",
                details=LedgerDetails(
                    new_value=asdict(stamped),
                    reason=stamped.message,
                    success=stamped.severity is not AlertSeverity.CRITICAL,
                ),
            )

        if stamped.severity is AlertSeverity.CRITICAL and self._notifier is not None:
            try:
                self._notifier.notify(stamped)
            except Exception:
                logger.exception("Failed to deliver critical alert: %s", stamped.message)
        return stamped
