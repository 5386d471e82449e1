"""Configuration management for the archive core."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _REPO_ROOT / "config" / "archive.yml"
_USER_CONFIG_PATHS = [
    Path("~/.config/archive/archive.yml").expanduser(),
    Path("/config/archive.yml"),
]
_USER_SECRETS_PATHS = [
    Path("~/.config/archive/secrets.yml").expanduser(),
    Path("/config/secrets.yml"),
]

# Schema revision that introduced encrypted contact columns on accounts.
ENCRYPTED_CONTACTS_SCHEMA_VERSION = 3


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping from disk, returning an empty mapping if missing."""
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def _yaml_settings_source(paths: list[Path]):
    """Create a Pydantic settings source for a list of YAML paths."""

    def source() -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for path in paths:
            merged.update(_load_yaml(path))
        return merged

    return source


def _set_nested_value(target: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted-path value on a nested mapping, creating containers."""
    parts = path.split(".")
    cursor = target
    for key in parts[:-1]:
        node = cursor.get(key)
        if not isinstance(node, dict):
            node = {}
            cursor[key] = node
        cursor = node
    cursor[parts[-1]] = value


def _parse_env_value(raw: str, kind: str) -> Any:
    """Parse an environment value into the requested primitive type."""
    if kind == "int":
        return int(raw)
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    return raw


def _env_settings_source():
    """Create a settings source that maps environment variables to config keys."""
    mapping = {
        "ARCHIVE_LOG_LEVEL": ("log_level", "str"),
        "DATABASE_URL": ("database.url", "str"),
        "ARCHIVE_DATABASE_URL": ("database.url", "str"),
        "ARCHIVE_SCHEMA_VERSION": ("database.schema_version", "int"),
        "ENCRYPTION_KEY": ("encryption.key", "str"),
        "ARCHIVE_ENCRYPTION_KEY": ("encryption.key", "str"),
        "ARCHIVE_STORAGE_ROOT": ("storage.root_dir", "str"),
        "ARCHIVE_MAX_STORAGE_BYTES": ("monitoring.max_storage_bytes", "int"),
        "ARCHIVE_BACKUP_DIR": ("backup.directory", "str"),
        "ARCHIVE_BACKUP_KEEP": ("backup.keep", "int"),
        "ARCHIVE_ALERT_WEBHOOK_URL": ("monitoring.alert_webhook_url", "str"),
        "ARCHIVE_SCHEDULER_ENABLED": ("scheduler.enabled", "bool"),
        "USER_TIMEZONE": ("user.timezone", "str"),
        "ARCHIVE_TIMEZONE": ("user.timezone", "str"),
    }

    def source() -> dict[str, Any]:
        data: dict[str, Any] = {}
        for env_key, (path, kind) in mapping.items():
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            _set_nested_value(data, path, _parse_env_value(raw, kind))
        return data

    return source


class DatabaseConfig(BaseModel):
    """Database connection and schema configuration."""

    url: str = "sqlite:///data/archive.db"
    schema_version: int = ENCRYPTED_CONTACTS_SCHEMA_VERSION
    run_migrations_on_start: bool = False

    @property
    def encrypted_contacts(self) -> bool:
        """Return True when the schema carries encrypted contact columns."""
        return self.schema_version >= ENCRYPTED_CONTACTS_SCHEMA_VERSION


class StorageConfig(BaseModel):
    """Content storage filesystem configuration."""

    root_dir: str = "data/storage"
    hash_chunk_bytes: int = 1024 * 1024

    @field_validator("hash_chunk_bytes")
    @classmethod
    def validate_chunk_bytes(cls, value: int) -> int:
        """Ensure the hashing chunk size is positive."""
        if value < 1:
            raise ValueError("storage.hash_chunk_bytes must be >= 1.")
        return value


class EncryptionConfig(BaseModel):
    """Field encryption key material."""

    key: str | None = None


class LockoutConfig(BaseModel):
    """Brute-force lockout thresholds."""

    max_failed_attempts: int = 5
    duration_minutes: int = 15

    @field_validator("max_failed_attempts", "duration_minutes")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure lockout thresholds are positive."""
        if value < 1:
            raise ValueError("lockout thresholds must be >= 1.")
        return value


class RateLimitConfig(BaseModel):
    """In-memory rate limit windows."""

    auth_window_seconds: int = 15 * 60
    auth_max_requests: int = 10
    api_window_seconds: int = 60
    api_max_requests: int = 100
    cleanup_interval_seconds: int = 5 * 60

    @field_validator(
        "auth_window_seconds",
        "auth_max_requests",
        "api_window_seconds",
        "api_max_requests",
        "cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure rate limit windows and counts are positive."""
        if value < 1:
            raise ValueError("rate_limit values must be >= 1.")
        return value


class MetadataConfig(BaseModel):
    """Descriptive metadata defaults."""

    default_language: str = "pl"
    default_rights: str = "Copyright"


class FixityConfig(BaseModel):
    """Fixity verification batch settings."""

    batch_size: int = 500
    max_workers: int = 4
    report_history: int = 20

    @field_validator("batch_size", "max_workers", "report_history")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure fixity batch settings are positive."""
        if value < 1:
            raise ValueError("fixity values must be >= 1.")
        return value


class BackupConfig(BaseModel):
    """Nightly backup job settings."""

    directory: str = "data/backups"
    keep: int = 7
    hour: int = 2

    @field_validator("keep")
    @classmethod
    def validate_keep(cls, value: int) -> int:
        """Ensure at least one backup generation is retained."""
        if value < 1:
            raise ValueError("backup.keep must be >= 1.")
        return value

    @field_validator("hour")
    @classmethod
    def validate_hour(cls, value: int) -> int:
        """Ensure the backup hour is a valid wall-clock hour."""
        if not 0 <= value <= 23:
            raise ValueError("backup.hour must be between 0 and 23.")
        return value


class MonitoringConfig(BaseModel):
    """Health monitoring thresholds and alert delivery."""

    interval_seconds: int = 5 * 60
    memory_warning_percent: float = 75.0
    memory_critical_percent: float = 90.0
    memory_healthy_percent: float = 85.0
    disk_critical_percent: float = 95.0
    max_storage_bytes: int = 1024 * 1024 * 1024 * 1024
    storage_warning_ratio: float = 0.9
    alert_webhook_url: str | None = None
    alert_timeout_seconds: float = 10.0

    @model_validator(mode="after")
    def validate_thresholds(self) -> "MonitoringConfig":
        """Ensure warning thresholds sit below critical thresholds."""
        if self.memory_warning_percent >= self.memory_critical_percent:
            raise ValueError(
                "monitoring.memory_warning_percent must be below memory_critical_percent."
            )
        if not 0.0 < self.storage_warning_ratio <= 1.0:
            raise ValueError("monitoring.storage_warning_ratio must be in (0, 1].")
        if self.interval_seconds < 1:
            raise ValueError("monitoring.interval_seconds must be >= 1.")
        return self


class SchedulerConfig(BaseModel):
    """Background job toggles."""

    enabled: bool = True
    fixity_enabled: bool = True
    backup_enabled: bool = True
    monitoring_enabled: bool = True


class UserConfig(BaseModel):
    """Operator context used for local scheduling."""

    timezone: str = "UTC"

    @model_validator(mode="after")
    def validate_timezone(self) -> "UserConfig":
        """Ensure the configured timezone is a valid IANA identifier."""
        try:
            ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Invalid timezone: {self.timezone}") from exc
        return self


class Settings(BaseSettings):
    """Application settings loaded from environment variables and YAML."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Layer settings sources in descending order of precedence."""
        return (
            init_settings,
            _env_settings_source(),
            _yaml_settings_source(_USER_SECRETS_PATHS),
            _yaml_settings_source(_USER_CONFIG_PATHS),
            _yaml_settings_source([_DEFAULT_CONFIG_PATH]),
        )

    # Logging
    log_level: str = "INFO"

    # Persistence
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    # Security
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    lockout: LockoutConfig = Field(default_factory=LockoutConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    # Archive behavior
    metadata: MetadataConfig = Field(default_factory=MetadataConfig)
    fixity: FixityConfig = Field(default_factory=FixityConfig)

    # Background jobs
    backup: BackupConfig = Field(default_factory=BackupConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    # User Context
    user: UserConfig = Field(default_factory=UserConfig)


# Global settings instance
settings = Settings()
