"""Data models for the archive core."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import declarative_base, relationship

from errors import InternalError

# SQLAlchemy base
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


AccessLevelEnum = Enum(
    "public",
    "internal",
    "restricted",
    "confidential",
    name="access_level",
    native_enum=False,
)
MediaCategoryEnum = Enum(
    "document",
    "image",
    "video",
    "audio",
    "software",
    "other",
    name="media_category",
    native_enum=False,
)
DublinCoreTypeEnum = Enum(
    "document",
    "video",
    "audio",
    "image",
    "software",
    "collection",
    name="dublin_core_type",
    native_enum=False,
)
PreservationLevelEnum = Enum(
    "bit",
    "reference",
    "full",
    name="preservation_level",
    native_enum=False,
)
AuditActionEnum = Enum(
    "CREATE",
    "READ",
    "UPDATE",
    "DELETE",
    "DOWNLOAD",
    "SHARE",
    "VALIDATE",
    name="audit_action",
    native_enum=False,
)
AuditResourceTypeEnum = Enum(
    "file",
    "metadata",
    "user",
    "version",
    name="audit_resource_type",
    native_enum=False,
)
AccountRoleEnum = Enum(
    "reader",
    "curator",
    "admin",
    name="account_role",
    native_enum=False,
)


class ArchivedFile(Base):
    """A preserved content object tracked by digest."""

    __tablename__ = "files"
    __table_args__ = (
        Index("ix_files_category", "category"),
        Index("ix_files_created_at", "created_at"),
        Index("ix_files_is_deleted", "is_deleted"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    filename = Column(String(500), nullable=False)
    file_path = Column(String(1000), nullable=False)
    file_hash = Column(String(128), nullable=False, unique=True)
    mime_type = Column(String(200), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    category = Column(MediaCategoryEnum, nullable=False, default="other")
    owner_id = Column(String(200), nullable=True)
    description = Column(Text, nullable=True)
    current_version = Column(Integer, nullable=False, default=1)
    access_level = Column(AccessLevelEnum, nullable=False, default="public")
    rating = Column(Float, nullable=False, default=0.0)
    is_accessible = Column(Boolean, nullable=False, default=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    accessible_before_delete = Column(Boolean, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    descriptive = relationship(
        "DescriptiveMetadata",
        back_populates="file",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    preservation = relationship(
        "PreservationMetadata",
        back_populates="file",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    versions = relationship(
        "FileVersion",
        back_populates="file",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="FileVersion.version_number",
    )


class FileVersion(Base):
    """Immutable snapshot of a file's content at one version number."""

    __tablename__ = "file_versions"
    __table_args__ = (
        UniqueConstraint("file_id", "version_number", name="uq_file_versions_number"),
    )

    id = Column(Integer, primary_key=True)
    file_id = Column(Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False)
    version_number = Column(Integer, nullable=False)
    file_hash = Column(String(128), nullable=False)
    file_path = Column(String(1000), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    created_by = Column(String(200), nullable=True)
    change_summary = Column(Text, nullable=True)
    change_details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    file = relationship("ArchivedFile", back_populates="versions")


class DescriptiveMetadata(Base):
    """Dublin Core descriptive record for a file."""

    __tablename__ = "metadata_descriptive"

    id = Column(Integer, primary_key=True)
    file_id = Column(
        Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    identifier = Column(String(200), nullable=False)
    title = Column(String(500), nullable=False)
    creator = Column(String(500), nullable=False)
    subject = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    publisher = Column(String(500), nullable=True)
    contributor = Column(String(500), nullable=True)
    date_created = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    type = Column(DublinCoreTypeEnum, nullable=False, default="document")
    format = Column(String(200), nullable=False)
    language = Column(String(20), nullable=False)
    rights = Column(Text, nullable=False)
    source = Column(Text, nullable=True)
    dc_xml = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    file = relationship("ArchivedFile", back_populates="descriptive")


class PreservationMetadata(Base):
    """PREMIS-style preservation record with an ordered event list."""

    __tablename__ = "metadata_preservation"

    id = Column(Integer, primary_key=True)
    file_id = Column(
        Uuid, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    object_identifier = Column(String(200), nullable=False)
    format_name = Column(String(200), nullable=False)
    format_registry = Column(String(100), nullable=False, default="PRONOM")
    digest_algorithm = Column(String(50), nullable=False, default="SHA-256")
    message_digest = Column(String(128), nullable=False)
    digest_validated_at = Column(DateTime(timezone=True), nullable=True)
    preservation_level = Column(PreservationLevelEnum, nullable=False, default="full")
    events = Column(JSON, nullable=False, default=list)
    row_version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __mapper_args__ = {"version_id_col": row_version}

    file = relationship("ArchivedFile", back_populates="preservation")


class AuditLogEntry(Base):
    """Append-only provenance ledger entry."""

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_resource", "resource_id", "created_at"),
        Index("ix_audit_log_actor", "actor_id", "created_at"),
        Index("ix_audit_log_action", "action"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(200), nullable=True)
    action = Column(AuditActionEnum, nullable=False)
    resource_type = Column(AuditResourceTypeEnum, nullable=False)
    resource_id = Column(String(255), nullable=False)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class LockoutRecord(Base):
    """Failed-attempt counter and lock window for one identity."""

    __tablename__ = "account_lockouts"

    id = Column(Integer, primary_key=True)
    identity = Column(String(255), nullable=False, unique=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    lockout_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Account(Base):
    """Archive user account with encrypted contact fields."""

    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    username = Column(String(100), nullable=False, unique=True)
    email = Column(String(320), nullable=True, unique=True)
    email_encrypted = Column(Text, nullable=True)
    email_hash = Column(String(64), nullable=True, unique=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(AccountRoleEnum, nullable=False, default="reader")
    is_active = Column(Boolean, nullable=False, default=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@event.listens_for(Base, "load", propagate=True)
def _normalize_timestamps_on_load(target: object, _context: object) -> None:
    """Ensure loaded timestamps retain timezone awareness."""
    for column in target.__table__.columns:
        if not isinstance(column.type, DateTime):
            continue
        key = column.key
        value = target.__dict__.get(key)
        if isinstance(value, datetime) and value.tzinfo is None:
            # Write through __dict__ so the object is not flagged dirty.
            target.__dict__[key] = _ensure_aware_timestamp(value)


@event.listens_for(AuditLogEntry, "before_update")
def _refuse_audit_update(_mapper: object, _connection: object, target: AuditLogEntry) -> None:
    """Reject in-place modification of ledger entries."""
    raise InternalError(f"audit log entry {target.id} is immutable")


@event.listens_for(AuditLogEntry, "before_delete")
def _refuse_audit_delete(_mapper: object, _connection: object, target: AuditLogEntry) -> None:
    """Reject deletion of ledger entries."""
    raise InternalError(f"audit log entry {target.id} cannot be deleted")
