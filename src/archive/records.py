"""Read-only views over archive rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from errors import ValidationError
from models import ArchivedFile, DescriptiveMetadata, FileVersion, PreservationMetadata
from time_utils import ensure_utc

ACCESS_LEVELS = ("public", "internal", "restricted", "confidential")
DUBLIN_CORE_TYPES = ("document", "video", "audio", "image", "software", "collection")

_SOFTWARE_MIME_TYPES = {
    "application/x-executable",
    "application/x-msdownload",
    "application/x-sh",
    "application/java-archive",
    "application/vnd.android.package-archive",
    "application/x-python-code",
}
_DOCUMENT_MIME_TYPES = {
    "application/pdf",
    "application/msword",
    "application/rtf",
    "application/json",
    "application/xml",
    "application/epub+zip",
}


class PreservationEventType(str, Enum):
    """Preservation event vocabulary."""

    CAPTURE = "capture"
    CREATION = "creation"
    MODIFICATION = "modification"
    ACCESS = "access"
    MIGRATION = "migration"
    VALIDATION = "validation"


def parse_file_id(value: UUID | str) -> UUID:
    """Coerce a caller-supplied file identifier into a UUID."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as exc:
        raise ValidationError(f"Invalid file id: {value!r}") from exc


def media_category_for(mime_type: str) -> str:
    """Map a MIME type onto the archive's coarse media categories."""
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    major = mime.split("/", 1)[0]
    if major in {"image", "video", "audio"}:
        return major
    if mime in _SOFTWARE_MIME_TYPES:
        return "software"
    if major == "text" or mime in _DOCUMENT_MIME_TYPES:
        return "document"
    if mime.startswith("application/vnd.openxmlformats-officedocument") or mime.startswith(
        "application/vnd.oasis.opendocument"
    ):
        return "document"
    return "other"


def dublin_core_type_for(mime_type: str) -> str:
    """Return the Dublin Core type implied by a MIME type."""
    category = media_category_for(mime_type)
    return category if category in DUBLIN_CORE_TYPES else "document"


@dataclass(frozen=True)
class ArchivedFileView:
    """Snapshot of a file row."""

    id: UUID
    filename: str
    file_path: str
    file_hash: str
    mime_type: str
    file_size: int
    category: str
    owner_id: str | None
    description: str | None
    current_version: int
    access_level: str
    rating: float
    is_accessible: bool
    is_deleted: bool
    deleted_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, row: ArchivedFile) -> "ArchivedFileView":
        return cls(
            id=row.id,
            filename=row.filename,
            file_path=row.file_path,
            file_hash=row.file_hash,
            mime_type=row.mime_type,
            file_size=row.file_size,
            category=row.category,
            owner_id=row.owner_id,
            description=row.description,
            current_version=row.current_version,
            access_level=row.access_level,
            rating=row.rating or 0.0,
            is_accessible=row.is_accessible,
            is_deleted=row.is_deleted,
            deleted_at=ensure_utc(row.deleted_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )


@dataclass(frozen=True)
class FileVersionView:
    """Snapshot of one version row."""

    file_id: UUID
    version_number: int
    file_hash: str
    file_path: str
    file_size: int
    created_by: str | None
    change_summary: str | None
    change_details: dict[str, Any] | None
    created_at: datetime

    @classmethod
    def from_model(cls, row: FileVersion) -> "FileVersionView":
        return cls(
            file_id=row.file_id,
            version_number=row.version_number,
            file_hash=row.file_hash,
            file_path=row.file_path,
            file_size=row.file_size,
            created_by=row.created_by,
            change_summary=row.change_summary,
            change_details=row.change_details,
            created_at=ensure_utc(row.created_at),
        )


@dataclass(frozen=True)
class DescriptiveRecord:
    """Snapshot of a Dublin Core record."""

    file_id: UUID
    identifier: str
    title: str
    creator: str
    subject: str | None
    description: str | None
    publisher: str | None
    contributor: str | None
    date_created: datetime
    type: str
    format: str
    language: str
    rights: str
    source: str | None
    dc_xml: str
    updated_at: datetime

    @classmethod
    def from_model(cls, row: DescriptiveMetadata) -> "DescriptiveRecord":
        return cls(
            file_id=row.file_id,
            identifier=row.identifier,
            title=row.title,
            creator=row.creator,
            subject=row.subject,
            description=row.description,
            publisher=row.publisher,
            contributor=row.contributor,
            date_created=ensure_utc(row.date_created),
            type=row.type,
            format=row.format,
            language=row.language,
            rights=row.rights,
            source=row.source,
            dc_xml=row.dc_xml,
            updated_at=ensure_utc(row.updated_at),
        )


@dataclass(frozen=True)
class PreservationEvent:
    """One entry in a preservation record's event history."""

    event_id: str
    event_type: PreservationEventType
    occurred_at: datetime
    detail: str
    agent: str
    object_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "detail": self.detail,
            "agent": self.agent,
            "object_id": self.object_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PreservationEvent":
        return cls(
            event_id=payload["event_id"],
            event_type=PreservationEventType(payload["event_type"]),
            occurred_at=ensure_utc(datetime.fromisoformat(payload["occurred_at"])),
            detail=payload.get("detail", ""),
            agent=payload.get("agent", "system"),
            object_id=payload.get("object_id", ""),
        )


@dataclass(frozen=True)
class PreservationRecord:
    """Snapshot of a preservation record."""

    file_id: UUID
    object_identifier: str
    format_name: str
    format_registry: str
    digest_algorithm: str
    message_digest: str
    digest_validated_at: datetime | None
    preservation_level: str
    events: tuple[PreservationEvent, ...]

    @classmethod
    def from_model(cls, row: PreservationMetadata) -> "PreservationRecord":
        return cls(
            file_id=row.file_id,
            object_identifier=row.object_identifier,
            format_name=row.format_name,
            format_registry=row.format_registry,
            digest_algorithm=row.digest_algorithm,
            message_digest=row.message_digest,
            digest_validated_at=ensure_utc(row.digest_validated_at),
            preservation_level=row.preservation_level,
            events=tuple(PreservationEvent.from_dict(item) for item in row.events or []),
        )


@dataclass(frozen=True)
class ArchivedItemView:
    """A file together with its descriptive and preservation records."""

    file: ArchivedFileView
    descriptive: DescriptiveRecord | None
    preservation: PreservationRecord | None
