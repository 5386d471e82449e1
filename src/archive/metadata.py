"""Descriptive (Dublin Core) and preservation metadata management."""

from __future__ import annotations

import logging
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Callable, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from archive.records import (
    ArchivedFileView,
    ArchivedItemView,
    DescriptiveRecord,
    PreservationEvent,
    PreservationEventType,
    PreservationRecord,
    dublin_core_type_for,
    parse_file_id,
)
from errors import ConflictError, NotFoundError
from models import ArchivedFile, DescriptiveMetadata, PreservationMetadata
from services.database import SessionFactory, run_in_session, session_scope
from services.hashing import DIGEST_ALGORITHM
from services.locks import KeyedLocks
from time_utils import utc_now

logger = logging.getLogger(__name__)

RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
DC_NS = "http://purl.org/dc/elements/1.1/"
ET.register_namespace("rdf", RDF_NS)
ET.register_namespace("dc", DC_NS)

DEFAULT_TITLE = "Untitled"
DEFAULT_CREATOR = "Unknown"
DEFAULT_FORMAT = "application/octet-stream"
SYSTEM_AGENT = "system"

_DC_ELEMENT_ORDER = (
    "title",
    "creator",
    "subject",
    "description",
    "publisher",
    "contributor",
    "date",
    "type",
    "format",
    "identifier",
    "source",
    "language",
    "rights",
)


class DescriptiveFields(BaseModel):
    """Caller-supplied Dublin Core values; ``None`` means not supplied."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str | None = Field(default=None, max_length=500)
    creator: str | None = Field(default=None, max_length=500)
    subject: str | None = None
    description: str | None = None
    publisher: str | None = Field(default=None, max_length=500)
    contributor: str | None = Field(default=None, max_length=500)
    type: Literal["document", "video", "audio", "image", "software", "collection"] | None = None
    format: str | None = Field(default=None, max_length=200)
    language: str | None = Field(default=None, max_length=20)
    rights: str | None = None
    source: str | None = None

    def supplied(self) -> dict[str, str]:
        """Return only the fields that carry a value."""
        return self.model_dump(exclude_none=True)


def render_dublin_core_xml(record: DescriptiveMetadata) -> str:
    """Render the canonical Dublin Core RDF/XML export for a record."""
    values = {
        "title": record.title,
        "creator": record.creator,
        "subject": record.subject,
        "description": record.description,
        "publisher": record.publisher,
        "contributor": record.contributor,
        "date": record.date_created.isoformat() if record.date_created else None,
        "type": record.type,
        "format": record.format,
        "identifier": record.identifier,
        "source": record.source,
        "language": record.language,
        "rights": record.rights,
    }
    root = ET.Element(f"{{{RDF_NS}}}RDF")
    description = ET.SubElement(
        root,
        f"{{{RDF_NS}}}Description",
        {f"{{{RDF_NS}}}about": f"urn:uuid:{record.file_id}"},
    )
    for name in _DC_ELEMENT_ORDER:
        value = values[name]
        if value is None or value == "":
            continue
        ET.SubElement(description, f"{{{DC_NS}}}{name}").text = str(value)
    return ET.tostring(root, encoding="unicode")


class MetadataService:
    """Maintain descriptive and preservation records for archived files.

    Every write accepts an optional ``session``. When supplied the write joins
    the caller's transaction; otherwise it runs in its own.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        default_language: str = "pl",
        default_rights: str = "Copyright",
        now_provider: Callable[[], datetime] = utc_now,
        max_event_attempts: int = 3,
    ) -> None:
        """Initialize the service with a session factory and defaults."""
        self._session_factory = session_factory
        self._default_language = default_language
        self._default_rights = default_rights
        self._now = now_provider
        self._max_event_attempts = max_event_attempts
        self._locks = KeyedLocks()

    def create_descriptive(
        self,
        file_id: UUID | str,
        fields: DescriptiveFields | None = None,
        *,
        session: Session | None = None,
    ) -> DescriptiveRecord:
        """Create the Dublin Core record for a file, filling defaults."""
        file_key = parse_file_id(file_id)
        supplied = (fields or DescriptiveFields()).supplied()

        def handler(active: Session) -> DescriptiveRecord:
            existing = active.scalar(
                select(DescriptiveMetadata.id).where(DescriptiveMetadata.file_id == file_key)
            )
            if existing is not None:
                raise ConflictError(f"Descriptive metadata already exists for {file_key}")
            now = self._now()
            media_format = supplied.get("format") or DEFAULT_FORMAT
            record = DescriptiveMetadata(
                file_id=file_key,
                identifier=str(file_key),
                title=supplied.get("title") or DEFAULT_TITLE,
                creator=supplied.get("creator") or DEFAULT_CREATOR,
                subject=supplied.get("subject"),
                description=supplied.get("description"),
                publisher=supplied.get("publisher"),
                contributor=supplied.get("contributor"),
                date_created=now,
                type=supplied.get("type") or dublin_core_type_for(media_format),
                format=media_format,
                language=supplied.get("language") or self._default_language,
                rights=supplied.get("rights") or self._default_rights,
                source=supplied.get("source"),
                created_at=now,
                updated_at=now,
            )
            record.dc_xml = render_dublin_core_xml(record)
            active.add(record)
            active.flush()
            return DescriptiveRecord.from_model(record)

        return run_in_session(self._session_factory, session, handler)

    def update_descriptive(
        self,
        file_id: UUID | str,
        fields: DescriptiveFields,
        *,
        session: Session | None = None,
    ) -> DescriptiveRecord:
        """Overwrite only the supplied fields and rebuild the XML export."""
        file_key = parse_file_id(file_id)
        supplied = fields.supplied()

        def handler(active: Session) -> DescriptiveRecord:
            record = active.scalars(
                select(DescriptiveMetadata)
                .where(DescriptiveMetadata.file_id == file_key)
                .with_for_update()
            ).first()
            if record is None:
                raise NotFoundError(f"Metadata not found for file {file_key}")
            for name, value in supplied.items():
                setattr(record, name, value)
            record.updated_at = self._now()
            record.dc_xml = render_dublin_core_xml(record)
            active.flush()
            return DescriptiveRecord.from_model(record)

        return run_in_session(self._session_factory, session, handler)

    def create_preservation(
        self,
        file_id: UUID | str,
        digest: str,
        mime_type: str,
        *,
        agent: str = SYSTEM_AGENT,
        session: Session | None = None,
    ) -> PreservationRecord:
        """Create the preservation record seeded with a creation event."""
        file_key = parse_file_id(file_id)

        def handler(active: Session) -> PreservationRecord:
            now = self._now()
            event = self._new_event(
                file_key, PreservationEventType.CREATION, "File added to archive", agent, now
            )
            record = PreservationMetadata(
                file_id=file_key,
                object_identifier=str(file_key),
                format_name=mime_type or DEFAULT_FORMAT,
                format_registry="PRONOM",
                digest_algorithm=DIGEST_ALGORITHM,
                message_digest=digest,
                preservation_level="full",
                events=[event.to_dict()],
                created_at=now,
                updated_at=now,
            )
            active.add(record)
            active.flush()
            return PreservationRecord.from_model(record)

        return run_in_session(self._session_factory, session, handler)

    def record_event(
        self,
        file_id: UUID | str,
        event_type: PreservationEventType,
        detail: str,
        agent: str = SYSTEM_AGENT,
        *,
        session: Session | None = None,
    ) -> PreservationEvent:
        """Append one event to a file's preservation history.

        Raises:
            NotFoundError: if the file has no preservation record.
        """
        file_key = parse_file_id(file_id)
        event_kind = PreservationEventType(event_type)

        def handler(active: Session) -> PreservationEvent:
            record = self._lock_preservation(active, file_key)
            event = self._new_event(file_key, event_kind, detail, agent, self._now())
            self._append_event(active, record, event)
            return event

        if session is not None:
            return handler(session)
        return self._with_event_retry(file_key, handler)

    def update_digest(
        self,
        file_id: UUID | str,
        digest: str,
        *,
        session: Session | None = None,
    ) -> None:
        """Replace the top-level digest after new content is versioned."""
        file_key = parse_file_id(file_id)

        def handler(active: Session) -> None:
            record = self._lock_preservation(active, file_key)
            record.message_digest = digest
            record.updated_at = self._now()
            active.flush()

        run_in_session(self._session_factory, session, handler)

    def validate_fixity(
        self,
        file_id: UUID | str,
        current_digest: str,
        *,
        agent: str = SYSTEM_AGENT,
        session: Session | None = None,
    ) -> bool:
        """Compare a freshly computed digest with the stored one.

        A validation event is recorded for both outcomes. With a ``session``
        the event joins the caller's transaction.
        """
        file_key = parse_file_id(file_id)

        def handler(active: Session) -> bool:
            record = self._lock_preservation(active, file_key)
            stored = record.message_digest
            is_valid = stored.lower() == current_digest.strip().lower()
            outcome = "passed" if is_valid else "FAILED"
            now = self._now()
            event = self._new_event(
                file_key,
                PreservationEventType.VALIDATION,
                f"Fixity check {outcome} - stored: {stored}, current: {current_digest}",
                agent,
                now,
            )
            record.digest_validated_at = now
            self._append_event(active, record, event)
            return is_valid

        if session is not None:
            is_valid = handler(session)
        else:
            is_valid = self._with_event_retry(file_key, handler)
        if not is_valid:
            logger.warning("Fixity mismatch recorded for file %s", file_key)
        return is_valid

    def get_with_metadata(self, file_id: UUID | str) -> ArchivedItemView | None:
        """Return a file joined with both metadata records, or None."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            row = session.get(ArchivedFile, file_key)
            if row is None:
                return None
            return ArchivedItemView(
                file=ArchivedFileView.from_model(row),
                descriptive=(
                    DescriptiveRecord.from_model(row.descriptive) if row.descriptive else None
                ),
                preservation=(
                    PreservationRecord.from_model(row.preservation) if row.preservation else None
                ),
            )

    def get_preservation(self, file_id: UUID | str) -> PreservationRecord | None:
        """Return the preservation record for a file, if any."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            record = session.scalars(
                select(PreservationMetadata).where(PreservationMetadata.file_id == file_key)
            ).first()
            return PreservationRecord.from_model(record) if record else None

    def _with_event_retry(self, file_key: UUID, handler):
        """Run a standalone preservation write, retrying on a stale row version."""
        for attempt in range(1, self._max_event_attempts + 1):
            try:
                with self._locks.hold(file_key):
                    with session_scope(self._session_factory) as session:
                        return handler(session)
            except StaleDataError:
                logger.info(
                    "Preservation record for %s changed concurrently (attempt %s/%s)",
                    file_key,
                    attempt,
                    self._max_event_attempts,
                )
        raise ConflictError(f"Preservation record for {file_key} is under concurrent update")

    @staticmethod
    def _lock_preservation(session: Session, file_key: UUID) -> PreservationMetadata:
        record = session.scalars(
            select(PreservationMetadata)
            .where(PreservationMetadata.file_id == file_key)
            .with_for_update()
        ).first()
        if record is None:
            raise NotFoundError(f"Preservation metadata not found for file {file_key}")
        return record

    def _append_event(
        self,
        session: Session,
        record: PreservationMetadata,
        event: PreservationEvent,
    ) -> None:
        # Assign a new list so the JSON column is flagged as modified.
        record.events = [*(record.events or []), event.to_dict()]
        record.updated_at = event.occurred_at
        session.flush()

    @staticmethod
    def _new_event(
        file_key: UUID,
        event_type: PreservationEventType,
        detail: str,
        agent: str,
        occurred_at: datetime,
    ) -> PreservationEvent:
        return PreservationEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            occurred_at=occurred_at,
            detail=detail,
            agent=agent or SYSTEM_AGENT,
            object_id=str(file_key),
        )
