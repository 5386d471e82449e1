"""Archive content service: registration, versioning, search and soft delete."""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import Integer, case, func, literal, or_, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from archive.metadata import DescriptiveFields, MetadataService
from archive.records import (
    ACCESS_LEVELS,
    ArchivedFileView,
    ArchivedItemView,
    DescriptiveRecord,
    FileVersionView,
    PreservationEventType,
    PreservationRecord,
    media_category_for,
    parse_file_id,
)
from errors import ConflictError, NotFoundError, StorageIOError, ValidationError
from ledger.service import (
    AuditAction,
    AuditLedger,
    ClientContext,
    LedgerDetails,
    ResourceType,
)
from models import ArchivedFile, DescriptiveMetadata, FileVersion
from services.database import SessionFactory, session_scope
from services.locks import KeyedLocks
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

AccessLevel = Literal["public", "internal", "restricted", "confidential"]
ModelT = TypeVar("ModelT", bound=BaseModel)

_DIGEST_PATTERN = re.compile(r"^[0-9a-f]+$")
_TERM_PATTERN = re.compile(r"\w+", re.UNICODE)
_SORT_KEYS = ("relevance", "date", "title")
_SORT_DIRECTIONS = ("asc", "desc")
MAX_SEARCH_LIMIT = 200


class RegistrationHints(BaseModel):
    """Optional descriptive hints supplied when a file is registered."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    title: str | None = Field(default=None, max_length=500)
    description: str | None = None
    creator: str | None = Field(default=None, max_length=500)
    subject: str | None = None
    publisher: str | None = None
    language: str | None = Field(default=None, max_length=20)
    rights: str | None = None
    source: str | None = None
    access_level: AccessLevel = "public"
    rating: float = Field(default=0.0, ge=0.0, le=5.0)


class FileMetadataUpdate(BaseModel):
    """Partial update of a file's catalog fields; ``None`` leaves a field as is."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    description: str | None = None
    access_level: AccessLevel | None = None
    rating: float | None = Field(default=None, ge=0.0, le=5.0)
    title: str | None = Field(default=None, max_length=500)
    creator: str | None = Field(default=None, max_length=500)
    subject: str | None = None
    publisher: str | None = None
    language: str | None = Field(default=None, max_length=20)
    rights: str | None = None
    source: str | None = None

    def descriptive_fields(self) -> DescriptiveFields | None:
        """Return the Dublin Core portion of the update, if any."""
        values = self.model_dump(
            include={
                "title",
                "creator",
                "subject",
                "description",
                "publisher",
                "language",
                "rights",
                "source",
            },
            exclude_none=True,
        )
        return DescriptiveFields(**values) if values else None


class SearchQuery(BaseModel):
    """Search request; unknown sort keys fall back to relevance, descending."""

    model_config = ConfigDict(str_strip_whitespace=True)

    q: str = ""
    category: str | None = None
    creator: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    access_level: AccessLevel | None = "public"
    limit: int = Field(default=50, ge=1, le=MAX_SEARCH_LIMIT)
    offset: int = Field(default=0, ge=0)
    order_by: str = "relevance"
    order_dir: str = "desc"

    @field_validator("order_by", mode="before")
    @classmethod
    def normalize_order_by(cls, value: Any) -> str:
        """Fall back to relevance ordering for unknown sort keys."""
        normalized = str(value or "").strip().lower()
        return normalized if normalized in _SORT_KEYS else "relevance"

    @field_validator("order_dir", mode="before")
    @classmethod
    def normalize_order_dir(cls, value: Any) -> str:
        """Fall back to descending order for unknown directions."""
        normalized = str(value or "").strip().lower()
        return normalized if normalized in _SORT_DIRECTIONS else "desc"


@dataclass(frozen=True)
class SearchHit:
    """One search result with its relevance score."""

    file: ArchivedFileView
    relevance: int


@dataclass(frozen=True)
class SearchResult:
    """A page of search results."""

    files: list[SearchHit]
    total: int
    limit: int
    offset: int
    elapsed_ms: float


@dataclass(frozen=True)
class FileStatistics:
    """Aggregate counts over live (non-deleted) files."""

    total_files: int
    categories: int
    total_size: int
    avg_rating: float
    contributors: int


class ArchiveContentService:
    """Register, version, search and soft-delete archived content.

    Multi-step writes run inside one transaction: the file row, its metadata
    and the ledger entry describing the change commit or roll back together.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        metadata: MetadataService,
        ledger: AuditLedger,
        *,
        now_provider: Callable[[], datetime] = utc_now,
        max_version_attempts: int = 3,
        file_locks: KeyedLocks | None = None,
    ) -> None:
        """Initialize the service with its collaborators."""
        self._session_factory = session_factory
        self._metadata = metadata
        self._ledger = ledger
        self._now = now_provider
        self._max_version_attempts = max_version_attempts
        self._file_locks = file_locks if file_locks is not None else KeyedLocks()

    @property
    def file_locks(self) -> KeyedLocks:
        """Per-file locks serializing version creation."""
        return self._file_locks

    def register_file(
        self,
        path: str | Path,
        digest: str,
        mime_type: str,
        owner_id: str | None,
        hints: RegistrationHints | Mapping[str, Any] | None = None,
        *,
        client: ClientContext | None = None,
    ) -> ArchivedFileView:
        """Register stored content with its metadata and provenance.

        Raises:
            StorageIOError: if the path cannot be read.
            ValidationError: if the digest or hints are malformed.
            ConflictError: if the digest is already registered.
        """
        source = Path(path)
        size = _stat_size(source)
        file_hash = _normalize_digest(digest)
        options = _coerce(RegistrationHints, hints) if hints is not None else RegistrationHints()
        mime = (mime_type or "").strip() or "application/octet-stream"

        try:
            with session_scope(self._session_factory) as session:
                if _digest_owner(session, file_hash) is not None:
                    raise ConflictError(
                        "Content with this digest is already archived.", {"digest": file_hash}
                    )
                now = self._now()
                filename = options.title or source.name
                row = ArchivedFile(
                    id=uuid.uuid4(),
                    filename=filename,
                    file_path=str(source),
                    file_hash=file_hash,
                    mime_type=mime,
                    file_size=size,
                    category=media_category_for(mime),
                    owner_id=owner_id,
                    description=options.description,
                    current_version=1,
                    access_level=options.access_level,
                    rating=options.rating,
                    is_accessible=True,
                    is_deleted=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                session.add(
                    FileVersion(
                        file_id=row.id,
                        version_number=1,
                        file_hash=file_hash,
                        file_path=str(source),
                        file_size=size,
                        created_by=owner_id,
                        change_summary="Initial registration",
                        created_at=now,
                    )
                )
                self._metadata.create_descriptive(
                    row.id,
                    DescriptiveFields(
                        title=filename,
                        creator=options.creator,
                        subject=options.subject,
                        description=options.description,
                        publisher=options.publisher,
                        language=options.language,
                        rights=options.rights,
                        source=options.source,
                        format=mime,
                    ),
                    session=session,
                )
                self._metadata.create_preservation(row.id, file_hash, mime, session=session)
                view = ArchivedFileView.from_model(row)
                self._ledger.append(
                    owner_id,
                    AuditAction.CREATE,
                    ResourceType.FILE,
                    str(row.id),
                    details=LedgerDetails.for_client(
                        client, new_value=view, reason="File registered in archive"
                    ),
                    session=session,
                )
        except sa_exc.IntegrityError as exc:
            raise ConflictError(
                "Content with this digest is already archived.", {"digest": file_hash}
            ) from exc

        logger.info("Registered file %s (%s, %s bytes)", view.id, view.filename, view.file_size)
        return view

    def create_version(
        self,
        file_id: UUID | str,
        new_path: str | Path,
        new_digest: str,
        actor_id: str | None,
        summary: str | None = None,
        *,
        client: ClientContext | None = None,
    ) -> FileVersionView:
        """Record new content for a file as the next version.

        Version numbers for one file are assigned strictly sequentially even
        under concurrent callers.

        Raises:
            NotFoundError: if the file does not exist.
            ConflictError: if the digest belongs to other content or the
                version could not be allocated.
        """
        file_key = parse_file_id(file_id)
        source = Path(new_path)
        size = _stat_size(source)
        file_hash = _normalize_digest(new_digest)

        for attempt in range(1, self._max_version_attempts + 1):
            try:
                with self._file_locks.hold(file_key):
                    with session_scope(self._session_factory) as session:
                        version = self._append_version(
                            session, file_key, source, size, file_hash, actor_id, summary, client
                        )
                logger.info("Created version %s of file %s", version.version_number, file_key)
                return version
            except (StaleDataError, sa_exc.IntegrityError) as exc:
                if isinstance(exc, sa_exc.IntegrityError) and self._digest_taken(
                    file_hash, file_key
                ):
                    raise ConflictError(
                        "Content with this digest is already archived.", {"digest": file_hash}
                    ) from exc
                logger.info(
                    "Version allocation for %s collided (attempt %s/%s)",
                    file_key,
                    attempt,
                    self._max_version_attempts,
                )
        raise ConflictError(f"Could not allocate a new version for file {file_key}")

    def get_versions(self, file_id: UUID | str) -> list[FileVersionView]:
        """Return the version history of a file, newest first."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(FileVersion)
                .where(FileVersion.file_id == file_key)
                .order_by(FileVersion.version_number.desc())
            ).all()
            return [FileVersionView.from_model(row) for row in rows]

    def get_file(
        self,
        file_id: UUID | str,
        actor_id: str | None = None,
        *,
        client: ClientContext | None = None,
    ) -> ArchivedItemView | None:
        """Return a file with its metadata, recording the read for known actors."""
        item = self._metadata.get_with_metadata(file_id)
        if item is not None and actor_id is not None:
            self._ledger.record(
                actor_id,
                AuditAction.READ,
                ResourceType.FILE,
                str(item.file.id),
                details=LedgerDetails.for_client(client),
            )
        return item

    def update_file_metadata(
        self,
        file_id: UUID | str,
        updates: FileMetadataUpdate | Mapping[str, Any],
        actor_id: str | None,
        *,
        client: ClientContext | None = None,
    ) -> ArchivedItemView:
        """Apply a partial catalog update together with its ledger entry."""
        file_key = parse_file_id(file_id)
        changes = _coerce(FileMetadataUpdate, updates)

        with session_scope(self._session_factory) as session:
            row = _lock_file(session, file_key)
            previous = _catalog_snapshot(row)
            if changes.description is not None:
                row.description = changes.description
            if changes.access_level is not None:
                row.access_level = changes.access_level
            if changes.rating is not None:
                row.rating = changes.rating
            if changes.title is not None:
                row.filename = changes.title
            row.updated_at = self._now()
            session.flush()

            descriptive = changes.descriptive_fields()
            if descriptive is not None:
                self._metadata.update_descriptive(file_key, descriptive, session=session)

            self._ledger.append(
                actor_id,
                AuditAction.UPDATE,
                ResourceType.FILE,
                str(file_key),
                details=LedgerDetails.for_client(
                    client,
                    previous_value=previous,
                    new_value=changes.model_dump(exclude_none=True),
                    reason="Metadata updated",
                ),
                session=session,
            )
            session.refresh(row)
            item = ArchivedItemView(
                file=ArchivedFileView.from_model(row),
                descriptive=(
                    DescriptiveRecord.from_model(row.descriptive) if row.descriptive else None
                ),
                preservation=(
                    PreservationRecord.from_model(row.preservation) if row.preservation else None
                ),
            )
        return item

    def search_files(self, query: SearchQuery | Mapping[str, Any] | None = None) -> SearchResult:
        """Search live files by term relevance combined with catalog filters."""
        request = _coerce(SearchQuery, query) if query is not None else SearchQuery()
        started = time.perf_counter()

        terms = _search_terms(request.q)
        name_col = func.lower(ArchivedFile.filename)
        title_col = func.lower(func.coalesce(DescriptiveMetadata.title, ""))
        desc_col = func.lower(func.coalesce(ArchivedFile.description, ""))

        relevance = literal(0, type_=Integer)
        filters = [ArchivedFile.is_deleted.is_(False)]
        for term in terms:
            in_name = name_col.contains(term, autoescape=True)
            in_title = title_col.contains(term, autoescape=True)
            in_desc = desc_col.contains(term, autoescape=True)
            relevance = (
                relevance
                + case((in_name, 3), else_=0)
                + case((in_title, 2), else_=0)
                + case((in_desc, 1), else_=0)
            )
            filters.append(or_(in_name, in_title, in_desc))
        if request.category:
            filters.append(ArchivedFile.category == request.category.lower())
        if request.creator:
            filters.append(
                func.lower(DescriptiveMetadata.creator).contains(
                    request.creator.lower(), autoescape=True
                )
            )
        if request.date_from is not None:
            filters.append(ArchivedFile.created_at >= ensure_utc(request.date_from))
        if request.date_to is not None:
            filters.append(ArchivedFile.created_at <= ensure_utc(request.date_to))
        if request.access_level is not None:
            filters.append(ArchivedFile.access_level == request.access_level)

        score = relevance.label("relevance")
        join_on = DescriptiveMetadata.file_id == ArchivedFile.id
        statement = (
            select(ArchivedFile, score)
            .outerjoin(DescriptiveMetadata, join_on)
            .where(*filters)
            .order_by(*_search_ordering(request, score))
            .limit(request.limit)
            .offset(request.offset)
        )
        count_statement = (
            select(func.count(ArchivedFile.id))
            .select_from(ArchivedFile)
            .outerjoin(DescriptiveMetadata, join_on)
            .where(*filters)
        )

        with session_scope(self._session_factory) as session:
            total = session.scalar(count_statement) or 0
            hits = [
                SearchHit(file=ArchivedFileView.from_model(row), relevance=int(rank or 0))
                for row, rank in session.execute(statement).all()
            ]

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug("Search q=%r returned %s/%s in %.1fms", request.q, len(hits), total, elapsed_ms)
        return SearchResult(
            files=hits,
            total=int(total),
            limit=request.limit,
            offset=request.offset,
            elapsed_ms=elapsed_ms,
        )

    def delete_file(
        self,
        file_id: UUID | str,
        actor_id: str | None,
        reason: str | None = None,
        *,
        client: ClientContext | None = None,
    ) -> ArchivedFileView:
        """Soft-delete a file; content and metadata are retained."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            row = _lock_file(session, file_key)
            if row.is_deleted:
                raise ConflictError(f"File {file_key} is already deleted")
            previous = {"is_deleted": row.is_deleted, "is_accessible": row.is_accessible}
            row.accessible_before_delete = row.is_accessible
            row.is_deleted = True
            row.deleted_at = self._now()
            row.is_accessible = False
            session.flush()
            self._ledger.append(
                actor_id,
                AuditAction.DELETE,
                ResourceType.FILE,
                str(file_key),
                details=LedgerDetails.for_client(
                    client,
                    previous_value=previous,
                    new_value={"is_deleted": True, "is_accessible": False},
                    reason=reason or "File moved to archive",
                ),
                session=session,
            )
            view = ArchivedFileView.from_model(row)
        logger.info("Soft-deleted file %s", file_key)
        return view

    def restore_file(
        self,
        file_id: UUID | str,
        actor_id: str | None = None,
        reason: str | None = None,
        *,
        client: ClientContext | None = None,
    ) -> ArchivedFileView:
        """Undo a soft delete, restoring the pre-delete accessibility."""
        file_key = parse_file_id(file_id)
        with session_scope(self._session_factory) as session:
            row = _lock_file(session, file_key)
            if not row.is_deleted:
                raise ConflictError(f"File {file_key} is not deleted")
            accessible = (
                True if row.accessible_before_delete is None else row.accessible_before_delete
            )
            row.is_deleted = False
            row.deleted_at = None
            row.is_accessible = accessible
            row.accessible_before_delete = None
            session.flush()
            self._ledger.append(
                actor_id,
                AuditAction.UPDATE,
                ResourceType.FILE,
                str(file_key),
                details=LedgerDetails.for_client(
                    client,
                    previous_value={"is_deleted": True, "is_accessible": False},
                    new_value={"is_deleted": False, "is_accessible": accessible},
                    reason=reason or "File restored from archive",
                ),
                session=session,
            )
            view = ArchivedFileView.from_model(row)
        logger.info("Restored file %s", file_key)
        return view

    def get_recent_files(self, limit: int = 20) -> list[ArchivedFileView]:
        """Return the most recently registered live files."""
        _validate_limit(limit)
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ArchivedFile)
                .where(ArchivedFile.is_deleted.is_(False))
                .order_by(ArchivedFile.created_at.desc(), ArchivedFile.id)
                .limit(limit)
            ).all()
            return [ArchivedFileView.from_model(row) for row in rows]

    def get_files_by_access_level(
        self, access_level: str, limit: int = 50
    ) -> list[ArchivedFileView]:
        """Return live files at one access level, newest first."""
        if access_level not in ACCESS_LEVELS:
            raise ValidationError(f"Unknown access level: {access_level!r}")
        _validate_limit(limit)
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ArchivedFile)
                .where(
                    ArchivedFile.is_deleted.is_(False),
                    ArchivedFile.access_level == access_level,
                )
                .order_by(ArchivedFile.created_at.desc(), ArchivedFile.id)
                .limit(limit)
            ).all()
            return [ArchivedFileView.from_model(row) for row in rows]

    def get_file_statistics(self) -> FileStatistics:
        """Return aggregate counts over live files."""
        with session_scope(self._session_factory) as session:
            total, categories, size, rating, contributors = session.execute(
                select(
                    func.count(ArchivedFile.id),
                    func.count(func.distinct(ArchivedFile.category)),
                    func.coalesce(func.sum(ArchivedFile.file_size), 0),
                    func.coalesce(func.avg(ArchivedFile.rating), 0.0),
                    func.count(func.distinct(ArchivedFile.owner_id)),
                ).where(ArchivedFile.is_deleted.is_(False))
            ).one()
        return FileStatistics(
            total_files=int(total),
            categories=int(categories),
            total_size=int(size),
            avg_rating=float(rating),
            contributors=int(contributors),
        )

    def _append_version(
        self,
        session: Session,
        file_key: UUID,
        source: Path,
        size: int,
        file_hash: str,
        actor_id: str | None,
        summary: str | None,
        client: ClientContext | None,
    ) -> FileVersionView:
        row = _lock_file(session, file_key)
        if row.is_deleted:
            raise ConflictError(f"File {file_key} is deleted; restore it before versioning")
        if row.file_hash == file_hash:
            raise ConflictError("New content is identical to the current version.")
        if _digest_owner(session, file_hash) not in (None, file_key):
            raise ConflictError(
                "Content with this digest is already archived.", {"digest": file_hash}
            )

        now = self._now()
        previous_version = row.current_version
        next_version = previous_version + 1
        previous_hash = row.file_hash
        previous_size = row.file_size
        version = FileVersion(
            file_id=file_key,
            version_number=next_version,
            file_hash=file_hash,
            file_path=str(source),
            file_size=size,
            created_by=actor_id,
            change_summary=summary,
            change_details={
                "previous_hash": previous_hash,
                "previous_size": previous_size,
                "size_delta": size - previous_size,
            },
            created_at=now,
        )
        session.add(version)
        row.file_path = str(source)
        row.file_hash = file_hash
        row.file_size = size
        row.current_version = next_version
        row.updated_at = now
        session.flush()

        self._metadata.record_event(
            file_key,
            PreservationEventType.MODIFICATION,
            f"Version {next_version} created: {summary or 'No description'}",
            actor_id or "system",
            session=session,
        )
        self._metadata.update_digest(file_key, file_hash, session=session)
        self._ledger.append(
            actor_id,
            AuditAction.UPDATE,
            ResourceType.FILE,
            str(file_key),
            details=LedgerDetails.for_client(
                client,
                previous_value={"version": previous_version, "file_hash": previous_hash},
                new_value={"version": next_version, "file_hash": file_hash},
                reason=summary or "New version created",
            ),
            session=session,
        )
        return FileVersionView.from_model(version)

    def _digest_taken(self, file_hash: str, file_key: UUID) -> bool:
        with session_scope(self._session_factory) as session:
            owner = _digest_owner(session, file_hash)
        return owner is not None and owner != file_key


def _coerce(model: type[ModelT], value: ModelT | Mapping[str, Any]) -> ModelT:
    """Validate caller input into a request model."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {model.__name__}: {exc.error_count()} error(s)",
            {"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def _stat_size(path: Path) -> int:
    try:
        stat = path.stat()
    except OSError as exc:
        raise StorageIOError(f"Unable to stat content at {path}", path=str(path)) from exc
    if not path.is_file():
        raise StorageIOError(f"Content at {path} is not a regular file", path=str(path))
    return stat.st_size


def _normalize_digest(digest: str) -> str:
    value = (digest or "").strip().lower()
    if not value or len(value) > 128 or not _DIGEST_PATTERN.match(value):
        raise ValidationError("Digest must be a non-empty hex string.", {"digest": digest})
    return value


def _digest_owner(session: Session, file_hash: str) -> UUID | None:
    return session.scalar(select(ArchivedFile.id).where(ArchivedFile.file_hash == file_hash))


def _lock_file(session: Session, file_key: UUID) -> ArchivedFile:
    row = session.scalars(
        select(ArchivedFile).where(ArchivedFile.id == file_key).with_for_update()
    ).first()
    if row is None:
        raise NotFoundError(f"File not found: {file_key}")
    return row


def _catalog_snapshot(row: ArchivedFile) -> dict[str, Any]:
    return {
        "filename": row.filename,
        "description": row.description,
        "access_level": row.access_level,
        "rating": row.rating,
    }


def _search_terms(text: str) -> list[str]:
    seen: list[str] = []
    for term in _TERM_PATTERN.findall((text or "").lower()):
        if term not in seen:
            seen.append(term)
    return seen


def _search_ordering(request: SearchQuery, score) -> list:
    descending = request.order_dir == "desc"
    if request.order_by == "date":
        primary = ArchivedFile.created_at
    elif request.order_by == "title":
        primary = func.lower(ArchivedFile.filename)
    else:
        primary = score
    ordering = [primary.desc() if descending else primary.asc()]
    if request.order_by != "date":
        ordering.append(ArchivedFile.created_at.desc())
    ordering.append(ArchivedFile.id)
    return ordering


def _validate_limit(limit: int) -> None:
    if limit < 1 or limit > MAX_SEARCH_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}.")
