"""Append-only provenance ledger.

Two write policies are offered and each call site picks one explicitly:

* ``append`` is transactional. Passed a session it joins the caller's atomic
  unit; errors propagate and roll the unit back.
* ``record`` is best-effort. It commits in its own session and a failure is
  logged and swallowed so the primary operation is unaffected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from pydantic_core import to_jsonable_python
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ValidationError
from models import AuditLogEntry
from services.database import SessionFactory, run_in_session, session_scope
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


class AuditAction(str, Enum):
    """Ledger action vocabulary."""

    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DOWNLOAD = "DOWNLOAD"
    SHARE = "SHARE"
    VALIDATE = "VALIDATE"


class ResourceType(str, Enum):
    """Kinds of resources the ledger describes."""

    FILE = "file"
    METADATA = "metadata"
    USER = "user"
    VERSION = "version"


@dataclass(frozen=True)
class ClientContext:
    """Network origin of the request that triggered a ledger entry."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class LedgerDetails:
    """Optional payload attached to a ledger entry."""

    previous_value: Any = None
    new_value: Any = None
    reason: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    success: bool = True
    error_message: str | None = None

    @classmethod
    def for_client(cls, client: ClientContext | None, **values: Any) -> "LedgerDetails":
        """Build details stamped with the client's network origin."""
        if client is not None:
            values.setdefault("ip_address", client.ip_address)
            values.setdefault("user_agent", client.user_agent)
        return cls(**values)


@dataclass(frozen=True)
class LedgerEntry:
    """Read-only snapshot of a persisted ledger entry."""

    id: int
    actor_id: str | None
    action: AuditAction
    resource_type: ResourceType
    resource_id: str
    previous_value: Any
    new_value: Any
    reason: str | None
    ip_address: str | None
    user_agent: str | None
    success: bool
    error_message: str | None
    created_at: datetime

    @classmethod
    def from_model(cls, row: AuditLogEntry) -> "LedgerEntry":
        return cls(
            id=row.id,
            actor_id=row.actor_id,
            action=AuditAction(row.action),
            resource_type=ResourceType(row.resource_type),
            resource_id=row.resource_id,
            previous_value=row.previous_value,
            new_value=row.new_value,
            reason=row.reason,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            success=row.success,
            error_message=row.error_message,
            created_at=ensure_utc(row.created_at),
        )


@dataclass(frozen=True)
class LedgerPage:
    """One page of ledger entries plus the unpaginated total."""

    entries: list[LedgerEntry]
    total: int


@dataclass(frozen=True)
class LedgerSearchCriteria:
    """Filters for ledger search; unset fields do not constrain results."""

    action: AuditAction | None = None
    resource_type: ResourceType | None = None
    actor_id: str | None = None
    resource_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


class AuditLedger:
    """Write and query immutable provenance entries."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the ledger with a session factory and clock."""
        self._session_factory = session_factory
        self._now = now_provider

    def append(
        self,
        actor_id: str | None,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: str,
        *,
        details: LedgerDetails | None = None,
        session: Session | None = None,
    ) -> LedgerEntry:
        """Insert one entry, propagating any failure to the caller."""

        def handler(active: Session) -> LedgerEntry:
            row = self._build_row(actor_id, action, resource_type, resource_id, details)
            active.add(row)
            active.flush()
            return LedgerEntry.from_model(row)

        return run_in_session(self._session_factory, session, handler)

    def record(
        self,
        actor_id: str | None,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: str,
        *,
        details: LedgerDetails | None = None,
    ) -> LedgerEntry | None:
        """Insert one entry in its own transaction, logging instead of raising."""
        try:
            return self.append(actor_id, action, resource_type, resource_id, details=details)
        except Exception:
            logger.exception(
                "Ledger write failed: action=%s resource=%s/%s",
                getattr(action, "value", action),
                getattr(resource_type, "value", resource_type),
                resource_id,
            )
            return None

    def query_by_resource(
        self,
        resource_id: str,
        limit: int = 100,
        offset: int = 0,
        *,
        action: AuditAction | None = None,
    ) -> LedgerPage:
        """Return entries for one resource, newest first."""
        return self.search(
            LedgerSearchCriteria(resource_id=str(resource_id), action=action), limit, offset
        )

    def query_by_actor(self, actor_id: str, limit: int = 100, offset: int = 0) -> LedgerPage:
        """Return entries written on behalf of one actor, newest first."""
        return self.search(LedgerSearchCriteria(actor_id=actor_id), limit, offset)

    def query_recent(self, limit: int = 50) -> list[LedgerEntry]:
        """Return the most recent entries across all resources."""
        return self.search(LedgerSearchCriteria(), limit, 0).entries

    def search(
        self,
        criteria: LedgerSearchCriteria,
        limit: int = 100,
        offset: int = 0,
    ) -> LedgerPage:
        """Return a filtered, paginated page of entries ordered newest first."""
        _validate_page(limit, offset)
        filters = _criteria_filters(criteria)
        with session_scope(self._session_factory) as session:
            total = session.scalar(
                select(func.count()).select_from(AuditLogEntry).where(*filters)
            )
            rows = session.scalars(
                select(AuditLogEntry)
                .where(*filters)
                .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            entries = [LedgerEntry.from_model(row) for row in rows]
        return LedgerPage(entries=entries, total=int(total or 0))

    def _build_row(
        self,
        actor_id: str | None,
        action: AuditAction,
        resource_type: ResourceType,
        resource_id: str,
        details: LedgerDetails | None,
    ) -> AuditLogEntry:
        details = details or LedgerDetails()
        if not str(resource_id).strip():
            raise ValidationError("Ledger entries require a resource id.")
        return AuditLogEntry(
            actor_id=str(actor_id) if actor_id is not None else None,
            action=AuditAction(action).value,
            resource_type=ResourceType(resource_type).value,
            resource_id=str(resource_id),
            previous_value=_jsonable(details.previous_value),
            new_value=_jsonable(details.new_value),
            reason=details.reason,
            ip_address=details.ip_address,
            user_agent=details.user_agent,
            success=details.success,
            error_message=details.error_message,
            created_at=self._now(),
        )


def _jsonable(value: Any) -> Any:
    if value is None:
        return None
    return to_jsonable_python(value)


def _validate_page(limit: int, offset: int) -> None:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
    if offset < 0:
        raise ValidationError("offset must be >= 0.")


def _criteria_filters(criteria: LedgerSearchCriteria) -> list:
    filters = []
    if criteria.action is not None:
        filters.append(AuditLogEntry.action == AuditAction(criteria.action).value)
    if criteria.resource_type is not None:
        filters.append(
            AuditLogEntry.resource_type == ResourceType(criteria.resource_type).value
        )
    if criteria.actor_id is not None:
        filters.append(AuditLogEntry.actor_id == criteria.actor_id)
    if criteria.resource_id is not None:
        filters.append(AuditLogEntry.resource_id == criteria.resource_id)
    if criteria.date_from is not None:
        filters.append(AuditLogEntry.created_at >= ensure_utc(criteria.date_from))
    if criteria.date_to is not None:
        filters.append(AuditLogEntry.created_at <= ensure_utc(criteria.date_to))
    return filters
