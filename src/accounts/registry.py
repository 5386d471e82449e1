"""Account storage with encrypted contact fields."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, ValidationError
from ledger.service import AuditAction, AuditLedger, LedgerDetails, ResourceType
from models import Account
from services.database import SessionFactory, session_scope
from services.encryption import EncryptionService
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

AccountRole = Literal["reader", "curator", "admin"]
_ROLES = ("reader", "curator", "admin")
MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class AccountView:
    """Account snapshot with the contact address decrypted."""

    id: UUID
    username: str
    email: str | None
    role: str
    is_active: bool
    last_login_at: datetime | None
    created_at: datetime


class AccountRegistry:
    """Create and look up accounts.

    ``encrypted_contacts`` is resolved once from the configured schema version.
    When set, email addresses are stored only as ciphertext plus a keyed
    lookup hash; otherwise the legacy plaintext column is used.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        encryption: EncryptionService,
        *,
        encrypted_contacts: bool,
        password_hasher: PasswordHasher | None = None,
        ledger: AuditLedger | None = None,
        now_provider: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the registry with its encryption service and schema mode."""
        self._session_factory = session_factory
        self._encryption = encryption
        self._encrypted_contacts = encrypted_contacts
        self._hasher = password_hasher or PasswordHasher()
        self._ledger = ledger
        self._now = now_provider

    @property
    def encrypted_contacts(self) -> bool:
        return self._encrypted_contacts

    def register(
        self,
        username: str,
        password: str,
        email: str | None = None,
        role: AccountRole = "reader",
        *,
        actor_id: str | None = None,
    ) -> AccountView:
        """Create an account and its ledger entry in one transaction."""
        name = (username or "").strip()
        if not name:
            raise ValidationError("Username must be non-empty.")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
            )
        if role not in _ROLES:
            raise ValidationError(f"Unknown role: {role!r}")
        normalized_email = _normalize_email(email) if email else None

        try:
            with session_scope(self._session_factory) as session:
                if session.scalar(select(Account.id).where(Account.username == name)):
                    raise ConflictError(f"Username already taken: {name}")
                if normalized_email and self._find_by_email(session, normalized_email):
                    raise ConflictError("Email address already registered.")
                now = self._now()
                account = Account(
                    id=uuid.uuid4(),
                    username=name,
                    password_hash=self._hasher.hash(password),
                    role=role,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                self._assign_email(account, normalized_email)
                session.add(account)
                session.flush()
                if self._ledger is not None:
                    self._ledger.append(
                        actor_id,
                        AuditAction.CREATE,
                        ResourceType.USER,
                        str(account.id),
                        details=LedgerDetails(
                            new_value={"username": name, "role": role},
                            reason="Account registered",
                        ),
                        session=session,
                    )
                view = self._view(account)
        except sa_exc.IntegrityError as exc:
            raise ConflictError(f"Account already exists: {name}") from exc
        logger.info("Registered account %s (%s)", view.id, view.username)
        return view

    def get(self, account_id: UUID | str) -> AccountView | None:
        """Return an account by id, or None."""
        try:
            key = account_id if isinstance(account_id, UUID) else UUID(str(account_id))
        except ValueError as exc:
            raise ValidationError(f"Invalid account id: {account_id!r}") from exc
        with session_scope(self._session_factory) as session:
            account = session.get(Account, key)
            return self._view(account) if account else None

    def get_by_username(self, username: str) -> AccountView | None:
        """Return an account by username, or None."""
        with session_scope(self._session_factory) as session:
            account = self._by_username(session, username)
            return self._view(account) if account else None

    def find_by_email(self, email: str) -> AccountView | None:
        """Look up an account by email without decrypting stored rows."""
        with session_scope(self._session_factory) as session:
            account = self._find_by_email(session, _normalize_email(email))
            return self._view(account) if account else None

    def verify_credentials(self, username: str, password: str) -> AccountView | None:
        """Return the account when the password matches, otherwise None."""
        with session_scope(self._session_factory) as session:
            account = self._by_username(session, username)
            if account is None or not account.is_active:
                return None
            try:
                self._hasher.verify(account.password_hash, password)
            except (VerifyMismatchError, VerificationError, InvalidHashError):
                return None
            if self._hasher.check_needs_rehash(account.password_hash):
                account.password_hash = self._hasher.hash(password)
                account.updated_at = self._now()
            return self._view(account)

    def mark_login(self, account_id: UUID) -> None:
        """Stamp the account's last successful login time."""
        with session_scope(self._session_factory) as session:
            account = session.get(Account, account_id)
            if account is None:
                raise NotFoundError(f"Account not found: {account_id}")
            account.last_login_at = self._now()

    def _assign_email(self, account: Account, email: str | None) -> None:
        if email is None:
            return
        if self._encrypted_contacts:
            account.email_encrypted = self._encryption.encrypt(email)
            account.email_hash = self._encryption.hash(email)
        else:
            account.email = email

    def _find_by_email(self, session: Session, email: str) -> Account | None:
        if self._encrypted_contacts:
            condition = Account.email_hash == self._encryption.hash(email)
        else:
            condition = Account.email == email
        return session.scalars(select(Account).where(condition)).first()

    @staticmethod
    def _by_username(session: Session, username: str) -> Account | None:
        return session.scalars(
            select(Account).where(Account.username == (username or "").strip())
        ).first()

    def _view(self, account: Account) -> AccountView:
        if self._encrypted_contacts and account.email_encrypted:
            email = self._encryption.decrypt(account.email_encrypted)
        else:
            email = account.email
        return AccountView(
            id=account.id,
            username=account.username,
            email=email,
            role=account.role,
            is_active=account.is_active,
            last_login_at=ensure_utc(account.last_login_at),
            created_at=ensure_utc(account.created_at),
        )


def _normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if "@" not in value:
        raise ValidationError("Email address is malformed.")
    return value
