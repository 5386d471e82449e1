"""Credential checks gated by rate limiting and brute-force lockout."""

from __future__ import annotations

import logging

from accounts.lockout import LockoutService
from accounts.rate_limiter import InMemoryRateLimiter
from accounts.registry import AccountRegistry, AccountView
from errors import AuthenticationError, LockoutError
from ledger.service import (
    AuditAction,
    AuditLedger,
    ClientContext,
    LedgerDetails,
    ResourceType,
)

logger = logging.getLogger(__name__)


class Authenticator:
    """Authenticate a username and password.

    Order of checks: request rate for the client, lockout state of the
    username, then the password itself.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        lockout: LockoutService,
        rate_limiter: InMemoryRateLimiter,
        ledger: AuditLedger | None = None,
    ) -> None:
        self._registry = registry
        self._lockout = lockout
        self._rate_limiter = rate_limiter
        self._ledger = ledger

    def authenticate(
        self,
        username: str,
        password: str,
        *,
        client_id: str,
        client: ClientContext | None = None,
    ) -> AccountView:
        """Return the account on success.

        Raises:
            RateLimitError: if the client exceeded its request budget.
            LockoutError: if the username is locked, or this failure locked it.
            AuthenticationError: if the credentials are wrong.
        """
        self._rate_limiter.check(client_id)
        self._lockout.ensure_not_locked(username)

        account = self._registry.verify_credentials(username, password)
        if account is None:
            info = self._lockout.record_failed_attempt(username)
            self._record(None, username, client, success=False, error="Invalid credentials")
            if info.is_locked and info.unlocks_at is not None:
                raise LockoutError(info.identity, info.unlocks_at)
            logger.info("Failed login for %s (%s attempts)", username, info.failed_attempts)
            raise AuthenticationError("Invalid username or password.")

        self._lockout.clear_failed_attempts(username)
        self._registry.mark_login(account.id)
        self._record(str(account.id), str(account.id), client, success=True, error=None)
        return account

    def _record(
        self,
        actor_id: str | None,
        resource_id: str,
        client: ClientContext | None,
        *,
        success: bool,
        error: str | None,
    ) -> None:
        if self._ledger is None:
            return
        self._ledger.record(
            actor_id,
            AuditAction.READ,
            ResourceType.USER,
            resource_id,
            details=LedgerDetails.for_client(
                client, reason="Login attempt", success=success, error_message=error
            ),
        )
