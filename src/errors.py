"""Error taxonomy for archive operations.

Every error carries a stable machine-readable ``code``, a human-readable
message and an ``ErrorCategory`` so callers at the outer surface can map them
to responses without string matching.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Mapping

VALIDATION_ERROR = "VALIDATION_ERROR"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
INTEGRITY_ERROR = "INTEGRITY_ERROR"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
IO_ERROR = "IO_ERROR"
AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorCategory(str, Enum):
    """High-level error categories shared across component boundaries."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    POLICY = "policy"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


class ArchiveError(Exception):
    """Base class for all archive errors."""

    code = INTERNAL_ERROR
    category = ErrorCategory.INTERNAL

    def __init__(self, message: str, details: Mapping[str, Any] | None = None) -> None:
        """Initialize the error with a message and optional structured details."""
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a plain mapping for outer surfaces."""
        payload: dict[str, Any] = {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ArchiveError):
    """Raised when caller input is malformed or out of range."""

    code = VALIDATION_ERROR
    category = ErrorCategory.VALIDATION


class NotFoundError(ArchiveError):
    """Raised when a referenced record does not exist."""

    code = NOT_FOUND
    category = ErrorCategory.NOT_FOUND


class ConflictError(ArchiveError):
    """Raised on uniqueness or concurrent-modification conflicts."""

    code = CONFLICT
    category = ErrorCategory.CONFLICT


class IntegrityError(ArchiveError):
    """Raised when ciphertext or stored content fails authentication."""

    code = INTEGRITY_ERROR
    category = ErrorCategory.POLICY


class LockoutError(ArchiveError):
    """Raised when an identity is locked out by brute-force protection."""

    code = ACCOUNT_LOCKED
    category = ErrorCategory.POLICY

    def __init__(self, identity: str, unlocks_at: datetime) -> None:
        """Initialize the error with the identity and unlock time."""
        super().__init__(
            "Account is temporarily locked. Try again later.",
            {"identity": identity, "unlocks_at": unlocks_at.isoformat()},
        )
        self.identity = identity
        self.unlocks_at = unlocks_at


class RateLimitError(ArchiveError):
    """Raised when a caller exceeds its request window."""

    code = RATE_LIMIT_EXCEEDED
    category = ErrorCategory.POLICY

    def __init__(self, identifier: str, retry_after: int) -> None:
        """Initialize the error with the retry delay in seconds."""
        super().__init__(
            "Too many requests. Please try again later.",
            {"identifier": identifier, "retry_after": retry_after},
        )
        self.identifier = identifier
        self.retry_after = retry_after


class ConfigurationError(ArchiveError):
    """Raised at startup when required configuration is missing or invalid."""

    code = CONFIGURATION_ERROR
    category = ErrorCategory.DEPENDENCY


class StorageIOError(ArchiveError):
    """Raised when stored content cannot be read."""

    code = IO_ERROR
    category = ErrorCategory.DEPENDENCY

    def __init__(self, message: str, path: str | None = None) -> None:
        """Initialize the error with the offending path."""
        super().__init__(message, {"path": path} if path else None)
        self.path = path


class AuthenticationError(ArchiveError):
    """Raised when supplied credentials are rejected."""

    code = AUTHENTICATION_FAILED
    category = ErrorCategory.POLICY


class InternalError(ArchiveError):
    """Raised when an internal invariant is violated."""
