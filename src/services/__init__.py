"""Shared infrastructure services for the archive core."""

from services.database import get_session_factory, run_in_session, session_scope
from services.encryption import EncryptionService
from services.hashing import digest_bytes, digest_stream, verify
from services.locks import KeyedLocks

__all__ = [
    "get_session_factory",
    "run_in_session",
    "session_scope",
    "EncryptionService",
    "digest_bytes",
    "digest_stream",
    "verify",
    "KeyedLocks",
]
