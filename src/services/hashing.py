"""SHA-256 content digests for fixity tracking."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from errors import StorageIOError

logger = logging.getLogger(__name__)

DIGEST_ALGORITHM = "SHA-256"
DEFAULT_CHUNK_BYTES = 1024 * 1024


def digest_bytes(buffer: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of an in-memory buffer."""
    return hashlib.sha256(buffer).hexdigest()


def digest_stream(path: str | Path, chunk_size: int = DEFAULT_CHUNK_BYTES) -> str:
    """Return the hex SHA-256 digest of a file, reading it incrementally.

    Memory use is bounded by ``chunk_size`` regardless of file size.

    Raises:
        StorageIOError: if the path cannot be opened or read.
    """
    hasher = hashlib.sha256()
    try:
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(chunk_size), b""):
                hasher.update(chunk)
    except OSError as exc:
        logger.warning("Unable to read %s for hashing: %s", path, exc)
        raise StorageIOError(f"Unable to read content at {path}", path=str(path)) from exc
    return hasher.hexdigest()


def verify(path: str | Path, expected: str, chunk_size: int = DEFAULT_CHUNK_BYTES) -> bool:
    """Return True when the file's digest equals ``expected`` (case-insensitive).

    A mismatch returns False; only I/O failures raise.
    """
    return digest_stream(path, chunk_size).lower() == expected.strip().lower()
