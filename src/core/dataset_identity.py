"""Dataset identity helpers.

This module computes and validates the SHA-256 digests used as
dataset identifiers and per-file content hashes.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, BinaryIO, Iterable

from core.constants import DIGEST_READ_CHUNK_SIZE, ENCODED_DIGEST_LENGTH, HASH_ALGORITHM
from core.errors import InvalidDigestError

_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")


def digest(data: bytes | None = None) -> Any:
    """Return a hash object, optionally fed with ``data``.

    Args:
        data: Optional initial bytes.

    Returns:
        A ``hashlib`` SHA-256 object.
    """
    hash_builder = hashlib.new(HASH_ALGORITHM)
    if data is not None:
        hash_builder.update(data)
    return hash_builder


def string_digest(value: Any) -> str:
    """Return the hex encoding of a hash object, or of the digest of bytes/str.

    Args:
        value: Hash object, ``bytes`` or ``str`` (encoded as UTF-8).

    Returns:
        64-character lowercase hex digest.
    """
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = digest(bytes(value))
    return str(value.hexdigest())


def validate_encoded_digest(value: str) -> str:
    """Validate a full dataset digest.

    Args:
        value: Candidate digest.

    Returns:
        The digest unchanged.

    Raises:
        InvalidDigestError: Unless ``value`` is exactly 64 lowercase hex characters.
    """
    if len(value) != ENCODED_DIGEST_LENGTH:
        raise InvalidDigestError(
            f"'{value}' does not look like a valid SHA-256 hex digest: expected "
            f"{ENCODED_DIGEST_LENGTH} characters but got {len(value)}."
        )
    if not _HEX_PATTERN.match(value):
        raise InvalidDigestError(
            f"'{value}' does not look like a valid SHA-256 hex digest: "
            "expected only characters in 0-9a-f."
        )
    return value


def validate_encoded_short_digest(value: str) -> str:
    """Validate a digest prefix.

    Args:
        value: Candidate short digest.

    Returns:
        The short digest unchanged.

    Raises:
        InvalidDigestError: Unless ``value`` is 1 to 64 lowercase hex characters.
    """
    if len(value) > ENCODED_DIGEST_LENGTH:
        raise InvalidDigestError(
            f"'{value}' does not look like a valid short digest: expected at most "
            f"{ENCODED_DIGEST_LENGTH} characters but got {len(value)}."
        )
    if not _HEX_PATTERN.match(value):
        raise InvalidDigestError(
            f"'{value}' does not look like a valid short digest: "
            "expected only characters in 0-9a-f."
        )
    return value


def is_valid_encoded_digest(value: str) -> bool:
    """Return whether ``value`` is a valid full dataset digest."""
    return len(value) == ENCODED_DIGEST_LENGTH and bool(_HEX_PATTERN.match(value))


def compute_file_digest(stream: BinaryIO) -> str:
    """Hash the remainder of a stream in fixed-size chunks.

    Args:
        stream: Readable binary stream, consumed until end-of-file.

    Returns:
        Hex SHA-256 of the bytes read.
    """
    hash_builder = digest()
    while True:
        chunk = stream.read(DIGEST_READ_CHUNK_SIZE)
        if not chunk:
            break
        hash_builder.update(chunk)
    return string_digest(hash_builder)


def compute_dataset_digest(entries: Iterable[tuple[str, int, str]]) -> str:
    """Compute a dataset digest from relative identity entries.

    Entries are sorted by path so the result does not depend on their order.

    Args:
        entries: ``(relative path, size, content hash)`` triples.

    Returns:
        Hex SHA-256 of the newline-joined ``path size hash`` lines.
    """
    lines = [f"{path} {size} {content_hash}" for path, size, content_hash in sorted(entries)]
    return string_digest("\n".join(lines))
