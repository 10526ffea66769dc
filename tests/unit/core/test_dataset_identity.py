"""Unit tests for digest helpers."""

from __future__ import annotations

import hashlib
import io
import random

import pytest

from core.dataset_identity import (
    compute_dataset_digest,
    compute_file_digest,
    string_digest,
    validate_encoded_digest,
    validate_encoded_short_digest,
)
from core.errors import InvalidDigestError


def test_validate_encoded_digest_rejects_wrong_length() -> None:
    """A three-character value is not a full digest."""
    with pytest.raises(InvalidDigestError, match="64 characters"):
        validate_encoded_digest("abc")


def test_validate_encoded_digest_returns_valid_digest() -> None:
    """A SHA-256 hex digest should be returned unchanged."""
    value = hashlib.sha256(b"x").hexdigest()

    assert validate_encoded_digest(value) == value


def test_validate_encoded_digest_rejects_uppercase() -> None:
    """Digests are lowercase hexadecimal only."""
    value = hashlib.sha256(b"x").hexdigest().upper()

    with pytest.raises(InvalidDigestError):
        validate_encoded_digest(value)


def test_validate_encoded_short_digest_accepts_prefixes() -> None:
    """Short digests are any lowercase hex prefix up to 64 characters."""
    assert validate_encoded_short_digest("abc") == "abc"
    with pytest.raises(InvalidDigestError):
        validate_encoded_short_digest("xyz")
    with pytest.raises(InvalidDigestError):
        validate_encoded_short_digest("a" * 65)


def test_string_digest_accepts_bytes_and_text() -> None:
    """Bytes and UTF-8 text should hash identically."""
    assert string_digest("robot") == string_digest(b"robot")
    assert string_digest(b"robot") == hashlib.sha256(b"robot").hexdigest()


def test_compute_file_digest_hashes_whole_stream() -> None:
    """Chunked hashing should match a one-shot hash."""
    data = bytes(range(256)) * 10_000

    assert compute_file_digest(io.BytesIO(data)) == hashlib.sha256(data).hexdigest()


def test_compute_dataset_digest_is_order_independent() -> None:
    """Shuffling identity entries must not change the dataset digest."""
    entries = [
        (f"pocolog/task{index}::port.0.log", index * 10, string_digest(str(index)))
        for index in range(8)
    ]
    shuffled = list(entries)
    random.Random(42).shuffle(shuffled)

    assert compute_dataset_digest(shuffled) == compute_dataset_digest(entries)


def test_compute_dataset_digest_depends_on_every_field() -> None:
    """Changing a path, size or hash changes the digest."""
    base = [("events.0.log", 12, string_digest("a"))]
    digest = compute_dataset_digest(base)

    assert compute_dataset_digest([("events.1.log", 12, string_digest("a"))]) != digest
    assert compute_dataset_digest([("events.0.log", 13, string_digest("a"))]) != digest
    assert compute_dataset_digest([("events.0.log", 12, string_digest("b"))]) != digest
