"""Unit tests for plain and compressed file access."""

from __future__ import annotations

from pathlib import Path

from logfile.compressed_io import (
    compress_file,
    compressed_path,
    decompressed,
    find_path_plain_or_compressed,
    identity_path,
    is_compressed,
    open_in_stream,
    open_out_stream,
)


def test_identity_path_strips_compression_suffix() -> None:
    """Identity paths never carry the compression suffix."""
    assert identity_path(Path("events.0.log.zst")) == Path("events.0.log")
    assert identity_path(Path("events.0.log")) == Path("events.0.log")
    assert is_compressed(compressed_path(Path("a.log")))


def test_out_stream_compresses_by_suffix(tmp_path) -> None:
    """Writing to a .zst path compresses and reading decompresses."""
    target = tmp_path / "data.bin.zst"
    payload = b"sample " * 1_000
    with open_out_stream(target) as stream:
        stream.write(payload)

    with open_in_stream(target) as stream:
        restored = stream.read()

    assert restored == payload
    assert target.stat().st_size < len(payload)


def test_find_path_plain_or_compressed(tmp_path) -> None:
    """Lookup should find either form, preferring the plain file."""
    plain = tmp_path / "a.log"

    assert find_path_plain_or_compressed(plain) is None

    compressed_path(plain).write_bytes(b"")

    assert find_path_plain_or_compressed(plain) == compressed_path(plain)

    plain.write_bytes(b"")

    assert find_path_plain_or_compressed(plain) == plain


def test_decompressed_caches_plain_copy(tmp_path) -> None:
    """Compressed files are decompressed once into the cache directory."""
    plain = tmp_path / "a.log"
    plain.write_bytes(b"content")
    compress_file(plain, compressed_path(plain))
    cache_dir = tmp_path / "cache"

    result = decompressed(compressed_path(plain), cache_dir)

    assert result == cache_dir / "a.log"
    assert result.read_bytes() == b"content"
    assert decompressed(plain, cache_dir) == plain
