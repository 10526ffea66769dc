"""Transparent access to plain and zstd-compressed files.

Dataset files may be stored plain or with a ``.zst`` suffix. Readers get
the decompressed byte stream either way; identity paths never carry the
compression suffix.
"""

from __future__ import annotations

from contextlib import contextmanager
import os
from pathlib import Path
import tempfile
from typing import BinaryIO, Iterator, cast

import zstandard

from core.constants import COMPRESSED_SUFFIX, DECOMPRESS_READ_SIZE
from core.logging_config import get_logger

_LOGGER = get_logger(__name__)


def is_compressed(path: Path) -> bool:
    return path.suffix == COMPRESSED_SUFFIX


def identity_path(path: Path) -> Path:
    """Return ``path`` without its compression suffix."""
    if is_compressed(path):
        return path.with_suffix("")
    return path


def compressed_path(path: Path) -> Path:
    """Return the compressed counterpart of a plain path."""
    return path.with_name(path.name + COMPRESSED_SUFFIX)


def open_in_stream(path: Path) -> BinaryIO:
    """Open a file for reading its decompressed bytes.

    The returned object closes the underlying file when closed.
    """
    raw = path.open("rb")
    if not is_compressed(path):
        return raw
    return cast(BinaryIO, zstandard.ZstdDecompressor().stream_reader(raw))


def open_out_stream(path: Path) -> BinaryIO:
    """Open a file for writing, compressing when ``path`` ends in ``.zst``.

    Closing the returned object finishes the zstd frame and closes the file.
    """
    raw = path.open("wb")
    if not is_compressed(path):
        return raw
    return cast(BinaryIO, zstandard.ZstdCompressor().stream_writer(raw))


def find_path_plain_or_compressed(path: Path) -> Path | None:
    """Return ``path`` or its compressed counterpart, whichever exists."""
    if path.exists():
        return path
    candidate = compressed_path(path)
    if candidate.exists():
        return candidate
    return None


def decompressed_path(path: Path, cache_dir: Path) -> Path:
    """Return where the decompressed version of ``path`` lives.

    Plain files are their own decompressed version.
    """
    if not is_compressed(path):
        return path
    return cache_dir / path.with_suffix("").name


def decompressed(path: Path, cache_dir: Path, force: bool = False) -> Path:
    """Return a plain version of ``path``, decompressing into the cache if needed.

    Args:
        path: Plain or compressed file.
        cache_dir: Directory receiving decompressed copies.
        force: Decompress even if a cached copy exists.

    Returns:
        Path to a plain file with the decompressed contents.
    """
    if not is_compressed(path):
        return path
    out_path = decompressed_path(path, cache_dir)
    if out_path.exists() and not force:
        return out_path
    decompress_file(path, out_path)
    return out_path


@contextmanager
def atomic_write(out_path: Path) -> Iterator[BinaryIO]:
    """Write into a temporary file moved over ``out_path`` on success."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = tempfile.NamedTemporaryFile(
        dir=out_path.parent, prefix=f".{out_path.name}.", delete=False
    )
    temp_path = Path(temp_file.name)
    try:
        with temp_file:
            yield cast(BinaryIO, temp_file)
        os.replace(temp_path, out_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def copy_stream(in_stream: BinaryIO, out_stream: BinaryIO) -> int:
    """Copy a stream in fixed-size chunks and return the byte count."""
    total = 0
    while True:
        data = in_stream.read(DECOMPRESS_READ_SIZE)
        if not data:
            return total
        out_stream.write(data)
        total += len(data)


def decompress_file(in_path: Path, out_path: Path) -> None:
    """Decompress ``in_path`` into ``out_path`` atomically."""
    with atomic_write(out_path) as out_stream, open_in_stream(in_path) as in_stream:
        copy_stream(in_stream, out_stream)
    _LOGGER.debug("file_decompressed", path=str(in_path), output=str(out_path))


def compress_file(in_path: Path, out_path: Path) -> None:
    """Compress ``in_path`` into ``out_path`` atomically."""
    with atomic_write(out_path) as out_raw, in_path.open("rb") as in_stream:
        writer = zstandard.ZstdCompressor().stream_writer(out_raw, closefd=False)
        with writer:
            copy_stream(in_stream, cast(BinaryIO, writer))
    _LOGGER.debug("file_compressed", path=str(in_path), output=str(out_path))
