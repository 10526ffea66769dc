"""Stream wrappers that hash or count the bytes flowing through them."""

from __future__ import annotations

from typing import Any, BinaryIO

from core.dataset_identity import digest, string_digest


class DigestWriter:
    """Writable wrapper computing the SHA-256 and size of written bytes.

    Hashing can be switched off, in which case only the byte count is kept.
    """

    def __init__(self, stream: BinaryIO, compute_hash: bool = True) -> None:
        self._stream = stream
        self._digest: Any = digest() if compute_hash else None
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        self._stream.write(data)
        if self._digest is not None:
            self._digest.update(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        self._stream.flush()

    def close(self) -> None:
        self._stream.close()

    @property
    def closed(self) -> bool:
        return bool(self._stream.closed)

    def string_digest(self) -> str | None:
        """Return the hex digest of everything written so far, if hashing."""
        if self._digest is None:
            return None
        return string_digest(self._digest)


class CountingReader:
    """Readable wrapper counting the bytes read from the underlying stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.bytes_read += len(data)
        return data
