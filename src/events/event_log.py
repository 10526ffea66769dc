"""Event log decoding and encoding.

An event log is a prologue (magic and format version) followed by
cycles. Each cycle is a uint32 length prefix and a JSON payload holding
the cycle time and the events emitted during the cycle.
"""

from __future__ import annotations

import json
from pathlib import Path
import struct
from typing import Any, BinaryIO

from core.errors import (
    EventLogDecodeError,
    InvalidFormatError,
    InvalidFormatVersionError,
    TruncatedFileError,
)
from core.types import CycleRecords, EventRecord
from logfile.block_codec import read_fully
from logfile.compressed_io import open_in_stream

EVENT_LOG_MAGIC = b"ROBYLOG"
FORMAT_VERSION = 5
OLDEST_SUPPORTED_VERSION = 5

_PROLOGUE_STRUCT = struct.Struct("<7sI")
_LENGTH_STRUCT = struct.Struct("<I")
PROLOGUE_SIZE = _PROLOGUE_STRUCT.size


def encode_prologue(version: int = FORMAT_VERSION) -> bytes:
    return _PROLOGUE_STRUCT.pack(EVENT_LOG_MAGIC, version)


def encode_cycle(cycle: CycleRecords) -> bytes:
    """Encode one cycle, length prefix included."""
    payload = json.dumps(
        {
            "time": cycle.time,
            "events": [[record.task, record.event, record.time] for record in cycle.events],
        },
        separators=(",", ":"),
    ).encode("utf-8")
    return _LENGTH_STRUCT.pack(len(payload)) + payload


def read_prologue(stream: BinaryIO) -> int:
    """Read and validate an event log prologue.

    Returns:
        The log's format version.

    Raises:
        InvalidFormatError: If the magic is missing.
        InvalidFormatVersionError: If the format version is not supported.
    """
    data = read_fully(stream, PROLOGUE_SIZE)
    if len(data) < PROLOGUE_SIZE:
        raise InvalidFormatError(
            f"file too short to be an event log ({len(data)} < {PROLOGUE_SIZE} bytes)"
        )
    magic, version = _PROLOGUE_STRUCT.unpack(data)
    if magic != EVENT_LOG_MAGIC:
        raise InvalidFormatError(
            f"invalid event log magic {magic!r}, expected {EVENT_LOG_MAGIC!r}"
        )
    if version < OLDEST_SUPPORTED_VERSION or version > FORMAT_VERSION:
        raise InvalidFormatVersionError(
            f"event log format version {version} is not supported, expected "
            f"{OLDEST_SUPPORTED_VERSION} to {FORMAT_VERSION}. Upgrade the log "
            "with the tool that produced it."
        )
    return int(version)


def decode_cycle(payload: bytes, position: int = 0) -> CycleRecords:
    """Decode one cycle payload, length prefix excluded.

    Raises:
        EventLogDecodeError: If the payload is not a valid cycle.
    """
    try:
        document: Any = json.loads(payload.decode("utf-8"))
        events = tuple(
            EventRecord(task=str(task), event=str(event), time=float(time))
            for task, event, time in document["events"]
        )
        return CycleRecords(time=float(document["time"]), events=events)
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as error:
        raise EventLogDecodeError(
            f"cannot decode event log cycle at position {position}: {error}"
        ) from error


class EventLogReader:
    """Forward-only reader of event log cycles.

    The reader tracks its position so that it works over compressed
    streams, and hands out raw cycles so callers can copy them verbatim.
    """

    def __init__(self, stream: BinaryIO, position: int = 0) -> None:
        self._stream = stream
        self._position = position
        self.version: int | None = None

    def __enter__(self) -> "EventLogReader":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def tell(self) -> int:
        return self._position

    def read_prologue(self) -> int:
        self.version = read_prologue(self._stream)
        self._position = PROLOGUE_SIZE
        return self.version

    def read_one_chunk(self) -> bytes | None:
        """Read the next raw cycle, length prefix included.

        Returns:
            The raw cycle bytes, or ``None`` at a clean end-of-file.

        Raises:
            TruncatedFileError: If the log ends in the middle of a cycle.
        """
        prefix = read_fully(self._stream, _LENGTH_STRUCT.size)
        if not prefix:
            return None
        if len(prefix) < _LENGTH_STRUCT.size:
            raise TruncatedFileError(
                f"event log ends inside the length prefix at position {self._position}"
            )
        (length,) = _LENGTH_STRUCT.unpack(prefix)
        payload = read_fully(self._stream, length)
        if len(payload) < length:
            raise TruncatedFileError(
                f"event log cycle at position {self._position} declares {length} "
                f"bytes but only {len(payload)} remain"
            )
        self._position += len(prefix) + length
        return prefix + payload

    def decode_one_chunk(self, chunk: bytes, position: int = 0) -> CycleRecords:
        """Decode a raw cycle returned by ``read_one_chunk``."""
        return decode_cycle(chunk[_LENGTH_STRUCT.size :], position)

    def load_one_cycle(self) -> CycleRecords | None:
        """Read and decode the next cycle, ``None`` at end-of-file."""
        position = self._position
        chunk = self.read_one_chunk()
        if chunk is None:
            return None
        return self.decode_one_chunk(chunk, position)

    def close(self) -> None:
        self._stream.close()


def open_event_log(path: Path) -> EventLogReader:
    """Open a plain or compressed event log positioned after its prologue."""
    reader = EventLogReader(open_in_stream(path))
    try:
        reader.read_prologue()
    except Exception:
        reader.close()
        raise
    return reader


class EventLogWriter:
    """Write an event log cycle by cycle."""

    def __init__(self, stream: BinaryIO, version: int = FORMAT_VERSION) -> None:
        self._stream = stream
        self._stream.write(encode_prologue(version))

    def write_cycle(self, cycle: CycleRecords) -> None:
        self._stream.write(encode_cycle(cycle))

    def close(self) -> None:
        self._stream.close()
