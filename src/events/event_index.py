"""Position index of event log cycles.

The index maps each cycle of an event log to its position and time so
replay tools can seek without decoding the whole log.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import struct

from core.errors import InvalidFormatError
from events.event_log import open_event_log
from logfile.block_codec import read_fully
from logfile.compressed_io import atomic_write

INDEX_MAGIC = b"EVTIDX\x00\x00"
INDEX_VERSION = 1

_HEADER_STRUCT = struct.Struct("<8sIQI")
_ENTRY_STRUCT = struct.Struct("<Qd")


@dataclass(frozen=True)
class EventIndex:
    """Contents of an event log index file."""

    log_size: int
    entries: tuple[tuple[int, float], ...] = ()

    @property
    def cycle_count(self) -> int:
        return len(self.entries)


def write_event_index(index_path: Path, index: EventIndex) -> None:
    with atomic_write(index_path) as index_io:
        index_io.write(
            _HEADER_STRUCT.pack(INDEX_MAGIC, INDEX_VERSION, index.log_size, index.cycle_count)
        )
        for position, time in index.entries:
            index_io.write(_ENTRY_STRUCT.pack(position, time))


def read_event_index(index_path: Path) -> EventIndex:
    """Read an event log index.

    Raises:
        InvalidFormatError: If the file is not a complete event index.
    """
    with index_path.open("rb") as index_io:
        log_size, cycle_count = _read_header(index_io, index_path)
        entries = []
        for _ in range(cycle_count):
            data = read_fully(index_io, _ENTRY_STRUCT.size)
            if len(data) < _ENTRY_STRUCT.size:
                raise InvalidFormatError(f"event index {index_path} is truncated")
            position, time = _ENTRY_STRUCT.unpack(data)
            entries.append((int(position), float(time)))
    return EventIndex(log_size=log_size, entries=tuple(entries))


def valid_file(index_path: Path, log_path: Path) -> bool:
    """Return whether ``index_path`` indexes the current contents of ``log_path``."""
    if not index_path.exists():
        return False
    try:
        with index_path.open("rb") as index_io:
            log_size, _ = _read_header(index_io, index_path)
    except InvalidFormatError:
        return False
    return log_size == log_path.stat().st_size


def rebuild_file(log_path: Path, index_path: Path) -> EventIndex:
    """Scan ``log_path`` and write its index to ``index_path``.

    Raises:
        InvalidFormatVersionError: If the log format version is not supported.
        TruncatedFileError: If the log ends in the middle of a cycle.
        EventLogDecodeError: If a cycle cannot be decoded.
    """
    entries: list[tuple[int, float]] = []
    with open_event_log(log_path) as reader:
        while True:
            position = reader.tell()
            cycle = reader.load_one_cycle()
            if cycle is None:
                break
            entries.append((position, cycle.time))
    index = EventIndex(log_size=log_path.stat().st_size, entries=tuple(entries))
    write_event_index(index_path, index)
    return index


def _read_header(index_io, index_path: Path) -> tuple[int, int]:
    data = read_fully(index_io, _HEADER_STRUCT.size)
    if len(data) < _HEADER_STRUCT.size:
        raise InvalidFormatError(f"event index {index_path} is truncated")
    magic, version, log_size, cycle_count = _HEADER_STRUCT.unpack(data)
    if magic != INDEX_MAGIC or version != INDEX_VERSION:
        raise InvalidFormatError(f"{index_path} is not a version {INDEX_VERSION} event index")
    return int(log_size), int(cycle_count)
