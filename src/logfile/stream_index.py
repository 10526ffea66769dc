"""Random-access index files for canonical stream logs.

A canonical stream log holds exactly one stream. Its index lives in the
dataset cache and records the stream definition, a summary (sample count,
time intervals) and the (offset, logical time) of every sample. Offsets
are positions in the decompressed log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import struct
from typing import BinaryIO

from core.constants import STREAM_INDEX_SUFFIX
from core.errors import InvalidBlockFoundError, InvalidFormatError
from core.logging_config import get_logger
from core.types import LazyDataStream
from logfile.block_codec import (
    BlockKind,
    BlockStream,
    DataBlockHeader,
    StreamDefinition,
    read_fully,
)
from logfile.compressed_io import atomic_write, identity_path, open_in_stream

_LOGGER = get_logger(__name__)

INDEX_MAGIC = b"POCOIDX\x00"
INDEX_VERSION = 1

_HEADER_STRUCT = struct.Struct("<8sIQ")
_SUMMARY_STRUCT = struct.Struct("<QQqqqq")
_LENGTH_STRUCT = struct.Struct("<I")
_ENTRY_STRUCT = struct.Struct("<Qq")


@dataclass(frozen=True)
class StreamIndex:
    """Contents of a stream index file.

    Attributes:
        indexed_size: On-disk size of the log file when it was indexed.
        declaration_offset: Offset of the stream definition block.
        definition: The stream definition.
        sample_count: Number of data blocks.
        entries: ``(offset, logical time)`` of each data block.
        interval_rt: Real-time (min, max), empty when there are no samples.
        interval_lg: Logical-time (min, max), empty when there are no samples.
    """

    indexed_size: int
    declaration_offset: int
    definition: StreamDefinition
    sample_count: int = 0
    entries: tuple[tuple[int, int], ...] = ()
    interval_rt: tuple[int, ...] = ()
    interval_lg: tuple[int, ...] = ()


@dataclass
class StreamIndexBuilder:
    """Accumulate index information while a stream log is written or scanned."""

    declaration_offset: int
    definition: StreamDefinition
    entries: list[tuple[int, int]] = field(default_factory=list)
    rt_min: int | None = None
    rt_max: int | None = None
    lg_min: int | None = None
    lg_max: int | None = None

    def add_sample(self, offset: int, rt_time: int, lg_time: int) -> None:
        self.entries.append((offset, lg_time))
        if self.rt_min is None:
            self.rt_min = rt_time
            self.lg_min = lg_time
        self.rt_max = rt_time
        self.lg_max = lg_time

    def build(self, indexed_size: int) -> StreamIndex:
        interval_rt: tuple[int, ...] = ()
        interval_lg: tuple[int, ...] = ()
        if self.entries:
            interval_rt = (int(self.rt_min or 0), int(self.rt_max or 0))
            interval_lg = (int(self.lg_min or 0), int(self.lg_max or 0))
        return StreamIndex(
            indexed_size=indexed_size,
            declaration_offset=self.declaration_offset,
            definition=self.definition,
            sample_count=len(self.entries),
            entries=tuple(self.entries),
            interval_rt=interval_rt,
            interval_lg=interval_lg,
        )


def stream_index_path(logfile_path: Path, index_dir: Path) -> Path:
    """Return the index path of a (possibly compressed) stream log."""
    plain = identity_path(logfile_path)
    return index_dir / (plain.stem + STREAM_INDEX_SUFFIX)


def write_stream_index(index_path: Path, index: StreamIndex) -> None:
    """Write an index file atomically."""
    definition_payload = index.definition.encode()
    interval_rt = index.interval_rt or (0, 0)
    interval_lg = index.interval_lg or (0, 0)
    with atomic_write(index_path) as index_io:
        index_io.write(_HEADER_STRUCT.pack(INDEX_MAGIC, INDEX_VERSION, index.indexed_size))
        index_io.write(
            _SUMMARY_STRUCT.pack(
                index.declaration_offset,
                index.sample_count,
                interval_rt[0],
                interval_rt[1],
                interval_lg[0],
                interval_lg[1],
            )
        )
        index_io.write(_LENGTH_STRUCT.pack(len(definition_payload)))
        index_io.write(definition_payload)
        for offset, lg_time in index.entries:
            index_io.write(_ENTRY_STRUCT.pack(offset, lg_time))


def read_stream_index(index_path: Path, load_entries: bool = True) -> StreamIndex:
    """Read an index file.

    Args:
        index_path: Index file path.
        load_entries: Whether to load per-sample entries or only the summary.

    Raises:
        InvalidFormatError: If the file is not a valid stream index.
    """
    with index_path.open("rb") as index_io:
        indexed_size = _read_header(index_io, index_path)
        summary = _read_struct(index_io, _SUMMARY_STRUCT, index_path)
        declaration_offset, sample_count, rt_min, rt_max, lg_min, lg_max = summary
        (definition_size,) = _read_struct(index_io, _LENGTH_STRUCT, index_path)
        definition_payload = read_fully(index_io, definition_size)
        if len(definition_payload) < definition_size:
            raise InvalidFormatError(f"stream index {index_path} is truncated")
        try:
            definition = StreamDefinition.parse(definition_payload)
        except InvalidBlockFoundError as error:
            raise InvalidFormatError(
                f"stream index {index_path} has a corrupt stream definition: {error}"
            ) from error
        entries: list[tuple[int, int]] = []
        if load_entries:
            for _ in range(sample_count):
                offset, lg_time = _read_struct(index_io, _ENTRY_STRUCT, index_path)
                entries.append((offset, lg_time))
    has_samples = sample_count > 0
    return StreamIndex(
        indexed_size=indexed_size,
        declaration_offset=declaration_offset,
        definition=definition,
        sample_count=sample_count,
        entries=tuple(entries),
        interval_rt=(rt_min, rt_max) if has_samples else (),
        interval_lg=(lg_min, lg_max) if has_samples else (),
    )


def is_valid_stream_index(index_path: Path, logfile_path: Path) -> bool:
    """Return whether ``index_path`` is a readable index of the current log file."""
    if not index_path.exists():
        return False
    try:
        with index_path.open("rb") as index_io:
            indexed_size = _read_header(index_io, index_path)
    except InvalidFormatError:
        return False
    return indexed_size == logfile_path.stat().st_size


def scan_stream_log(logfile_path: Path) -> StreamIndex:
    """Build the index of a canonical stream log by a full forward scan.

    Raises:
        InvalidFormatError: If the file is not a single-stream log.
    """
    builder: StreamIndexBuilder | None = None
    with open_in_stream(logfile_path) as log_io:
        block_stream = BlockStream(log_io)
        block_stream.read_prologue()
        for header, payload in block_stream:
            if header.kind == BlockKind.STREAM_DEF:
                if builder is not None:
                    raise InvalidFormatError(
                        f"{logfile_path} declares more than one stream, "
                        "expected a canonical single-stream log"
                    )
                definition = StreamDefinition.parse(payload, header.offset)
                builder = StreamIndexBuilder(header.offset, definition)
            elif header.kind == BlockKind.DATA:
                if builder is None:
                    raise InvalidFormatError(
                        f"{logfile_path} has a data block at offset {header.offset} "
                        "before its stream definition"
                    )
                data_header = DataBlockHeader.parse(payload, header.offset)
                builder.add_sample(header.offset, data_header.rt_time, data_header.lg_time)
    if builder is None:
        raise InvalidFormatError(f"{logfile_path} does not declare any stream")
    return builder.build(logfile_path.stat().st_size)


def rebuild_stream_index_file(logfile_path: Path, index_path: Path) -> StreamIndex:
    """Regenerate ``index_path`` from a full scan of ``logfile_path``."""
    index = scan_stream_log(logfile_path)
    write_stream_index(index_path, index)
    return index


def _read_header(index_io: BinaryIO, index_path: Path) -> int:
    magic, version, indexed_size = _read_struct(index_io, _HEADER_STRUCT, index_path)
    if magic != INDEX_MAGIC:
        raise InvalidFormatError(f"{index_path} is not a stream index (bad magic)")
    if version != INDEX_VERSION:
        raise InvalidFormatError(
            f"{index_path} has index version {version}, expected {INDEX_VERSION}"
        )
    return int(indexed_size)


def _read_struct(index_io: BinaryIO, layout: struct.Struct, index_path: Path) -> tuple:
    data = read_fully(index_io, layout.size)
    if len(data) < layout.size:
        raise InvalidFormatError(f"stream index {index_path} is truncated")
    return layout.unpack(data)


def load_lazy_data_stream(logfile_path: Path, index_dir: Path) -> LazyDataStream:
    """Return the stream descriptor of a canonical stream log.

    The index is rebuilt first when it is missing, unreadable or stale.

    Args:
        logfile_path: Canonical stream file, plain or compressed.
        index_dir: Directory holding the stream indexes.
    """
    index_path = stream_index_path(logfile_path, index_dir)
    if is_valid_stream_index(index_path, logfile_path):
        try:
            index = read_stream_index(index_path, load_entries=False)
        except InvalidFormatError:
            _LOGGER.warning("stream_index_unreadable", path=str(index_path))
            index = rebuild_stream_index_file(logfile_path, index_path)
    else:
        _LOGGER.info("stream_index_rebuilt", path=str(index_path))
        index = rebuild_stream_index_file(logfile_path, index_path)
    definition = index.definition
    return LazyDataStream(
        path=logfile_path,
        index_dir=index_dir,
        name=definition.name,
        type_name=definition.type_descriptor,
        metadata=dict(definition.metadata),
        interval_rt=index.interval_rt,
        interval_lg=index.interval_lg,
        size=index.sample_count,
    )
