"""Demultiplexing of raw stream logs into canonical per-stream files.

This module splits multiplexed (and possibly multi-part) raw log files
into one canonical file per stream, hashing and indexing each output
while it is written.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
from typing import Iterable

import zstandard

from core.constants import COMPRESSED_SUFFIX
from core.digest_io import DigestWriter
from core.errors import (
    InvalidBlockFoundError,
    InvalidFollowupStreamError,
    InvalidFormatError,
    NormalizeError,
)
from core.logging_config import get_logger
from core.reporting import Reporter
from core.types import IdentityEntry, NormalizeOptions
from logfile.block_codec import (
    PROLOGUE_SIZE,
    BlockHeader,
    BlockKind,
    BlockStream,
    DataBlockHeader,
    StreamDefinition,
    encode_block_header,
    encode_prologue,
)
from logfile.compressed_io import open_in_stream, open_out_stream
from logfile.stream_index import StreamIndexBuilder, stream_index_path, write_stream_index
from logfile.stream_metadata import (
    normalized_filename,
    normalized_stream_name,
    sanitize_metadata,
)

_LOGGER = get_logger(__name__)

_PART_SUFFIX_PATTERN = re.compile(r"\.(\d+)\.log(?:\.zst)?$")


class NormalizedOutput:
    """One canonical stream file being written.

    Writes are buffered and the content hash covers every byte after the
    prologue. Offsets are positions in the decompressed file.
    """

    def __init__(
        self,
        path: Path,
        identity_path: Path,
        definition: StreamDefinition,
        compute_hash: bool,
        write_buffer_size: int,
    ) -> None:
        self.path = path
        self.identity_path = identity_path
        self.definition = definition
        self._write_buffer_size = write_buffer_size
        self._buffer = bytearray()
        raw_stream = open_out_stream(path)
        raw_stream.write(encode_prologue())
        self._writer = DigestWriter(raw_stream, compute_hash=compute_hash)
        self.tell = PROLOGUE_SIZE
        self.last_data_block_time: tuple[int, int] | None = None
        self._index: StreamIndexBuilder | None = None

    def write(self, data: bytes) -> None:
        self._buffer += data
        self.tell += len(data)
        if len(self._buffer) >= self._write_buffer_size:
            self._flush_buffer()

    def declare(self, control_blocks: Iterable[bytes]) -> None:
        """Write the buffered control blocks and the stream definition block."""
        for raw_block in control_blocks:
            self.write(raw_block)
        self._index = StreamIndexBuilder(self.tell, self.definition)
        payload = self.definition.encode()
        self.write(encode_block_header(BlockKind.STREAM_DEF, 0, len(payload)))
        self.write(payload)

    def add_data_block(self, payload: bytes, data_header: DataBlockHeader) -> None:
        if self._index is None:
            raise NormalizeError(f"{self.path} received data before its stream definition")
        self._index.add_sample(self.tell, data_header.rt_time, data_header.lg_time)
        self.write(encode_block_header(BlockKind.DATA, 0, len(payload)))
        self.write(payload)
        self.last_data_block_time = (data_header.rt_time, data_header.lg_time)

    def flush(self) -> None:
        self._flush_buffer()
        self._writer.flush()

    def close(self) -> None:
        if self._writer.closed:
            return
        self._flush_buffer()
        self._writer.close()

    @property
    def closed(self) -> bool:
        return self._writer.closed

    def index_path(self, cache_dir: Path) -> Path:
        return stream_index_path(self.path, cache_dir)

    def write_index(self, cache_dir: Path) -> None:
        """Write the stream index of this output, which must be closed."""
        if self._index is None:
            raise NormalizeError(f"{self.path} has no stream definition to index")
        index = self._index.build(self.path.stat().st_size)
        write_stream_index(self.index_path(cache_dir), index)

    def identity_entry(self) -> IdentityEntry:
        return IdentityEntry(
            path=self.identity_path,
            size=self.tell,
            content_hash=self._writer.string_digest(),
        )

    def _flush_buffer(self) -> None:
        if self._buffer:
            self._writer.write(bytes(self._buffer))
            self._buffer.clear()


@dataclass
class _GroupState:
    """Outputs and control blocks of one group of input files."""

    outputs: dict[Path, NormalizedOutput] = field(default_factory=dict)
    control_blocks: list[bytes] = field(default_factory=list)


@dataclass
class _FileState:
    """Stream index mapping of one input file."""

    stream_outputs: dict[int, NormalizedOutput] = field(default_factory=dict)
    followup_times: dict[int, tuple[int, int]] = field(default_factory=dict)


def group_key(path: Path) -> str:
    """Return the series name of a raw log, without its part-number suffix."""
    match = _PART_SUFFIX_PATTERN.search(path.name)
    if match is None:
        return path.name
    return path.name[: match.start()]


def part_number(path: Path) -> int:
    match = _PART_SUFFIX_PATTERN.search(path.name)
    return int(match.group(1)) if match else 0


def group_logfiles(paths: Iterable[Path]) -> dict[str, list[Path]]:
    """Group raw logs by series, parts sorted in ascending part order."""
    groups: dict[str, list[Path]] = {}
    for path in paths:
        groups.setdefault(group_key(path), []).append(path)
    return {
        key: sorted(files, key=lambda item: (part_number(item), item.name))
        for key, files in groups.items()
    }


class Normalizer:
    """Demultiplex raw stream logs into canonical per-stream files.

    Each group of parts is an atomicity boundary: when a group fails, the
    outputs it created are deleted and the error propagates, while groups
    completed earlier are kept.
    """

    def __init__(
        self, options: NormalizeOptions | None = None, reporter: Reporter | None = None
    ) -> None:
        self._options = options or NormalizeOptions()
        self._reporter = reporter or Reporter()
        self._produced: set[Path] = set()

    def normalize(
        self, input_paths: Iterable[Path], output_dir: Path, cache_dir: Path
    ) -> list[IdentityEntry]:
        """Normalize raw stream logs.

        Args:
            input_paths: Raw log files, possibly multi-part and compressed.
            output_dir: Directory receiving the canonical stream files.
            cache_dir: Directory receiving the stream index files.

        Returns:
            Identity entries of the canonical files, in creation order.

        Raises:
            NormalizeError: If a group cannot be normalized.
        """
        paths = list(input_paths)
        output_dir.mkdir(parents=True, exist_ok=True)
        cache_dir.mkdir(parents=True, exist_ok=True)
        self._reporter.reset_progress(sum(path.stat().st_size for path in paths))
        entries: list[IdentityEntry] = []
        for key, files in group_logfiles(paths).items():
            self._reporter.info(f"normalizing group {key}", group=key, file_count=len(files))
            entries.extend(self._normalize_group(files, output_dir, cache_dir))
            if self._options.delete_input:
                for path in files:
                    path.unlink()
        _LOGGER.info(
            "normalize_completed",
            output_dir=str(output_dir),
            input_count=len(paths),
            output_count=len(entries),
        )
        return entries

    def _normalize_group(
        self, files: list[Path], output_dir: Path, cache_dir: Path
    ) -> list[IdentityEntry]:
        group = _GroupState()
        try:
            for logfile_path in files:
                self._normalize_logfile(logfile_path, output_dir, group)
            entries = []
            for output in group.outputs.values():
                output.close()
                output.write_index(cache_dir)
                entries.append(output.identity_entry())
        except BaseException:
            self._reporter.warn(
                f"deleting {len(group.outputs)} output files and their indexes",
                output_count=len(group.outputs),
            )
            for output in group.outputs.values():
                output.close()
                output.path.unlink(missing_ok=True)
                output.index_path(cache_dir).unlink(missing_ok=True)
            raise
        self._produced.update(group.outputs)
        return entries

    def _normalize_logfile(self, logfile_path: Path, output_dir: Path, group: _GroupState) -> None:
        disk_size = logfile_path.stat().st_size
        with open_in_stream(logfile_path) as in_stream:
            block_stream = BlockStream(in_stream)
            try:
                block_stream.read_prologue()
            except (InvalidFormatError, zstandard.ZstdError) as error:
                self._reporter.warn(
                    f"{logfile_path.name} does not seem to be a valid stream log "
                    f"({error}), skipping",
                    path=str(logfile_path),
                )
                self._reporter.advance(disk_size)
                return

            state = _FileState()
            try:
                for header, payload in block_stream:
                    self._process_block(header, payload, output_dir, group, state)
            except (InvalidBlockFoundError, zstandard.ZstdError) as error:
                self._reporter.warn(
                    f"{logfile_path.name} looks truncated or contains garbage ({error}), "
                    "stopping processing but keeping the samples processed so far",
                    path=str(logfile_path),
                )
            except InvalidFollowupStreamError as error:
                raise InvalidFollowupStreamError(
                    f"while processing {logfile_path}: {error}"
                ) from error
            finally:
                for output in group.outputs.values():
                    output.flush()
        self._reporter.advance(disk_size)

    def _process_block(
        self,
        header: BlockHeader,
        payload: bytes,
        output_dir: Path,
        group: _GroupState,
        state: _FileState,
    ) -> None:
        if header.kind == BlockKind.CONTROL:
            raw_block = encode_block_header(BlockKind.CONTROL, 0, len(payload)) + payload
            group.control_blocks.append(raw_block)
            for output in group.outputs.values():
                output.write(raw_block)
        elif header.kind == BlockKind.STREAM_DEF:
            definition = _normalize_stream_definition(
                StreamDefinition.parse(payload, header.offset)
            )
            output = self._create_or_reuse_output(definition, output_dir, group)
            state.stream_outputs[header.stream_index] = output
            if output.last_data_block_time is not None:
                state.followup_times[header.stream_index] = output.last_data_block_time
        else:
            output = state.stream_outputs.get(header.stream_index)
            if output is None:
                raise InvalidBlockFoundError(
                    f"data block at offset {header.offset} refers to undeclared "
                    f"stream {header.stream_index}",
                    header.offset,
                )
            data_header = DataBlockHeader.parse(payload, header.offset)
            _validate_followup_time(state, header.stream_index, output, data_header)
            output.add_data_block(payload, data_header)

    def _create_or_reuse_output(
        self, definition: StreamDefinition, output_dir: Path, group: _GroupState
    ) -> NormalizedOutput:
        basename = normalized_filename(definition.metadata, definition.name)
        if not basename:
            raise NormalizeError(
                "cannot derive a file name for a stream without name or task metadata"
            )
        identity_path = output_dir / f"{basename}.0.log"
        existing = group.outputs.get(identity_path)
        if existing is not None:
            if existing.definition.type_descriptor != definition.type_descriptor:
                raise InvalidFollowupStreamError(
                    f"multi-IO stream {definition.name} is not consistent: type mismatch "
                    f"({existing.definition.type_descriptor} != {definition.type_descriptor})"
                )
            return existing
        if identity_path in self._produced:
            raise NormalizeError(
                f"stream {definition.name} maps to {identity_path.name}, which was already "
                "produced by another group of logs. Rename one of the streams or import "
                "the groups separately."
            )
        out_path = identity_path
        if self._options.compress:
            out_path = identity_path.with_name(identity_path.name + COMPRESSED_SUFFIX)
        output = NormalizedOutput(
            out_path,
            identity_path,
            definition,
            compute_hash=self._options.compute_hash,
            write_buffer_size=self._options.write_buffer_size,
        )
        group.outputs[identity_path] = output
        output.declare(group.control_blocks)
        _LOGGER.debug("normalize_output_created", path=str(out_path), stream=definition.name)
        return output


def _normalize_stream_definition(definition: StreamDefinition) -> StreamDefinition:
    metadata = sanitize_metadata(definition.metadata, stream_name=definition.name)
    return StreamDefinition(
        name=normalized_stream_name(metadata, definition.name),
        type_descriptor=definition.type_descriptor,
        registry_blob=definition.registry_blob,
        metadata=metadata,
    )


def _validate_followup_time(
    state: _FileState, stream_index: int, output: NormalizedOutput, data_header: DataBlockHeader
) -> None:
    previous = state.followup_times.pop(stream_index, None)
    if previous is None:
        return
    previous_rt, previous_lg = previous
    if previous_rt > data_header.rt_time:
        raise InvalidFollowupStreamError(
            f"found followup stream {output.definition.name} whose real time is before "
            f"the stream that came before it: previous sample real time = {previous_rt}us, "
            f"sample real time = {data_header.rt_time}us"
        )
    if previous_lg > data_header.lg_time:
        raise InvalidFollowupStreamError(
            f"found followup stream {output.definition.name} whose logical time is before "
            f"the stream that came before it: previous sample logical time = "
            f"{previous_lg}us, sample logical time = {data_header.lg_time}us"
        )


def normalize(
    input_paths: Iterable[Path],
    output_dir: Path,
    cache_dir: Path,
    options: NormalizeOptions | None = None,
    reporter: Reporter | None = None,
) -> list[IdentityEntry]:
    """Normalize raw stream logs, see ``Normalizer.normalize``."""
    return Normalizer(options, reporter).normalize(input_paths, output_dir, cache_dir)
