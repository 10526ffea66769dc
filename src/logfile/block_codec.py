"""Binary block framing of multiplexed stream log files.

A log file is a fixed-size prologue followed by blocks. Each block is an
8-byte header (kind, stream index, payload size) and a payload:

- stream definition blocks declare a stream (name, type, registry, metadata),
- data blocks carry one timestamped sample of a declared stream,
- control blocks carry stream-independent information.

Reading is a single forward pass; nothing seeks backwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import struct
from typing import BinaryIO, Iterator, Mapping

import yaml

from core.errors import InvalidBlockFoundError, InvalidFormatError

MAGIC = b"POCOSIM"
FORMAT_VERSION = 2
PROLOGUE_SIZE = 16
BLOCK_HEADER_SIZE = 8
DATA_HEADER_SIZE = 21
DATA_STREAM_TYPE = 1

_PROLOGUE_STRUCT = struct.Struct("<7sxII")
_BLOCK_HEADER_STRUCT = struct.Struct("<BxHI")
_DATA_HEADER_STRUCT = struct.Struct("<IIIIIB")
_LENGTH_STRUCT = struct.Struct("<I")


class BlockKind(enum.IntEnum):
    """Kind of a block, as stored in the first header byte."""

    STREAM_DEF = 1
    DATA = 2
    CONTROL = 3


@dataclass(frozen=True)
class BlockHeader:
    """Decoded block header.

    Attributes:
        kind: Block kind.
        stream_index: Index of the stream the block belongs to.
        payload_size: Size of the payload following the header.
        offset: Offset of the header in the stream it was read from.
    """

    kind: BlockKind
    stream_index: int
    payload_size: int
    offset: int = 0

    def encode(self) -> bytes:
        return encode_block_header(self.kind, self.stream_index, self.payload_size)


@dataclass(frozen=True)
class StreamDefinition:
    """Payload of a stream definition block.

    Attributes:
        name: Stream name.
        type_descriptor: Opaque type name of the stream samples.
        registry_blob: Opaque type registry needed to decode samples.
        metadata: String metadata attached to the stream.
    """

    name: str
    type_descriptor: str
    registry_blob: str = ""
    metadata: Mapping[str, str] = field(default_factory=dict)

    def encode(self) -> bytes:
        """Encode this definition as a stream definition payload."""
        metadata_text = yaml.safe_dump(
            {str(key): str(value) for key, value in self.metadata.items()},
            sort_keys=True,
            default_flow_style=False,
        )
        parts = [struct.pack("<B", DATA_STREAM_TYPE)]
        for text in (self.name, self.type_descriptor, self.registry_blob, metadata_text):
            encoded = text.encode("utf-8")
            parts.append(_LENGTH_STRUCT.pack(len(encoded)))
            parts.append(encoded)
        return b"".join(parts)

    @classmethod
    def parse(cls, payload: bytes, offset: int = 0) -> "StreamDefinition":
        """Decode a stream definition payload.

        Args:
            payload: Raw payload bytes.
            offset: Offset of the block, for error reporting.

        Returns:
            Decoded stream definition.

        Raises:
            InvalidBlockFoundError: If the payload is malformed.
        """
        if len(payload) < 1:
            raise InvalidBlockFoundError(
                f"empty stream definition payload at offset {offset}", offset
            )
        position = 1
        texts: list[str] = []
        for _ in range(4):
            if position + _LENGTH_STRUCT.size > len(payload):
                raise InvalidBlockFoundError(
                    f"stream definition at offset {offset} is truncated", offset
                )
            (length,) = _LENGTH_STRUCT.unpack_from(payload, position)
            position += _LENGTH_STRUCT.size
            if position + length > len(payload):
                raise InvalidBlockFoundError(
                    f"stream definition at offset {offset} is truncated", offset
                )
            try:
                texts.append(payload[position : position + length].decode("utf-8"))
            except UnicodeDecodeError as error:
                raise InvalidBlockFoundError(
                    f"stream definition at offset {offset} is not valid UTF-8: {error}",
                    offset,
                ) from error
            position += length
        name, type_descriptor, registry_blob, metadata_text = texts
        return cls(
            name=name,
            type_descriptor=type_descriptor,
            registry_blob=registry_blob,
            metadata=_parse_metadata(metadata_text, offset),
        )


@dataclass(frozen=True)
class DataBlockHeader:
    """Timestamps and size information at the start of a data payload.

    Times are integer microseconds.
    """

    rt_time: int
    lg_time: int
    data_size: int
    compressed: bool = False

    def encode(self) -> bytes:
        return _DATA_HEADER_STRUCT.pack(
            self.rt_time // 1_000_000,
            self.rt_time % 1_000_000,
            self.lg_time // 1_000_000,
            self.lg_time % 1_000_000,
            self.data_size,
            1 if self.compressed else 0,
        )

    @classmethod
    def parse(cls, payload: bytes, offset: int = 0) -> "DataBlockHeader":
        """Decode the data header at the start of a data payload.

        Raises:
            InvalidBlockFoundError: If the payload is too short.
        """
        if len(payload) < DATA_HEADER_SIZE:
            raise InvalidBlockFoundError(
                f"data block at offset {offset} is shorter than its header "
                f"({len(payload)} < {DATA_HEADER_SIZE} bytes)",
                offset,
            )
        rt_sec, rt_usec, lg_sec, lg_usec, data_size, compressed = (
            _DATA_HEADER_STRUCT.unpack_from(payload, 0)
        )
        return cls(
            rt_time=rt_sec * 1_000_000 + rt_usec,
            lg_time=lg_sec * 1_000_000 + lg_usec,
            data_size=data_size,
            compressed=bool(compressed),
        )


def read_fully(stream: BinaryIO, size: int) -> bytes:
    """Read ``size`` bytes, looping over short reads until end-of-stream."""
    chunks: list[bytes] = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def encode_prologue() -> bytes:
    """Return the prologue written at the start of every log file."""
    return _PROLOGUE_STRUCT.pack(MAGIC, FORMAT_VERSION, 0)


def read_prologue(stream: BinaryIO) -> None:
    """Read and validate a log file prologue.

    Raises:
        InvalidFormatError: If the stream does not start with the expected
            magic and format version.
    """
    data = read_fully(stream, PROLOGUE_SIZE)
    if len(data) < PROLOGUE_SIZE:
        raise InvalidFormatError(
            f"file too short to be a stream log ({len(data)} < {PROLOGUE_SIZE} bytes)"
        )
    magic, version, _flags = _PROLOGUE_STRUCT.unpack(data)
    if magic != MAGIC:
        raise InvalidFormatError(f"invalid stream log magic {magic!r}, expected {MAGIC!r}")
    if version != FORMAT_VERSION:
        raise InvalidFormatError(
            f"unsupported stream log format version {version}, expected {FORMAT_VERSION}"
        )


def encode_block_header(kind: BlockKind, stream_index: int, payload_size: int) -> bytes:
    return _BLOCK_HEADER_STRUCT.pack(int(kind), stream_index, payload_size)


def write_block(writer: BinaryIO, header: BlockHeader, payload: bytes) -> None:
    """Write one block, using the payload's actual size in the header."""
    writer.write(encode_block_header(header.kind, header.stream_index, len(payload)))
    writer.write(payload)


def encode_data_payload(rt_time: int, lg_time: int, data: bytes) -> bytes:
    """Build a data block payload from microsecond timestamps and sample bytes."""
    header = DataBlockHeader(rt_time=rt_time, lg_time=lg_time, data_size=len(data))
    return header.encode() + data


def _parse_metadata(metadata_text: str, offset: int) -> dict[str, str]:
    if not metadata_text.strip():
        return {}
    try:
        loaded = yaml.safe_load(metadata_text)
    except yaml.YAMLError as error:
        raise InvalidBlockFoundError(
            f"stream definition at offset {offset} has unparsable metadata: {error}",
            offset,
        ) from error
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise InvalidBlockFoundError(
            f"stream definition at offset {offset} has non-mapping metadata", offset
        )
    return {str(key): "" if value is None else str(value) for key, value in loaded.items()}


class BlockStream:
    """Forward-only block reader over a binary stream.

    The reader tracks its own position so it works over non-seekable
    streams such as zstd decompressors.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._position = 0
        self._pending: BlockHeader | None = None

    def tell(self) -> int:
        """Return the number of bytes consumed so far."""
        return self._position

    def read_prologue(self) -> None:
        """Validate the stream prologue, see ``read_prologue``."""
        read_prologue(self._stream)
        self._position = PROLOGUE_SIZE

    def next_block_header(self) -> BlockHeader | None:
        """Read the next block header.

        A payload left unread by the caller is skipped first.

        Returns:
            The header, or ``None`` at a clean end-of-stream.

        Raises:
            InvalidBlockFoundError: On a partial or corrupt header.
        """
        if self._pending is not None:
            self.read_payload(self._pending)
        offset = self._position
        data = read_fully(self._stream, BLOCK_HEADER_SIZE)
        self._position += len(data)
        if not data:
            return None
        if len(data) < BLOCK_HEADER_SIZE:
            raise InvalidBlockFoundError(
                f"truncated block header at offset {offset} "
                f"({len(data)} of {BLOCK_HEADER_SIZE} bytes)",
                offset,
            )
        kind_value, stream_index, payload_size = _BLOCK_HEADER_STRUCT.unpack(data)
        try:
            kind = BlockKind(kind_value)
        except ValueError as error:
            raise InvalidBlockFoundError(
                f"invalid block kind {kind_value} at offset {offset}", offset
            ) from error
        header = BlockHeader(
            kind=kind, stream_index=stream_index, payload_size=payload_size, offset=offset
        )
        self._pending = header
        return header

    def read_payload(self, header: BlockHeader) -> bytes:
        """Read the payload of the header returned by the last ``next_block_header``.

        Raises:
            InvalidBlockFoundError: If the payload runs past end-of-file.
        """
        self._pending = None
        data = read_fully(self._stream, header.payload_size)
        self._position += len(data)
        if len(data) < header.payload_size:
            raise InvalidBlockFoundError(
                f"block at offset {header.offset} declares {header.payload_size} "
                f"payload bytes but only {len(data)} remain",
                header.offset,
            )
        return data

    def __iter__(self) -> Iterator[tuple[BlockHeader, bytes]]:
        while True:
            header = self.next_block_header()
            if header is None:
                return
            yield header, self.read_payload(header)
