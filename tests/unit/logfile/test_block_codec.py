"""Unit tests for stream log block framing."""

from __future__ import annotations

import io

import pytest

from core.errors import InvalidBlockFoundError, InvalidFormatError
from logfile.block_codec import (
    BLOCK_HEADER_SIZE,
    PROLOGUE_SIZE,
    BlockHeader,
    BlockKind,
    BlockStream,
    DataBlockHeader,
    StreamDefinition,
    encode_data_payload,
    encode_prologue,
    write_block,
)
from log_builders import control_block, data_block, stream_def_block, task_metadata


def _stream(*blocks: bytes) -> BlockStream:
    block_stream = BlockStream(io.BytesIO(encode_prologue() + b"".join(blocks)))
    block_stream.read_prologue()
    return block_stream


def test_read_prologue_rejects_foreign_file() -> None:
    """A file without the stream log magic is an invalid format."""
    block_stream = BlockStream(io.BytesIO(b"NOTALOG" + b"\x00" * 20))

    with pytest.raises(InvalidFormatError, match="magic"):
        block_stream.read_prologue()


def test_read_prologue_rejects_short_file() -> None:
    """A file shorter than the prologue is an invalid format."""
    with pytest.raises(InvalidFormatError, match="too short"):
        BlockStream(io.BytesIO(b"POCO")).read_prologue()


def test_blocks_are_read_in_order_with_offsets() -> None:
    """Iteration should yield every block with the offset of its header."""
    definition = stream_def_block(0, "task0.porta", metadata=task_metadata("task0", "porta"))
    blocks = list(_stream(control_block(), definition, data_block(0, 5, 6)))

    kinds = [header.kind for header, _ in blocks]
    offsets = [header.offset for header, _ in blocks]

    assert kinds == [BlockKind.CONTROL, BlockKind.STREAM_DEF, BlockKind.DATA]
    assert offsets[0] == PROLOGUE_SIZE
    assert offsets[1] == PROLOGUE_SIZE + len(control_block())
    assert offsets[2] == offsets[1] + len(definition)


def test_next_block_header_returns_none_at_end_of_stream() -> None:
    """A clean end-of-file is not an error."""
    assert _stream().next_block_header() is None


def test_unread_payload_is_skipped() -> None:
    """Asking for the next header skips the pending payload."""
    block_stream = _stream(control_block(b"first"), control_block(b"second"))

    block_stream.next_block_header()
    header = block_stream.next_block_header()

    assert header is not None
    assert block_stream.read_payload(header) == b"second"


def test_truncated_header_reports_offset() -> None:
    """A partial header is an invalid block at the header offset."""
    block_stream = _stream(control_block()[: BLOCK_HEADER_SIZE - 3])

    with pytest.raises(InvalidBlockFoundError) as error_info:
        block_stream.next_block_header()

    assert error_info.value.offset == PROLOGUE_SIZE


def test_payload_past_end_of_file_is_invalid() -> None:
    """A payload size running past end-of-file is an invalid block."""
    block_stream = _stream(data_block(0, 1, 1, b"0123456789")[:-4])
    header = block_stream.next_block_header()

    assert header is not None
    with pytest.raises(InvalidBlockFoundError, match="declares"):
        block_stream.read_payload(header)


def test_unknown_block_kind_is_invalid() -> None:
    """Block kinds outside the known set are invalid blocks."""
    block_stream = _stream(b"\x09\x00\x00\x00\x00\x00\x00\x00")

    with pytest.raises(InvalidBlockFoundError, match="invalid block kind"):
        block_stream.next_block_header()


def test_stream_definition_round_trips_metadata() -> None:
    """Definitions should decode to what was encoded."""
    definition = StreamDefinition(
        name="task0.porta",
        type_descriptor="/base/samples/RigidBodyState",
        registry_blob="<registry/>",
        metadata=task_metadata("task0", "porta"),
    )

    assert StreamDefinition.parse(definition.encode()) == definition


def test_stream_definition_encoding_sorts_metadata() -> None:
    """Encoding is independent of metadata insertion order."""
    first = StreamDefinition("s", "/t", metadata={"b": "2", "a": "1"})
    second = StreamDefinition("s", "/t", metadata={"a": "1", "b": "2"})

    assert first.encode() == second.encode()


def test_truncated_stream_definition_is_invalid() -> None:
    """A definition payload cut in the middle of a string is invalid."""
    payload = StreamDefinition("task0.porta", "/base/Time").encode()

    with pytest.raises(InvalidBlockFoundError, match="truncated"):
        StreamDefinition.parse(payload[:-3], offset=42)


def test_data_block_header_times_are_microseconds() -> None:
    """Seconds and microseconds fields combine into microsecond times."""
    payload = encode_data_payload(rt_time=3_000_005, lg_time=7_250_000, data=b"abc")

    header = DataBlockHeader.parse(payload)

    assert (header.rt_time, header.lg_time, header.data_size) == (3_000_005, 7_250_000, 3)
    assert header.compressed is False


def test_write_block_uses_payload_size() -> None:
    """The header written should describe the actual payload."""
    writer = io.BytesIO()

    write_block(writer, BlockHeader(BlockKind.CONTROL, 0, payload_size=0), b"abcd")

    assert writer.getvalue() == control_block(b"abcd")
