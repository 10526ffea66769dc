"""Unit tests for event log decoding."""

from __future__ import annotations

import io
import struct

import pytest

from core.errors import (
    EventLogDecodeError,
    InvalidFormatError,
    InvalidFormatVersionError,
    TruncatedFileError,
)
from core.types import CycleRecords, EventRecord
from events.event_log import (
    PROLOGUE_SIZE,
    EventLogReader,
    EventLogWriter,
    encode_cycle,
    encode_prologue,
    open_event_log,
)
from log_builders import sample_cycles, write_event_log


def test_written_cycles_are_read_back(tmp_path) -> None:
    """Cycles written by the writer decode to the same records."""
    log_path = tmp_path / "events.0.log"
    with log_path.open("wb") as stream:
        writer = EventLogWriter(stream)
        for cycle in sample_cycles(2):
            writer.write_cycle(cycle)

    with open_event_log(log_path) as reader:
        first = reader.load_one_cycle()
        second = reader.load_one_cycle()
        end = reader.load_one_cycle()

    assert [first, second] == sample_cycles(2)
    assert end is None


def test_reader_tracks_cycle_positions(tmp_path) -> None:
    """Positions count bytes from the start of the log."""
    cycles = sample_cycles(2)
    log_path = write_event_log(tmp_path / "events.0.log", cycles)

    with open_event_log(log_path) as reader:
        assert reader.tell() == PROLOGUE_SIZE
        reader.load_one_cycle()
        assert reader.tell() == PROLOGUE_SIZE + len(encode_cycle(cycles[0]))


def test_unsupported_version_is_rejected(tmp_path) -> None:
    """Logs in another format version cannot be decoded."""
    log_path = write_event_log(tmp_path / "events.0.log", [], version=3)

    with pytest.raises(InvalidFormatVersionError, match="version 3"):
        open_event_log(log_path)


def test_foreign_file_is_rejected() -> None:
    """Files without the event log magic are an invalid format."""
    reader = EventLogReader(io.BytesIO(b"POCOSIM\x00" + b"\x00" * 8))

    with pytest.raises(InvalidFormatError, match="magic"):
        reader.read_prologue()


def test_partial_cycle_is_truncation(tmp_path) -> None:
    """A cycle cut short raises after the complete cycles were read."""
    cycle = encode_cycle(CycleRecords(time=1.0))
    log_path = write_event_log(tmp_path / "events.0.log", sample_cycles(1), trailing=cycle[:-2])

    with open_event_log(log_path) as reader:
        assert reader.load_one_cycle() is not None
        with pytest.raises(TruncatedFileError):
            reader.load_one_cycle()


def test_undecodable_payload_raises_decode_error() -> None:
    """Payloads that are not cycle documents cannot be decoded."""
    payload = b"not json"
    stream = io.BytesIO(encode_prologue() + struct.pack("<I", len(payload)) + payload)
    reader = EventLogReader(stream)
    reader.read_prologue()

    with pytest.raises(EventLogDecodeError, match=f"position {PROLOGUE_SIZE}"):
        reader.load_one_cycle()


def test_raw_chunks_are_copied_verbatim() -> None:
    """Raw chunks include their length prefix so they can be copied as is."""
    cycle = CycleRecords(time=2.5, events=(EventRecord("task0", "stop", 2.5),))
    stream = io.BytesIO(encode_prologue() + encode_cycle(cycle))
    reader = EventLogReader(stream)
    reader.read_prologue()

    chunk = reader.read_one_chunk()

    assert chunk == encode_cycle(cycle)
    assert reader.decode_one_chunk(chunk) == cycle
