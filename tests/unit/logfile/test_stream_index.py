"""Unit tests for stream index files."""

from __future__ import annotations

from pathlib import Path

import pytest

from core.errors import InvalidFormatError
from logfile.block_codec import PROLOGUE_SIZE
from logfile.compressed_io import compress_file, compressed_path
from logfile.stream_index import (
    is_valid_stream_index,
    load_lazy_data_stream,
    read_stream_index,
    rebuild_stream_index_file,
    scan_stream_log,
    stream_index_path,
)
from log_builders import data_block, stream_def_block, task_metadata, write_raw_log


def _write_single_stream_log(path: Path, sample_count: int = 3) -> Path:
    blocks = [stream_def_block(0, "task0.porta", metadata=task_metadata("task0", "porta"))]
    for sample in range(sample_count):
        blocks.append(data_block(0, 1_000 + sample, 2_000 + sample))
    return write_raw_log(path, blocks)


def test_scan_stream_log_collects_samples(tmp_path) -> None:
    """A scan should record every sample and the time intervals."""
    log_path = _write_single_stream_log(tmp_path / "task0::porta.0.log")

    index = scan_stream_log(log_path)

    assert index.declaration_offset == PROLOGUE_SIZE
    assert index.sample_count == 3
    assert [lg_time for _, lg_time in index.entries] == [2_000, 2_001, 2_002]
    assert index.interval_rt == (1_000, 1_002)
    assert index.interval_lg == (2_000, 2_002)
    assert index.definition.name == "task0.porta"


def test_index_file_round_trip(tmp_path) -> None:
    """Reading a rebuilt index returns the scanned index."""
    log_path = _write_single_stream_log(tmp_path / "task0::porta.0.log")
    index_path = stream_index_path(log_path, tmp_path / "cache")

    written = rebuild_stream_index_file(log_path, index_path)

    assert index_path.name == "task0::porta.0.idx"
    assert read_stream_index(index_path) == written


def test_summary_only_read_skips_entries(tmp_path) -> None:
    """Loading without entries still returns the sample count."""
    log_path = _write_single_stream_log(tmp_path / "s.0.log")
    index_path = tmp_path / "s.0.idx"
    rebuild_stream_index_file(log_path, index_path)

    index = read_stream_index(index_path, load_entries=False)

    assert index.sample_count == 3
    assert index.entries == ()


def test_index_becomes_stale_when_log_changes(tmp_path) -> None:
    """An index is only valid for the log size it was built from."""
    log_path = _write_single_stream_log(tmp_path / "s.0.log", sample_count=2)
    index_path = tmp_path / "s.0.idx"
    rebuild_stream_index_file(log_path, index_path)

    assert is_valid_stream_index(index_path, log_path)

    _write_single_stream_log(log_path, sample_count=5)

    assert not is_valid_stream_index(index_path, log_path)


def test_garbage_index_is_invalid(tmp_path) -> None:
    """Files that are not indexes are reported invalid, not raised."""
    log_path = _write_single_stream_log(tmp_path / "s.0.log")
    index_path = tmp_path / "s.0.idx"
    index_path.write_bytes(b"garbage")

    assert not is_valid_stream_index(index_path, log_path)
    with pytest.raises(InvalidFormatError):
        read_stream_index(index_path)


def test_scan_rejects_multiplexed_logs(tmp_path) -> None:
    """Canonical logs hold exactly one stream."""
    log_path = write_raw_log(
        tmp_path / "raw.0.log",
        [stream_def_block(0, "a"), stream_def_block(1, "b")],
    )

    with pytest.raises(InvalidFormatError, match="more than one stream"):
        scan_stream_log(log_path)


def test_load_lazy_data_stream_rebuilds_missing_index(tmp_path) -> None:
    """Descriptors are available even when the cache was wiped."""
    log_path = _write_single_stream_log(tmp_path / "task0::porta.0.log")
    index_dir = tmp_path / "cache"

    stream = load_lazy_data_stream(log_path, index_dir)

    assert stream.name == "task0.porta"
    assert stream.task_name == "task0"
    assert stream.size == 3
    assert stream.interval_lg == (2_000, 2_002)
    assert (index_dir / "task0::porta.0.idx").exists()


def test_load_lazy_data_stream_reads_compressed_logs(tmp_path) -> None:
    """Compressed logs are indexed from their decompressed bytes."""
    log_path = _write_single_stream_log(tmp_path / "task0::porta.0.log")
    compress_file(log_path, compressed_path(log_path))
    log_path.unlink()

    stream = load_lazy_data_stream(compressed_path(log_path), tmp_path / "cache")

    assert stream.size == 3
    assert not stream.is_empty()
