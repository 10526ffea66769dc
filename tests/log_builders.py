"""Builders for synthetic raw logs used across tests."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

from core.types import CycleRecords, EventRecord, ImportOptions
from events.event_log import FORMAT_VERSION as EVENT_FORMAT_VERSION
from events.event_log import encode_cycle
from events.event_log import encode_prologue as encode_event_prologue
from ingest.importer import Importer
from logfile.block_codec import (
    BlockKind,
    StreamDefinition,
    encode_block_header,
    encode_data_payload,
    encode_prologue,
)
from logfile.compressed_io import open_out_stream
from store.dataset import Dataset


def task_metadata(task: str, port: str, **extra: str) -> dict[str, str]:
    """Return stream metadata naming the task and port that produced a stream."""
    metadata = {"rock_task_name": task, "rock_task_object_name": port}
    metadata.update(extra)
    return metadata


def stream_def_block(
    index: int,
    name: str,
    type_descriptor: str = "/base/Time",
    metadata: Mapping[str, str] | None = None,
) -> bytes:
    definition = StreamDefinition(
        name=name, type_descriptor=type_descriptor, metadata=dict(metadata or {})
    )
    payload = definition.encode()
    return encode_block_header(BlockKind.STREAM_DEF, index, len(payload)) + payload


def data_block(index: int, rt_time: int, lg_time: int, data: bytes = b"sample") -> bytes:
    payload = encode_data_payload(rt_time, lg_time, data)
    return encode_block_header(BlockKind.DATA, index, len(payload)) + payload


def control_block(payload: bytes = b"control") -> bytes:
    return encode_block_header(BlockKind.CONTROL, 0, len(payload)) + payload


def write_raw_log(path: Path, blocks: Iterable[bytes]) -> Path:
    """Write a multiplexed stream log, compressed when ``path`` ends in ``.zst``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open_out_stream(path) as stream:
        stream.write(encode_prologue())
        for block in blocks:
            stream.write(block)
    return path


def two_stream_blocks(sample_count: int = 3, start: int = 1_000_000) -> list[bytes]:
    """Blocks of a log declaring ``task0.porta`` and ``task0.portb``."""
    blocks = [
        stream_def_block(0, "task0.porta", metadata=task_metadata("task0", "porta")),
        stream_def_block(1, "task0.portb", metadata=task_metadata("task0", "portb")),
    ]
    for sample in range(sample_count):
        time = start + sample * 1_000
        blocks.append(data_block(0, time, time, f"a{sample}".encode()))
        blocks.append(data_block(1, time + 1, time + 1, f"b{sample}".encode()))
    return blocks


def write_event_log(
    path: Path,
    cycles: Iterable[CycleRecords],
    version: int = EVENT_FORMAT_VERSION,
    trailing: bytes = b"",
) -> Path:
    """Write an event log, appending ``trailing`` raw bytes after the cycles."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open_out_stream(path) as stream:
        stream.write(encode_event_prologue(version))
        for cycle in cycles:
            stream.write(encode_cycle(cycle))
        stream.write(trailing)
    return path


def sample_cycles(count: int = 3) -> list[CycleRecords]:
    return [
        CycleRecords(
            time=100.0 + cycle,
            events=(EventRecord(task="task0", event="start", time=100.0 + cycle),),
        )
        for cycle in range(count)
    ]


def write_raw_dataset(dir_path: Path, with_event_log: bool = True) -> Path:
    """Write a raw directory with one two-stream log, an event log and extras."""
    write_raw_log(dir_path / "task0.0.log", two_stream_blocks())
    if with_event_log:
        write_event_log(dir_path / "run-events.log", sample_cycles())
    (dir_path / "notes.txt").write_text("operator notes\n", encoding="utf-8")
    (dir_path / "config").mkdir(exist_ok=True)
    (dir_path / "config" / "robot.yml").write_text("speed: 1\n", encoding="utf-8")
    return dir_path


def build_dataset(root: Path, compress: bool = False) -> Dataset:
    """Import a raw directory written by ``write_raw_dataset`` under ``root``."""
    raw = write_raw_dataset(root / "raw")
    importer = Importer(root / "dataset", root / "cache", ImportOptions(compress=compress))
    return importer.normalize_dataset([raw])
