"""Shared typed models.

This module defines immutable data models used by the normalizer,
importer, dataset and store layers to keep interfaces explicit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Mapping

from core.constants import IMPORT_DEFAULT_STEPS


@dataclass(frozen=True)
class IdentityEntry:
    """Identity of one identity-bearing dataset file.

    Attributes:
        path: Full path of the file, without any compression suffix. It is
            stored relative to the dataset root in the identity file.
        size: Size in bytes of the decompressed file.
        content_hash: Hex SHA-256 of the decompressed bytes, prologue
            excluded for stream logs. ``None`` when hashing was disabled.
    """

    path: Path
    size: int
    content_hash: str | None


@dataclass(frozen=True)
class NormalizeOptions:
    """Normalizer options.

    Attributes:
        delete_input: Delete a group's input files once its outputs are closed.
        compress: Write zstd-compressed canonical files.
        compute_hash: Hash canonical files while writing them.
        write_buffer_size: Per-output write buffer size in bytes.
    """

    delete_input: bool = False
    compress: bool = False
    compute_hash: bool = True
    write_buffer_size: int = 1024 * 1024


@dataclass(frozen=True)
class ImportOptions:
    """Raw directory import options.

    Attributes:
        compress: Store identity-bearing files zstd-compressed.
        delete_input: Delete raw stream logs once normalized.
        include: Import steps to run, see ``IMPORT_DEFAULT_STEPS``.
    """

    compress: bool = False
    delete_input: bool = False
    include: tuple[str, ...] = IMPORT_DEFAULT_STEPS


@dataclass(frozen=True)
class RawDirectoryContents:
    """Classification of the files found in one raw log directory.

    Attributes:
        pocolog_files: Multiplexed stream logs, sorted in part order.
        text_files: Plain text files.
        event_log_files: Event logs, at most one per directory.
        other_files: Everything else, files and directories.
    """

    pocolog_files: tuple[Path, ...]
    text_files: tuple[Path, ...]
    event_log_files: tuple[Path, ...]
    other_files: tuple[Path, ...]


@dataclass(frozen=True)
class EventRecord:
    """One decoded event-log record."""

    task: str
    event: str
    time: float


@dataclass(frozen=True)
class CycleRecords:
    """Records decoded from one event-log cycle.

    Attributes:
        time: Cycle start time, in seconds.
        events: Event records emitted during the cycle.
    """

    time: float
    events: tuple[EventRecord, ...] = ()


@dataclass(frozen=True)
class ImportInfo:
    """Bookkeeping saved in a raw directory once it has been imported."""

    digest: str
    time: datetime


@dataclass(frozen=True)
class LazyDataStream:
    """Per-stream descriptor loaded from the stream index, without samples.

    Attributes:
        path: Path to the canonical stream file (possibly compressed).
        index_dir: Cache directory holding the stream's index.
        name: Canonical stream name.
        type_name: Stream type descriptor.
        metadata: Sanitized stream metadata.
        interval_rt: Real-time (min, max) in microseconds, empty if no samples.
        interval_lg: Logical-time (min, max) in microseconds, empty if no samples.
        size: Number of samples.
    """

    path: Path
    index_dir: Path
    name: str
    type_name: str
    metadata: Mapping[str, str] = field(default_factory=dict)
    interval_rt: tuple[int, ...] = ()
    interval_lg: tuple[int, ...] = ()
    size: int = 0

    @property
    def task_name(self) -> str | None:
        return self.metadata.get("rock_task_name")

    def is_empty(self) -> bool:
        """Return whether the stream has no samples."""
        return self.size == 0
