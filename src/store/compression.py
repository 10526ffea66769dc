"""In-place compression and decompression of dataset files.

Identity paths never carry the compression suffix and content hashes are
computed over decompressed bytes, so neither operation changes a
dataset's digest.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from core.constants import IGNORED_DIR_NAME, TEXT_DIR_NAME
from core.reporting import Reporter
from logfile.compressed_io import compress_file, compressed_path, decompress_file, is_compressed
from store.dataset import Dataset


def compress_dataset(dataset: Dataset, reporter: Reporter | None = None) -> int:
    """Compress identity-bearing and auxiliary files of ``dataset``.

    Returns:
        The number of files compressed.
    """
    reporter = reporter or Reporter()
    count = 0
    for entry in dataset.read_dataset_identity_from_metadata_file():
        if not entry.path.is_file():
            reporter.info(f"{entry.path} already compressed")
            continue
        count += _compress(entry.path, reporter)
    count += _each_auxiliary_file(dataset, lambda path: _compress(path, reporter))
    return count


def decompress_dataset(dataset: Dataset, reporter: Reporter | None = None) -> int:
    """Decompress identity-bearing and auxiliary files of ``dataset``.

    Returns:
        The number of files decompressed.
    """
    reporter = reporter or Reporter()
    count = 0
    for entry in dataset.read_dataset_identity_from_metadata_file():
        if entry.path.is_file():
            reporter.info(f"{entry.path} is not compressed")
            continue
        count += _decompress(compressed_path(entry.path), reporter)
    count += _each_auxiliary_file(dataset, lambda path: _decompress(path, reporter))
    return count


def _compress(path: Path, reporter: Reporter) -> int:
    if is_compressed(path):
        reporter.info(f"{path} already compressed")
        return 0
    reporter.info(f"compressing {path}")
    compress_file(path, compressed_path(path))
    path.unlink()
    return 1


def _decompress(path: Path, reporter: Reporter) -> int:
    if not is_compressed(path):
        reporter.info(f"{path} is not compressed")
        return 0
    reporter.info(f"decompressing {path}")
    decompress_file(path, path.with_suffix(""))
    path.unlink()
    return 1


def _each_auxiliary_file(dataset: Dataset, handler: Callable[[Path], int]) -> int:
    count = 0
    for subdir in (TEXT_DIR_NAME, IGNORED_DIR_NAME):
        directory = dataset.dataset_path / subdir
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if path.is_file():
                count += handler(path)
    return count
