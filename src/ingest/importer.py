"""Import of raw log directories into normalized datasets.

A raw directory holds multiplexed stream logs, at most one event log,
text files and arbitrary other entries. Import normalizes the stream
logs, copies the event log while indexing it, sets text and other
entries aside and writes the dataset identity and metadata files.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import re
import shutil
from typing import Iterable, Sequence

import yaml

from core.constants import (
    COMPRESSED_SUFFIX,
    DEFAULT_WRITE_BUFFER_SIZE,
    EVENT_LOG_BASENAME,
    EVENT_SQL_INDEX_FILE_NAME,
    EXTERNAL_METADATA_FILE_NAME,
    EXTERNAL_METADATA_PREFIX,
    IGNORED_DIR_NAME,
    IMPORT_STEP_EVENTS,
    IMPORT_STEP_EVENTS_NO_INDEX,
    IMPORT_STEP_IGNORED,
    IMPORT_STEP_POCOLOG,
    IMPORT_STEP_TEXT,
    IMPORT_TAG_FILE_NAME,
    POCOLOG_DIR_NAME,
    RAW_EVENT_LOG_SUFFIX,
    STREAM_INDEX_SUFFIX,
    TEXT_DIR_NAME,
)
from core.digest_io import DigestWriter
from core.errors import (
    DatasetAlreadyExistsError,
    EventLogDecodeError,
    InvalidFormatError,
    InvalidFormatVersionError,
    LogStoreImportError,
    TruncatedFileError,
)
from core.logging_config import get_logger
from core.reporting import Reporter
from core.types import (
    IdentityEntry,
    ImportInfo,
    ImportOptions,
    NormalizeOptions,
    RawDirectoryContents,
)
from events.event_index import EventIndex, write_event_index
from events.event_log import PROLOGUE_SIZE, EventLogReader, encode_prologue
from events.sql_index import EventSQLIndex
from ingest.normalize import Normalizer
from logfile.block_codec import read_fully
from logfile.compressed_io import (
    find_path_plain_or_compressed,
    identity_path,
    open_in_stream,
    open_out_stream,
)
from store.dataset import Dataset
from store.datastore import Datastore

_LOGGER = get_logger(__name__)

_POCOLOG_PATTERN = re.compile(r"^(.*)\.(\d+)\.log(?:\.zst)?$")
_TEXT_PATTERN = re.compile(r"\.txt(?:\.zst)?$")
_EVENT_LOG_PATTERN = re.compile(re.escape(RAW_EVENT_LOG_SUFFIX) + r"(?:\.zst)?$")


def classify(dir_path: Path) -> RawDirectoryContents:
    """Sort the entries of a raw log directory by kind.

    Index files of stream and event logs and dotfiles are left out.

    Raises:
        LogStoreImportError: If the directory holds more than one event log.
    """
    pocolog_files: list[tuple[str, int, Path]] = []
    text_files: list[Path] = []
    event_log_files: list[Path] = []
    candidates: list[Path] = []
    for path in sorted(dir_path.iterdir()):
        name = path.name
        if name.startswith("."):
            continue
        if path.is_file() and _EVENT_LOG_PATTERN.search(name):
            event_log_files.append(path)
            continue
        match = _POCOLOG_PATTERN.match(name)
        if path.is_file() and match:
            pocolog_files.append((match.group(1), int(match.group(2)), path))
            continue
        if path.is_file() and _TEXT_PATTERN.search(name):
            text_files.append(path)
            continue
        candidates.append(path)

    if len(event_log_files) > 1:
        names = ", ".join(path.name for path in event_log_files)
        raise LogStoreImportError(
            f"more than one event log found in {dir_path}: {names}. "
            "Move all but one of them out of the directory."
        )

    index_names = {
        _index_file_name(path)
        for path in [entry[2] for entry in pocolog_files] + event_log_files
    }
    other_files = [path for path in candidates if path.name not in index_names]
    return RawDirectoryContents(
        pocolog_files=tuple(path for _, _, path in sorted(pocolog_files)),
        text_files=tuple(text_files),
        event_log_files=tuple(event_log_files),
        other_files=tuple(other_files),
    )


def _index_file_name(path: Path) -> str:
    return identity_path(path).with_suffix(STREAM_INDEX_SUFFIX).name


class Importer:
    """Build a normalized dataset from raw log directories.

    Attributes:
        output_path: Dataset directory being created.
        cache_path: Cache directory of the dataset being created.
    """

    def __init__(
        self,
        output_path: Path,
        cache_path: Path,
        options: ImportOptions | None = None,
        reporter: Reporter | None = None,
        write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE,
    ) -> None:
        self.output_path = output_path
        self.cache_path = cache_path
        self._options = options or ImportOptions()
        self._reporter = reporter or Reporter()
        self._write_buffer_size = write_buffer_size

    def normalize_dataset(self, dir_paths: Sequence[Path]) -> Dataset:
        """Import ``dir_paths`` into ``output_path``.

        Returns:
            The new dataset, its identity and metadata files written.

        Raises:
            LogStoreImportError: If a directory cannot be classified.
            NormalizeError: If stream normalization fails.
        """
        self.output_path.mkdir(parents=True, exist_ok=True)
        self.cache_path.mkdir(parents=True, exist_ok=True)
        contents = [classify(dir_path) for dir_path in dir_paths]
        include = set(self._options.include)

        entries: list[IdentityEntry] = []
        if IMPORT_STEP_POCOLOG in include:
            entries += self._normalize_pocolog_files(
                [path for content in contents for path in content.pocolog_files]
            )
        event_logs = [path for content in contents for path in content.event_log_files]
        if IMPORT_STEP_EVENTS in include:
            entries += self._copy_event_logs(event_logs, with_index=True)
        elif IMPORT_STEP_EVENTS_NO_INDEX in include:
            entries += self._copy_event_logs(event_logs, with_index=False)
        if IMPORT_STEP_TEXT in include:
            self._copy_text_files([path for content in contents for path in content.text_files])
        if IMPORT_STEP_IGNORED in include:
            self._copy_ignored_entries(
                [path for content in contents for path in content.other_files]
            )

        dataset = Dataset(self.output_path, cache_path=self.cache_path)
        dataset.write_dataset_identity_to_metadata_file(entries)
        self._import_external_metadata(dataset, dir_paths)
        dataset.timestamp()
        dataset.metadata_write_to_file()
        _LOGGER.info(
            "dataset_imported",
            digest=dataset.digest,
            source_dirs=[str(path) for path in dir_paths],
            file_count=len(entries),
        )
        return dataset

    def _normalize_pocolog_files(self, paths: list[Path]) -> list[IdentityEntry]:
        if not paths:
            return []
        options = NormalizeOptions(
            delete_input=self._options.delete_input,
            compress=self._options.compress,
            compute_hash=True,
            write_buffer_size=self._write_buffer_size,
        )
        return Normalizer(options, self._reporter).normalize(
            paths,
            self.output_path / POCOLOG_DIR_NAME,
            self.cache_path / POCOLOG_DIR_NAME,
        )

    def _copy_event_logs(self, event_logs: list[Path], with_index: bool) -> list[IdentityEntry]:
        """Copy event logs to ``events.<n>.log``, indexing them if requested.

        A log that cannot be decoded is copied without any index and the
        SQL index is discarded for the whole import.
        """
        if not event_logs:
            return []
        sql_path = self.cache_path / EVENT_SQL_INDEX_FILE_NAME
        sql_index = EventSQLIndex.create(sql_path) if with_index else None
        entries = []
        try:
            for log_path in event_logs:
                if sql_index is None:
                    entries.append(self._copy_event_log(log_path, None))
                    continue
                try:
                    entries.append(self._copy_event_log(log_path, sql_index))
                except (EventLogDecodeError, InvalidFormatError, InvalidFormatVersionError) as error:
                    self._reporter.error(
                        f"failed to index {log_path}, the log will be imported without "
                        f"any index ({error})",
                        path=str(log_path),
                    )
                    sql_index.close()
                    sql_index = None
                    sql_path.unlink(missing_ok=True)
                    entries.append(self._copy_event_log(log_path, None))
        finally:
            if sql_index is not None:
                sql_index.close()
        return entries

    def _copy_event_log(self, log_path: Path, sql_index: EventSQLIndex | None) -> IdentityEntry:
        target = self._next_event_log_path()
        positions: list[tuple[int, float]] = []
        log_id = sql_index.start_import(identity_path(target).name) if sql_index else None
        self._reporter.info(f"copying {log_path} to {target.name}")
        try:
            with open_in_stream(log_path) as in_stream, open_out_stream(target) as out_stream:
                writer = DigestWriter(out_stream)
                if sql_index is None:
                    writer.write(read_fully(in_stream, PROLOGUE_SIZE))
                    reader = EventLogReader(in_stream, position=PROLOGUE_SIZE)
                else:
                    reader = EventLogReader(in_stream)
                    writer.write(encode_prologue(reader.read_prologue()))
                while True:
                    position = reader.tell()
                    try:
                        chunk = reader.read_one_chunk()
                    except TruncatedFileError as error:
                        self._reporter.warn(
                            f"{log_path} is truncated, copying only its complete cycles "
                            f"({error})",
                            path=str(log_path),
                        )
                        break
                    if chunk is None:
                        break
                    if sql_index is not None and log_id is not None:
                        cycle = reader.decode_one_chunk(chunk, position)
                        sql_index.add_cycle(log_id, cycle)
                        positions.append((position, cycle.time))
                    writer.write(chunk)
                    self._reporter.advance(len(chunk))
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        if sql_index is not None:
            sql_index.commit()
            write_event_index(
                self.cache_path / (identity_path(target).stem + STREAM_INDEX_SUFFIX),
                EventIndex(log_size=target.stat().st_size, entries=tuple(positions)),
            )
        return IdentityEntry(
            path=identity_path(target),
            size=writer.bytes_written,
            content_hash=writer.string_digest(),
        )

    def _next_event_log_path(self) -> Path:
        index = 0
        while True:
            candidate = self.output_path / f"{EVENT_LOG_BASENAME}.{index}.log"
            if find_path_plain_or_compressed(candidate) is None:
                if self._options.compress:
                    return candidate.with_name(candidate.name + COMPRESSED_SUFFIX)
                return candidate
            index += 1

    def _copy_text_files(self, paths: list[Path]) -> None:
        if not paths:
            return
        text_dir = self.output_path / TEXT_DIR_NAME
        text_dir.mkdir(exist_ok=True)
        for path in paths:
            self._copy_keeping_first(path, text_dir / path.name)

    def _copy_ignored_entries(self, paths: list[Path]) -> None:
        """Set aside unknown entries, merging directories of the same name."""
        if not paths:
            return
        ignored_dir = self.output_path / IGNORED_DIR_NAME
        ignored_dir.mkdir(exist_ok=True)
        for path in paths:
            self._reporter.info(f"{path.name} is not a known log file, setting it aside")
            if path.is_dir():
                shutil.copytree(
                    path,
                    ignored_dir / path.name,
                    copy_function=self._copy_keeping_first,
                    dirs_exist_ok=True,
                )
            else:
                self._copy_keeping_first(path, ignored_dir / path.name)

    def _copy_keeping_first(self, source: Path | str, target: Path | str) -> Path:
        """Copy ``source`` unless an earlier input directory already provided ``target``."""
        target = Path(target)
        if target.exists():
            self._reporter.warn(
                f"{source} has the same name as a file from an earlier directory, "
                f"keeping {target}",
                path=str(source),
            )
            return target
        shutil.copy2(source, target)
        return target

    def _import_external_metadata(self, dataset: Dataset, dir_paths: Sequence[Path]) -> None:
        for dir_path in reversed(list(dir_paths)):
            info_path = dir_path / EXTERNAL_METADATA_FILE_NAME
            if not info_path.is_file():
                continue
            try:
                document = yaml.safe_load(info_path.read_text(encoding="utf-8"))
            except yaml.YAMLError as error:
                self._reporter.warn(
                    f"failed to load metadata from {info_path}: {error}", path=str(info_path)
                )
                continue
            if not isinstance(document, list) or not document or not isinstance(document[0], dict):
                self._reporter.warn(
                    f"{info_path} does not hold a list of metadata mappings, ignoring it",
                    path=str(info_path),
                )
                continue
            for key, value in document[0].items():
                dataset.metadata_add(f"{EXTERNAL_METADATA_PREFIX}{key}", str(value))


def validate_dataset_import(
    store: Datastore,
    dataset: Dataset,
    force: bool = False,
    reporter: Reporter | None = None,
) -> None:
    """Check that ``dataset`` can be moved into ``store``.

    Raises:
        DatasetAlreadyExistsError: If the digest is already stored and
            ``force`` is not set.
    """
    digest = str(dataset.digest)
    if not store.has(digest):
        return
    if not force:
        raise DatasetAlreadyExistsError(
            f"a dataset with digest {digest} already exists in the store. "
            "Pass force to replace it."
        )
    (reporter or Reporter()).warn(
        f"replacing the existing dataset {digest} with the new import", digest=digest
    )
    store.delete(digest)


def save_import_info(dir_path: Path, dataset: Dataset, time: datetime | None = None) -> None:
    """Record in ``dir_path`` that it has been imported as ``dataset``."""
    info = {
        "digest": str(dataset.digest),
        "time": (time or datetime.now(timezone.utc)).isoformat(),
    }
    (dir_path / IMPORT_TAG_FILE_NAME).write_text(
        yaml.safe_dump(info, sort_keys=False), encoding="utf-8"
    )


def find_import_info(dir_path: Path) -> ImportInfo | None:
    """Return the import bookkeeping of ``dir_path``, if it was imported."""
    info_path = dir_path / IMPORT_TAG_FILE_NAME
    if not info_path.is_file():
        return None
    document = yaml.safe_load(info_path.read_text(encoding="utf-8")) or {}
    time_value = document.get("time")
    if isinstance(time_value, str):
        time_value = datetime.fromisoformat(time_value)
    return ImportInfo(digest=str(document["digest"]), time=time_value)


def import_dataset(
    store: Datastore,
    dir_paths: Iterable[Path],
    options: ImportOptions | None = None,
    force: bool = False,
    reporter: Reporter | None = None,
) -> Dataset:
    """Import raw directories as one dataset of ``store``.

    The dataset is built in a staging slot and moved to its digest
    location once complete. Nothing is left in the store on failure.

    Returns:
        The stored dataset.
    """
    paths = [Path(path) for path in dir_paths]
    reporter = reporter or Reporter()
    options = options or ImportOptions(compress=store.config.compress)
    with store.in_incoming() as (core_path, cache_path):
        importer = Importer(
            core_path,
            cache_path,
            options,
            reporter,
            write_buffer_size=store.config.write_buffer_size,
        )
        staged = importer.normalize_dataset(paths)
        validate_dataset_import(store, staged, force=force, reporter=reporter)
        dataset = store.move_dataset_to_store(staged)
    for path in paths:
        save_import_info(path, dataset)
    return dataset
