"""Dataset model.

This module represents one normalized dataset directory: its identity
file (the per-file hashes its digest is computed from), its free-form
multi-valued metadata and its streams and event logs.
"""

from __future__ import annotations

from datetime import datetime, timezone
import os
from pathlib import Path
import re
from typing import Iterable, Iterator

import yaml

from core.constants import (
    DIGEST_METADATA_KEY,
    EVENT_LOG_BASENAME,
    EVENT_SQL_INDEX_FILE_NAME,
    EXTERNAL_TIME_METADATA_KEY,
    IDENTITY_FILE_NAME,
    LAYOUT_VERSION,
    METADATA_FILE_NAME,
    POCOLOG_DIR_NAME,
    STREAM_INDEX_SUFFIX,
    TIMESTAMP_METADATA_KEY,
)
from core.dataset_identity import (
    compute_dataset_digest,
    compute_file_digest,
    validate_encoded_digest,
)
from core.digest_io import CountingReader
from core.errors import (
    InvalidDigestError,
    InvalidIdentityMetadataError,
    InvalidLayoutVersionError,
    InvalidPathError,
    MultipleValuesError,
    NoValueError,
    ReadOnlyMetadataError,
    StreamNotFoundError,
)
from core.logging_config import get_logger
from core.types import IdentityEntry, LazyDataStream
from logfile.block_codec import PROLOGUE_SIZE, read_fully
from logfile.compressed_io import (
    decompressed,
    find_path_plain_or_compressed,
    identity_path,
    open_in_stream,
)
from logfile.stream_index import load_lazy_data_stream, stream_index_path

_LOGGER = get_logger(__name__)

_MISSING = object()
_STREAM_LOG_PATTERN = re.compile(r"^.+\.\d+\.log(?:\.zst)?$")
_EVENT_LOG_PATTERN = re.compile(rf"^{EVENT_LOG_BASENAME}\.(\d+)\.log(?:\.zst)?$")
_EXTERNAL_TIME_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})-(\d{2})(\d{2})(\d{2})?")


def parse_external_time(value: str) -> datetime:
    """Parse a ``YYYYMMDD-HHMM[SS]`` time, as UTC.

    Raises:
        ValueError: If ``value`` does not follow the pattern.
    """
    match = _EXTERNAL_TIME_PATTERN.match(value)
    if match is None:
        raise ValueError(f"'{value}' does not match YYYYMMDD-HHMM[SS]")
    year, month, day, hour, minute, second = match.groups()
    return datetime(
        int(year),
        int(month),
        int(day),
        int(hour),
        int(minute),
        int(second or 0),
        tzinfo=timezone.utc,
    )


def event_log_number(path: Path) -> int | None:
    """Return ``n`` for an ``events.<n>.log`` path, ``None`` for other names."""
    match = _EVENT_LOG_PATTERN.match(path.name)
    return int(match.group(1)) if match else None


class Dataset:
    """A normalized dataset and its metadata.

    Metadata is loaded from disk on first access. The ``digest`` metadata
    entry always reflects the dataset digest and cannot be written.
    """

    def __init__(
        self, dataset_path: Path, digest: str | None = None, cache_path: Path | None = None
    ) -> None:
        self.dataset_path = dataset_path.resolve()
        self.cache_path = (cache_path or dataset_path).resolve()
        self.digest = digest
        self._metadata: dict[str, set[str]] | None = None
        self._lazy_data_streams: list[LazyDataStream] | None = None

    def __repr__(self) -> str:
        return f"Dataset({self.dataset_path}, digest={self.digest})"

    @staticmethod
    def dataset_exists(path: Path) -> bool:
        """Return whether ``path`` holds a dataset identity file."""
        return (path / IDENTITY_FILE_NAME).exists()

    def digest_from_path(self) -> str:
        """Return the digest encoded in the dataset directory name.

        Raises:
            InvalidPathError: If the directory name is not a valid digest.
        """
        name = self.dataset_path.name
        try:
            return validate_encoded_digest(name)
        except InvalidDigestError as error:
            raise InvalidPathError(
                f"{self.dataset_path}'s name does not look like a valid digest: {error}"
            ) from error

    # Identity

    @property
    def identity_metadata_path(self) -> Path:
        return self.dataset_path / IDENTITY_FILE_NAME

    def each_important_file(self) -> Iterator[Path]:
        """Yield identity-bearing files as found on disk (possibly compressed)."""
        yield from self.each_pocolog_path()
        yield from self.each_event_log_path()

    def each_pocolog_path(self) -> Iterator[Path]:
        pocolog_dir = self.dataset_path / POCOLOG_DIR_NAME
        if not pocolog_dir.is_dir():
            return
        for path in sorted(pocolog_dir.iterdir()):
            if path.is_file() and _STREAM_LOG_PATTERN.match(path.name):
                yield path

    def each_event_log_path(self) -> Iterator[Path]:
        """Yield ``events.<n>.log`` files in ascending ``n`` order."""
        if not self.dataset_path.is_dir():
            return
        numbered = []
        for path in self.dataset_path.iterdir():
            number = event_log_number(path)
            if number is not None and path.is_file():
                numbered.append((number, path))
        for _, path in sorted(numbered):
            yield path

    def compute_file_identity(self, path: Path) -> IdentityEntry:
        """Compute the identity entry of one file from its decompressed bytes.

        Stream logs do not hash their prologue.
        """
        with open_in_stream(path) as raw_stream:
            stream = CountingReader(raw_stream)
            if path.parent.name == POCOLOG_DIR_NAME:
                read_fully(stream, PROLOGUE_SIZE)  # type: ignore[arg-type]
            content_hash = compute_file_digest(stream)  # type: ignore[arg-type]
        return IdentityEntry(
            path=identity_path(path), size=stream.bytes_read, content_hash=content_hash
        )

    def compute_dataset_identity_from_files(self) -> list[IdentityEntry]:
        """Compute the identity of every identity-bearing file on disk."""
        return [self.compute_file_identity(path) for path in self.each_important_file()]

    def compute_dataset_digest(self, entries: Iterable[IdentityEntry] | None = None) -> str:
        """Compute the dataset digest from identity entries.

        Args:
            entries: Identity entries, read from the identity file when omitted.
        """
        if entries is None:
            entries = self.read_dataset_identity_from_metadata_file()
        return compute_dataset_digest(
            (self._relative_identity_path(entry.path), entry.size, _entry_hash(entry))
            for entry in entries
        )

    def write_dataset_identity_to_metadata_file(
        self, entries: Iterable[IdentityEntry] | None = None
    ) -> str:
        """Validate identity entries, then write them and the resulting digest.

        Args:
            entries: Identity entries, computed from disk when omitted.

        Returns:
            The dataset digest.

        Raises:
            InvalidIdentityMetadataError: If an entry is outside the dataset,
                has an invalid size or an invalid hash.
        """
        if entries is None:
            entries = self.compute_dataset_identity_from_files()
        identity = []
        for entry in entries:
            relative_path = self._relative_identity_path(entry.path)
            if isinstance(entry.size, bool) or not isinstance(entry.size, int):
                raise InvalidIdentityMetadataError(f"{entry.size!r} is not a valid file size")
            if entry.size < 0:
                raise InvalidIdentityMetadataError(f"{entry.size} is not a valid file size")
            identity.append(
                {"path": relative_path, "size": entry.size, "hash": _entry_hash(entry)}
            )
        dataset_digest = compute_dataset_digest(
            (item["path"], item["size"], item["hash"]) for item in identity
        )
        document = {
            "layout_version": LAYOUT_VERSION,
            "digest": dataset_digest,
            "identity": sorted(identity, key=lambda item: str(item["path"])),
        }
        self.identity_metadata_path.write_text(
            yaml.safe_dump(document, sort_keys=False), encoding="utf-8"
        )
        self._set_digest(dataset_digest)
        _LOGGER.info(
            "dataset_identity_written",
            dataset_path=str(self.dataset_path),
            digest=dataset_digest,
            file_count=len(identity),
        )
        return dataset_digest

    def read_dataset_identity_from_metadata_file(
        self, metadata_path: Path | None = None
    ) -> list[IdentityEntry]:
        """Load identity entries from the identity file.

        Entries are checked for shape only, not against the files on disk.

        Raises:
            InvalidLayoutVersionError: If the layout version is not supported.
            InvalidIdentityMetadataError: If the file content is malformed.
        """
        metadata_path = metadata_path or self.identity_metadata_path
        try:
            document = yaml.safe_load(metadata_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as error:
            raise InvalidIdentityMetadataError(
                f"cannot parse {metadata_path}: {error}"
            ) from error
        if not isinstance(document, dict):
            raise InvalidIdentityMetadataError(f"{metadata_path} does not contain a mapping")
        layout_version = document.get("layout_version")
        if layout_version != LAYOUT_VERSION:
            raise InvalidLayoutVersionError(
                f"layout version in {self.dataset_path} is {layout_version}, "
                f"expected {LAYOUT_VERSION}"
            )
        items = document.get("identity")
        if items is None:
            raise InvalidIdentityMetadataError(f"no 'identity' field in {metadata_path}")
        if not isinstance(items, list):
            raise InvalidIdentityMetadataError(
                f"the 'identity' field in {metadata_path} is not a list"
            )
        return [self._parse_identity_item(item, metadata_path) for item in items]

    def validate_identity_metadata(self) -> None:
        """Re-hash every identity-bearing file and compare with the identity file.

        Raises:
            InvalidIdentityMetadataError: On a missing or extra file, or a
                size or hash mismatch.
        """
        precomputed = {
            entry.path: entry for entry in self.read_dataset_identity_from_metadata_file()
        }
        for entry in self.compute_dataset_identity_from_files():
            stored = precomputed.pop(entry.path, None)
            if stored is None:
                raise InvalidIdentityMetadataError(
                    f"{entry.path} is present on disk and missing in the identity file"
                )
            if stored != entry:
                raise InvalidIdentityMetadataError(
                    f"identity mismatch for {entry.path} between the identity file "
                    f"(size={stored.size}, hash={stored.content_hash}) and the state "
                    f"on disk (size={entry.size}, hash={entry.content_hash})"
                )
        if precomputed:
            missing = ", ".join(sorted(str(path) for path in precomputed))
            raise InvalidIdentityMetadataError(
                f"{len(precomputed)} files are listed in the dataset identity, "
                f"but are not present on disk: {missing}"
            )

    def weak_validate_identity_metadata(
        self, entries: Iterable[IdentityEntry] | None = None
    ) -> None:
        """Check identity shape and file presence without hashing.

        Raises:
            InvalidIdentityMetadataError: If an entry is malformed, or the
                identity-bearing files on disk and in the identity differ.
        """
        if entries is None:
            entries = self.read_dataset_identity_from_metadata_file()
        important_files = {identity_path(path) for path in self.each_important_file()}
        for entry in entries:
            if entry.size < 0:
                raise InvalidIdentityMetadataError(f"{entry.size} is not a valid file size")
            _entry_hash(entry)
            if entry.path in important_files:
                important_files.remove(entry.path)
                continue
            raise InvalidIdentityMetadataError(
                f"file {entry.path} is listed in the identity metadata, but is not "
                "present on disk. Run a repair on the dataset."
            )
        if important_files:
            extra = ", ".join(sorted(str(path) for path in important_files))
            raise InvalidIdentityMetadataError(
                f"{len(important_files)} important files are present on disk but are "
                f"not listed in the identity metadata: {extra}"
            )

    # Metadata

    @property
    def metadata_path(self) -> Path:
        return self.dataset_path / METADATA_FILE_NAME

    @property
    def metadata(self) -> dict[str, set[str]]:
        """Return the metadata map, loading it from disk on first access."""
        if self._metadata is None:
            if self.metadata_path.exists():
                self.metadata_read_from_file()
            else:
                self.metadata_reset()
        return self._metadata  # type: ignore[return-value]

    def metadata_reset(self) -> None:
        self._metadata = {}
        self._sync_digest_metadata()

    def metadata_read_from_file(self) -> dict[str, set[str]]:
        """Re-read the metadata file, discarding in-memory changes."""
        loaded = yaml.safe_load(self.metadata_path.read_text(encoding="utf-8")) or {}
        self._metadata = {
            str(key): {str(value) for value in _as_list(values)}
            for key, values in loaded.items()
        }
        self._sync_digest_metadata()
        return self._metadata

    def metadata_write_to_file(self) -> None:
        document = {key: sorted(values) for key, values in sorted(self.metadata.items())}
        self.metadata_path.write_text(yaml.safe_dump(document), encoding="utf-8")

    def metadata_set(self, key: str, *values: str) -> None:
        """Replace the values of ``key``."""
        self._check_writable(key)
        self.metadata[key] = {str(value) for value in values}

    def metadata_add(self, key: str, *values: str) -> None:
        """Add values to ``key``, creating it if needed."""
        self._check_writable(key)
        self.metadata.setdefault(key, set()).update(str(value) for value in values)

    def metadata_delete(self, key: str) -> set[str] | None:
        self._check_writable(key)
        return self.metadata.pop(key, None)

    def has_metadata(self, key: str) -> bool:
        return key in self.metadata

    def metadata_get(self, key: str) -> set[str] | None:
        return self.metadata.get(key)

    def metadata_lookup(self, key: str) -> str | None:
        """Return the single value of ``key``, or ``None`` if it has none.

        Raises:
            MultipleValuesError: If ``key`` has more than one value.
        """
        values = self.metadata.get(key)
        if not values:
            return None
        if len(values) > 1:
            raise MultipleValuesError(
                f"multiple values found for {key}. Use metadata_fetch_all."
            )
        return next(iter(values))

    def metadata_fetch(self, key: str, default: object = _MISSING) -> object:
        """Return the single value of ``key``.

        Raises:
            NoValueError: If ``key`` has no value and no default is given.
            MultipleValuesError: If ``key`` has more than one value.
        """
        value = self.metadata_lookup(key)
        if value is not None:
            return value
        if default is _MISSING:
            raise NoValueError(f"no value found for key {key}")
        return default

    def metadata_fetch_all(self, key: str, default: object = _MISSING) -> set[str]:
        """Return all values of ``key``.

        Raises:
            NoValueError: If ``key`` has no value and no default is given.
        """
        values = self.metadata.get(key)
        if values is not None:
            return values
        if default is _MISSING:
            raise NoValueError(f"no value found for key {key}")
        return set(default)  # type: ignore[call-overload]

    def timestamp(self) -> datetime:
        """Return a time representative of this dataset, computing it once.

        The value is memoized in the ``timestamp`` metadata entry.
        """
        value = self.metadata_lookup(TIMESTAMP_METADATA_KEY)
        if value is None:
            seconds = self.compute_timestamp()
            self.metadata_set(TIMESTAMP_METADATA_KEY, str(seconds))
        else:
            seconds = int(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    def compute_timestamp(self) -> int:
        """Compute the dataset timestamp in seconds since epoch.

        Uses the earliest external recording time, else the earliest stream
        sample, else zero.
        """
        external_times = []
        for value in self.metadata.get(EXTERNAL_TIME_METADATA_KEY, set()):
            try:
                external_times.append(parse_external_time(value))
            except ValueError:
                _LOGGER.warning("dataset_external_time_invalid", value=value)
        if external_times:
            return int(min(external_times).timestamp())
        starts = [stream.interval_lg[0] for stream in self.streams() if stream.interval_lg]
        if starts:
            return min(starts) // 1_000_000
        return 0

    # Streams and event logs

    def pocolog_path(self, name: str) -> Path:
        """Return a plain path to the canonical file of stream ``name``.

        Compressed files are decompressed into the cache first.

        Raises:
            StreamNotFoundError: If the dataset has no file for ``name``.
        """
        expected = self.dataset_path / POCOLOG_DIR_NAME / f"{name}.0.log"
        path = find_path_plain_or_compressed(expected)
        if path is None:
            raise StreamNotFoundError(f"no stream file for {name} (expected {expected})")
        return decompressed(path, self.pocolog_cache_path)

    @property
    def pocolog_cache_path(self) -> Path:
        return self.cache_path / POCOLOG_DIR_NAME

    def stream_index_path(self, logfile_path: Path) -> Path:
        return stream_index_path(logfile_path, self.pocolog_cache_path)

    def streams(self) -> list[LazyDataStream]:
        """Return per-stream descriptors, loaded from the cache indexes once."""
        if self._lazy_data_streams is None:
            self._lazy_data_streams = [
                load_lazy_data_stream(path, self.pocolog_cache_path)
                for path in self.each_pocolog_path()
            ]
        return self._lazy_data_streams

    def reset_streams(self) -> None:
        self._lazy_data_streams = None

    def interval_lg(self) -> tuple[int, ...]:
        """Return the logical time (min, max) over all streams, empty if none."""
        intervals = [stream.interval_lg for stream in self.streams() if stream.interval_lg]
        if not intervals:
            return ()
        return (min(start for start, _ in intervals), max(end for _, end in intervals))

    def is_empty(self) -> bool:
        return not self.interval_lg()

    def roby_index_path(self, event_log_path: Path) -> Path:
        """Return the cache path of the position index of an event log."""
        return self.cache_path / (identity_path(event_log_path).stem + STREAM_INDEX_SUFFIX)

    def roby_sql_index_path(self) -> Path:
        return self.cache_path / EVENT_SQL_INDEX_FILE_NAME

    # Internals

    def _set_digest(self, dataset_digest: str) -> None:
        self.digest = dataset_digest
        if self._metadata is not None:
            self._sync_digest_metadata()

    def _sync_digest_metadata(self) -> None:
        if self._metadata is None:
            return
        if self.digest is not None:
            self._metadata[DIGEST_METADATA_KEY] = {self.digest}
        else:
            self._metadata.pop(DIGEST_METADATA_KEY, None)

    def _check_writable(self, key: str) -> None:
        if key == DIGEST_METADATA_KEY:
            raise ReadOnlyMetadataError(
                "the 'digest' metadata entry is derived from the dataset identity "
                "and cannot be modified"
            )

    def _relative_identity_path(self, path: Path) -> str:
        full_path = path if path.is_absolute() else self.dataset_path / path
        relative = Path(os.path.relpath(full_path.resolve(), self.dataset_path))
        if ".." in relative.parts:
            raise InvalidIdentityMetadataError(f"found path {path} not within the dataset")
        return relative.as_posix()

    def _parse_identity_item(self, item: object, metadata_path: Path) -> IdentityEntry:
        if not isinstance(item, dict):
            raise InvalidIdentityMetadataError(
                f"found a non-mapping identity entry in {metadata_path}"
            )
        path = item.get("path")
        size = item.get("size")
        content_hash = item.get("hash")
        if not isinstance(path, str):
            raise InvalidIdentityMetadataError(
                f"found non-string value for field 'path' in {metadata_path}"
            )
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise InvalidIdentityMetadataError(
                f"found invalid value {size!r} for field 'size' in {metadata_path}"
            )
        if not isinstance(content_hash, str):
            raise InvalidIdentityMetadataError(
                f"found non-string value for field 'hash' in {metadata_path}"
            )
        try:
            validate_encoded_digest(content_hash)
        except InvalidDigestError as error:
            raise InvalidIdentityMetadataError(
                f"value of field 'hash' in {metadata_path} does not look like a "
                f"valid SHA-256 digest: {error}"
            ) from error
        relative = Path(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise InvalidIdentityMetadataError(f"found path {path} not within the dataset")
        return IdentityEntry(
            path=self.dataset_path / relative, size=size, content_hash=content_hash
        )


def _entry_hash(entry: IdentityEntry) -> str:
    if entry.content_hash is None:
        raise InvalidIdentityMetadataError(
            f"{entry.path} has no content hash. Normalize with hashing enabled."
        )
    try:
        return validate_encoded_digest(entry.content_hash)
    except InvalidDigestError as error:
        raise InvalidIdentityMetadataError(
            f"{entry.content_hash} is not a valid digest"
        ) from error


def _as_list(values: object) -> list[object]:
    if isinstance(values, (list, tuple, set)):
        return list(values)
    return [values]
