"""Detection and repair of outdated or inconsistent stored datasets.

Repair runs an ordered list of idempotent operations. Operations that
change the dataset identity run first, then cache rebuilds, then the
timestamp computation. When an operation changes the dataset digest, a
redirect from the old digest to the new one is written to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from core.constants import (
    EVENT_LOG_BASENAME,
    LEGACY_EVENT_LOG_FILE_NAME,
    TIMESTAMP_METADATA_KEY,
)
from core.errors import LogStoreStoreError
from core.logging_config import get_logger
from core.reporting import Reporter
from core.types import IdentityEntry
from logfile.compressed_io import compressed_path, find_path_plain_or_compressed, identity_path
from store.datastore import Datastore
from store.dataset import Dataset
from store.index_build import IndexBuilder

_LOGGER = get_logger(__name__)


class RepairOperation:
    """Base class of repair operations.

    Subclasses implement ``detect``, ``describe`` and ``apply``.
    """

    def __init__(self, store: Datastore, dataset: Dataset) -> None:
        self.store = store
        self.dataset = dataset

    @classmethod
    def detect(cls, store: Datastore, dataset: Dataset) -> "RepairOperation | None":
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def apply(self) -> Dataset:
        raise NotImplementedError

    def __str__(self) -> str:
        return f"{self.dataset.digest}: {self.describe()}"


class MigrateEventLogName(RepairOperation):
    """Rename a legacy unnumbered event log to ``events.0.log``."""

    @classmethod
    def detect(cls, store: Datastore, dataset: Dataset) -> RepairOperation | None:
        identity = dataset.read_dataset_identity_from_metadata_file()
        if any(entry.path.name == LEGACY_EVENT_LOG_FILE_NAME for entry in identity):
            return cls(store, dataset)
        return None

    def describe(self) -> str:
        return (
            f"rename {LEGACY_EVENT_LOG_FILE_NAME} to {self._target_path(self.dataset).name}, "
            "changing the dataset identity"
        )

    def apply(self) -> Dataset:
        return self.store.updating_digest(self.dataset, self._rename)

    def _target_path(self, dataset: Dataset) -> Path:
        index = 0
        while True:
            candidate = dataset.dataset_path / f"{EVENT_LOG_BASENAME}.{index}.log"
            if find_path_plain_or_compressed(candidate) is None:
                return candidate
            index += 1

    def _rename(self, dataset: Dataset) -> None:
        identity = dataset.read_dataset_identity_from_metadata_file()
        target = self._target_path(dataset)
        updated = []
        for entry in identity:
            if entry.path.name != LEGACY_EVENT_LOG_FILE_NAME:
                updated.append(entry)
                continue
            on_disk = find_path_plain_or_compressed(entry.path)
            if on_disk is None:
                raise LogStoreStoreError(
                    f"{entry.path} is listed in the dataset identity but missing on disk"
                )
            on_disk.rename(target if on_disk == entry.path else compressed_path(target))
            updated.append(
                IdentityEntry(path=target, size=entry.size, content_hash=entry.content_hash)
            )
        dataset.write_dataset_identity_to_metadata_file(updated)


class AddEventLogsToIdentity(RepairOperation):
    """Add event logs present on disk but missing from the identity."""

    @classmethod
    def detect(cls, store: Datastore, dataset: Dataset) -> RepairOperation | None:
        if _missing_event_logs(dataset):
            return cls(store, dataset)
        return None

    def describe(self) -> str:
        missing = _missing_event_logs(self.dataset)
        names = ", ".join(path.name for path in missing)
        return (
            f"add {len(missing)} missing event logs to the dataset identity, "
            f"changing the digest: {names}"
        )

    def apply(self) -> Dataset:
        return self.store.updating_digest(self.dataset, self._add_missing)

    def _add_missing(self, dataset: Dataset) -> None:
        identity = dataset.read_dataset_identity_from_metadata_file()
        identity += [
            dataset.compute_file_identity(path)
            for path in _missing_event_logs(dataset)
        ]
        dataset.write_dataset_identity_to_metadata_file(identity)


class RebuildCacheIndexes(RepairOperation):
    """Regenerate missing or stale cache indexes."""

    @classmethod
    def detect(cls, store: Datastore, dataset: Dataset) -> RepairOperation | None:
        if IndexBuilder(dataset).stale_indexes():
            return cls(store, dataset)
        return None

    def describe(self) -> str:
        stale = IndexBuilder(self.dataset).stale_indexes()
        return f"rebuild {len(stale)} missing or stale cache indexes"

    def apply(self) -> Dataset:
        IndexBuilder(self.dataset).rebuild(force=False)
        return self.dataset


class ComputeTimestamp(RepairOperation):
    """Compute and save the ``timestamp`` metadata."""

    @classmethod
    def detect(cls, store: Datastore, dataset: Dataset) -> RepairOperation | None:
        if dataset.has_metadata(TIMESTAMP_METADATA_KEY):
            return None
        return cls(store, dataset)

    def describe(self) -> str:
        return "compute and save the timestamp metadata"

    def apply(self) -> Dataset:
        self.dataset.timestamp()
        self.dataset.metadata_write_to_file()
        return self.dataset


OPERATIONS: tuple[type[RepairOperation], ...] = (
    MigrateEventLogName,
    AddEventLogsToIdentity,
    RebuildCacheIndexes,
    ComputeTimestamp,
)


@dataclass
class RepairResult:
    """Outcome of ``repair_dataset``.

    Attributes:
        dataset: The dataset after repair (unchanged in dry-run mode).
        operations: Operations found (dry run) or applied (live), in order.
        redirects: ``(old digest, new digest)`` redirects written.
    """

    dataset: Dataset
    operations: list[RepairOperation] = field(default_factory=list)
    redirects: list[tuple[str, str]] = field(default_factory=list)


def find_all_repair_ops(store: Datastore, dataset: Dataset) -> list[RepairOperation]:
    """Return every applicable operation, without changing anything."""
    found = (operation_class.detect(store, dataset) for operation_class in OPERATIONS)
    return [operation for operation in found if operation is not None]


def find_repair_op(store: Datastore, dataset: Dataset) -> RepairOperation | None:
    """Return the first applicable operation."""
    for operation_class in OPERATIONS:
        operation = operation_class.detect(store, dataset)
        if operation is not None:
            return operation
    return None


def repair_dataset(
    store: Datastore,
    dataset: Dataset,
    dry_run: bool = True,
    reporter: Reporter | None = None,
) -> RepairResult:
    """Detect and optionally fix problems of a stored dataset.

    Args:
        store: Store holding the dataset.
        dataset: Dataset to repair, usually loaded without validation.
        dry_run: Only list applicable operations.
        reporter: Receives one message per operation.

    Returns:
        The repair outcome.

    Raises:
        LogStoreStoreError: If an operation does not resolve the problem it
            detected.
    """
    reporter = reporter or Reporter()
    if dry_run:
        operations = find_all_repair_ops(store, dataset)
        if not operations:
            reporter.info("nothing to do", digest=dataset.digest)
        for operation in operations:
            reporter.info(str(operation), digest=dataset.digest)
        return RepairResult(dataset=dataset, operations=operations)

    result = RepairResult(dataset=dataset)
    previous: type[RepairOperation] | None = None
    while True:
        operation = find_repair_op(store, result.dataset)
        if operation is None:
            return result
        if type(operation) is previous:
            raise LogStoreStoreError(
                f"{operation} is still needed after being applied. Inspect the dataset "
                "manually."
            )
        previous = type(operation)
        reporter.info(str(operation), digest=result.dataset.digest)
        old_digest = result.dataset.digest
        repaired = operation.apply()
        result.operations.append(operation)
        if old_digest is not None and repaired.digest not in (None, old_digest):
            store.write_redirect(
                old_digest, to=str(repaired.digest), reason=type(operation).__name__
            )
            result.redirects.append((old_digest, str(repaired.digest)))
            _LOGGER.info(
                "dataset_repair_redirected",
                old_digest=old_digest,
                new_digest=repaired.digest,
                operation=type(operation).__name__,
            )
        result.dataset = repaired


def _missing_event_logs(dataset: Dataset) -> list[Path]:
    identity_paths = {entry.path for entry in dataset.read_dataset_identity_from_metadata_file()}
    return [
        path
        for path in dataset.each_event_log_path()
        if identity_path(path) not in identity_paths
    ]
