"""Unit tests for dataset repair."""

from __future__ import annotations

from dataclasses import replace

from core.reporting import Reporter
from store.datastore import Datastore
from store.dataset import Dataset
from store.repair import (
    AddEventLogsToIdentity,
    ComputeTimestamp,
    MigrateEventLogName,
    RebuildCacheIndexes,
    find_all_repair_ops,
    repair_dataset,
)
from log_builders import build_dataset


def _legacy_dataset(tmp_path, store: Datastore) -> Dataset:
    """Store a dataset using the unnumbered event log name and no timestamp."""
    staged = build_dataset(tmp_path / "staged")
    legacy_path = staged.dataset_path / "events.log"
    (staged.dataset_path / "events.0.log").rename(legacy_path)
    (staged.cache_path / "events.0.idx").unlink()
    entries = [
        replace(entry, path=legacy_path) if entry.path.name == "events.0.log" else entry
        for entry in staged.read_dataset_identity_from_metadata_file()
    ]
    staged.write_dataset_identity_to_metadata_file(entries)
    staged.metadata_delete("timestamp")
    staged.metadata_write_to_file()
    return store.move_dataset_to_store(staged)


def _snapshot(dataset: Dataset) -> dict[str, bytes]:
    return {
        str(path.relative_to(dataset.dataset_path)): path.read_bytes()
        for path in sorted(dataset.dataset_path.rglob("*"))
        if path.is_file()
    }


def test_healthy_dataset_needs_nothing(tmp_path, store: Datastore) -> None:
    """A freshly imported dataset has no applicable operation."""
    staged = build_dataset(tmp_path / "staged")
    dataset = store.move_dataset_to_store(staged)
    reporter = Reporter()

    result = repair_dataset(store, dataset, dry_run=True, reporter=reporter)

    assert result.operations == []
    assert reporter.messages == [("info", "nothing to do")]


def test_dry_run_lists_operations_without_mutating(tmp_path, store: Datastore) -> None:
    """Dry runs list operations in order and change nothing."""
    dataset = _legacy_dataset(tmp_path, store)
    before = _snapshot(dataset)

    result = repair_dataset(store, store.get(str(dataset.digest), validate=False))

    assert [type(operation) for operation in result.operations] == [
        MigrateEventLogName,
        ComputeTimestamp,
    ]
    assert "events.0.log" in str(result.operations[0])
    assert _snapshot(dataset) == before
    assert result.redirects == []
    assert store.has(str(dataset.digest))


def test_live_repair_migrates_and_redirects(tmp_path, store: Datastore) -> None:
    """Live repair renames the legacy log and redirects the old digest."""
    dataset = _legacy_dataset(tmp_path, store)
    old_digest = str(dataset.digest)

    result = repair_dataset(store, store.get(old_digest, validate=False), dry_run=False)

    new_digest = str(result.dataset.digest)
    assert [type(operation) for operation in result.operations] == [
        MigrateEventLogName,
        RebuildCacheIndexes,
        ComputeTimestamp,
    ]
    assert result.redirects == [(old_digest, new_digest)]
    assert new_digest != old_digest
    assert store.is_redirect(store.core_path_of(old_digest))
    repaired = store.get(old_digest)
    assert repaired.digest == new_digest
    assert (repaired.dataset_path / "events.0.log").exists()
    assert not (repaired.dataset_path / "events.log").exists()
    assert repaired.has_metadata("timestamp")
    assert find_all_repair_ops(store, repaired) == []


def test_missing_event_logs_are_added_to_identity(tmp_path, store: Datastore) -> None:
    """Event logs on disk but not in the identity are added back."""
    staged = build_dataset(tmp_path / "staged")
    original_digest = staged.digest
    staged.write_dataset_identity_to_metadata_file(
        [
            entry
            for entry in staged.read_dataset_identity_from_metadata_file()
            if entry.path.name != "events.0.log"
        ]
    )
    dataset = store.move_dataset_to_store(staged)
    old_digest = str(dataset.digest)

    result = repair_dataset(store, dataset, dry_run=False)

    assert [type(operation) for operation in result.operations] == [AddEventLogsToIdentity]
    assert result.dataset.digest == original_digest
    assert result.redirects == [(old_digest, original_digest)]
    store.get(str(original_digest)).validate_identity_metadata()


def test_live_repair_leaves_caller_dataset_unchanged(tmp_path, store: Datastore) -> None:
    """The dataset handed to repair keeps its digest and store path."""
    dataset = _legacy_dataset(tmp_path, store)
    old_digest = str(dataset.digest)
    old_path = dataset.dataset_path

    result = repair_dataset(store, dataset, dry_run=False)

    assert dataset.digest == old_digest
    assert dataset.dataset_path == old_path
    assert result.dataset.digest != old_digest
    assert result.dataset.dataset_path == store.core_path_of(str(result.dataset.digest))
    assert old_path.is_file()
