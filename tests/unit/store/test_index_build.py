"""Unit tests for cache index rebuilds."""

from __future__ import annotations

import shutil

from core.reporting import Reporter
from events import event_index
from events.sql_index import EventSQLIndex
from store.index_build import IndexBuilder, index_build, is_supported_event_log
from log_builders import build_dataset, sample_cycles, write_event_log


def test_imported_dataset_has_no_stale_index(tmp_path) -> None:
    """Import writes every cache index."""
    dataset = build_dataset(tmp_path)

    assert IndexBuilder(dataset).stale_indexes() == []


def test_rebuild_regenerates_wiped_cache(tmp_path) -> None:
    """Everything in the cache can be regenerated from the dataset."""
    dataset = build_dataset(tmp_path)
    shutil.rmtree(dataset.cache_path)
    builder = IndexBuilder(dataset)

    stale_names = sorted(path.name for path in builder.stale_indexes())
    builder.rebuild()

    assert stale_names == [
        "events.0.idx",
        "events.sql",
        "task0::porta.0.idx",
        "task0::portb.0.idx",
    ]
    assert builder.stale_indexes() == []
    assert len(dataset.streams()) == 2


def test_rebuild_pocolog_indexes_skips_valid_indexes(tmp_path) -> None:
    """Valid indexes are kept unless a rebuild is forced."""
    dataset = build_dataset(tmp_path)
    builder = IndexBuilder(dataset)

    assert builder.rebuild_pocolog_indexes() == []
    assert len(builder.rebuild_pocolog_indexes(force=True)) == 2


def test_rebuild_roby_index_skips_unsupported_logs(tmp_path) -> None:
    """Logs in an unsupported format are skipped with a warning."""
    dataset = build_dataset(tmp_path)
    old_log = write_event_log(dataset.dataset_path / "events.1.log", sample_cycles(1), version=3)
    reporter = Reporter()

    sql_path = IndexBuilder(dataset, reporter).rebuild_roby_index()

    assert not is_supported_event_log(old_log)
    assert any("unsupported" in message for message in reporter.warnings)
    with EventSQLIndex(sql_path) as sql_index:
        assert sql_index.log_names() == ["events.0.log"]
    assert IndexBuilder(dataset).stale_indexes() == []


def test_rebuild_roby_index_refreshes_stale_event_index(tmp_path) -> None:
    """An event index is rebuilt once its log changed."""
    dataset = build_dataset(tmp_path)
    log_path = dataset.dataset_path / "events.0.log"
    write_event_log(log_path, sample_cycles(5))
    index_path = dataset.roby_index_path(log_path)

    assert not event_index.valid_file(index_path, log_path)

    index_build(dataset)

    assert event_index.read_event_index(index_path).cycle_count == 5
