"""Unit tests for event log position indexes and the SQL index."""

from __future__ import annotations

from core.types import CycleRecords, EventRecord
from events import event_index
from events.event_log import PROLOGUE_SIZE
from events.sql_index import EventSQLIndex
from log_builders import sample_cycles, write_event_log


def test_rebuild_file_indexes_every_cycle(tmp_path) -> None:
    """The index records the position and time of each cycle."""
    log_path = write_event_log(tmp_path / "events.0.log", sample_cycles(3))
    index_path = tmp_path / "cache" / "events.0.idx"

    index = event_index.rebuild_file(log_path, index_path)

    assert index.cycle_count == 3
    assert index.entries[0] == (PROLOGUE_SIZE, 100.0)
    assert event_index.read_event_index(index_path) == index


def test_valid_file_tracks_log_size(tmp_path) -> None:
    """An index is invalid once the log changed or when it is missing."""
    log_path = write_event_log(tmp_path / "events.0.log", sample_cycles(2))
    index_path = tmp_path / "events.0.idx"

    assert not event_index.valid_file(index_path, log_path)

    event_index.rebuild_file(log_path, index_path)

    assert event_index.valid_file(index_path, log_path)

    write_event_log(log_path, sample_cycles(4))

    assert not event_index.valid_file(index_path, log_path)


def test_truncated_index_is_invalid(tmp_path) -> None:
    """A partially written index is never considered valid."""
    log_path = write_event_log(tmp_path / "events.0.log", sample_cycles(2))
    index_path = tmp_path / "events.0.idx"
    event_index.rebuild_file(log_path, index_path)
    index_path.write_bytes(index_path.read_bytes()[:6])

    assert not event_index.valid_file(index_path, log_path)


def test_sql_index_records_events(tmp_path) -> None:
    """Events added cycle by cycle are queryable by task and event name."""
    sql_path = tmp_path / "events.sql"
    with EventSQLIndex.create(sql_path) as sql_index:
        log_id = sql_index.start_import("events.0.log")
        sql_index.add_cycle(
            log_id,
            CycleRecords(time=1.0, events=(EventRecord("task0", "start", 1.0),)),
        )
        sql_index.add_cycle(
            log_id,
            CycleRecords(
                time=2.0,
                events=(EventRecord("task0", "stop", 2.0), EventRecord("task1", "start", 2.0)),
            ),
        )

        assert sql_index.log_names() == ["events.0.log"]
        assert sql_index.task_names() == ["task0", "task1"]
        assert sql_index.event_times("task0", "stop") == [2.0]


def test_sql_index_add_event_log(tmp_path) -> None:
    """Whole event logs can be indexed in one call."""
    log_path = write_event_log(tmp_path / "events.0.log", sample_cycles(3))

    with EventSQLIndex.create(tmp_path / "events.sql") as sql_index:
        cycle_count = sql_index.add_event_log(log_path)

        assert cycle_count == 3
        assert sql_index.event_times("task0", "start") == [100.0, 101.0, 102.0]


def test_create_replaces_existing_index(tmp_path) -> None:
    """Creating an index discards whatever was there before."""
    sql_path = tmp_path / "events.sql"
    with EventSQLIndex.create(sql_path) as sql_index:
        sql_index.start_import("old")

    with EventSQLIndex.create(sql_path) as sql_index:
        assert sql_index.log_names() == []
