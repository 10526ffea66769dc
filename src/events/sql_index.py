"""Relational index of event log contents.

This module stores the tasks and events of all event logs of a dataset
in one SQLite database so they can be queried without replaying logs.
"""

from __future__ import annotations

from pathlib import Path
import sqlite3

from core.logging_config import get_logger
from core.types import CycleRecords
from events.event_log import open_event_log

_LOGGER = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    cycle_count INTEGER NOT NULL DEFAULT 0,
    time_start REAL,
    time_end REAL
);
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    log_id INTEGER NOT NULL REFERENCES logs(id),
    task_id INTEGER NOT NULL REFERENCES tasks(id),
    name TEXT NOT NULL,
    time REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS events_task ON events(task_id, name);
"""


class EventSQLIndex:
    """SQLite-backed index of event log cycles."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.path))
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(_SCHEMA)
        self.conn.commit()
        self._task_ids: dict[str, int] = {}

    @classmethod
    def create(cls, path: Path) -> "EventSQLIndex":
        """Create an empty index, replacing any existing file."""
        path.unlink(missing_ok=True)
        return cls(path)

    def __enter__(self) -> "EventSQLIndex":
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()

    def start_import(self, name: str) -> int:
        """Register a new event log and return its id."""
        cursor = self.conn.execute("INSERT INTO logs (name) VALUES (?)", (name,))
        return int(cursor.lastrowid or 0)

    def add_cycle(self, log_id: int, cycle: CycleRecords) -> None:
        """Add the events of one cycle to the log ``log_id``."""
        self.conn.execute(
            "UPDATE logs SET cycle_count = cycle_count + 1, "
            "time_start = COALESCE(time_start, ?), time_end = ? WHERE id = ?",
            (cycle.time, cycle.time, log_id),
        )
        for record in cycle.events:
            self.conn.execute(
                "INSERT INTO events (log_id, task_id, name, time) VALUES (?, ?, ?, ?)",
                (log_id, self._task_id(record.task), record.event, record.time),
            )

    def add_event_log(self, path: Path, name: str | None = None) -> int:
        """Index every cycle of the event log at ``path``.

        Returns:
            The number of cycles indexed.
        """
        log_id = self.start_import(name or path.name)
        cycle_count = 0
        with open_event_log(path) as reader:
            while True:
                cycle = reader.load_one_cycle()
                if cycle is None:
                    break
                self.add_cycle(log_id, cycle)
                cycle_count += 1
        self.conn.commit()
        _LOGGER.info("event_log_indexed", path=str(path), cycle_count=cycle_count)
        return cycle_count

    def commit(self) -> None:
        self.conn.commit()

    def log_names(self) -> list[str]:
        cursor = self.conn.execute("SELECT name FROM logs ORDER BY id")
        return [str(row[0]) for row in cursor.fetchall()]

    def task_names(self) -> list[str]:
        cursor = self.conn.execute("SELECT name FROM tasks ORDER BY name")
        return [str(row[0]) for row in cursor.fetchall()]

    def event_times(self, task: str, event: str) -> list[float]:
        """Return the emission times of ``event`` on ``task``, in time order."""
        cursor = self.conn.execute(
            "SELECT events.time FROM events JOIN tasks ON events.task_id = tasks.id "
            "WHERE tasks.name = ? AND events.name = ? ORDER BY events.time",
            (task, event),
        )
        return [float(row[0]) for row in cursor.fetchall()]

    def close(self) -> None:
        self.conn.commit()
        self.conn.close()

    def _task_id(self, task: str) -> int:
        task_id = self._task_ids.get(task)
        if task_id is not None:
            return task_id
        self.conn.execute("INSERT OR IGNORE INTO tasks (name) VALUES (?)", (task,))
        row = self.conn.execute("SELECT id FROM tasks WHERE name = ?", (task,)).fetchone()
        task_id = int(row[0])
        self._task_ids[task] = task_id
        return task_id
