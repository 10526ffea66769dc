"""Rebuild of a dataset's derived cache artifacts.

Everything under a dataset's cache directory can be deleted and
regenerated from the dataset's own files: stream indexes, event log
position indexes and the event SQL index.
"""

from __future__ import annotations

from pathlib import Path

from core.errors import InvalidFormatError, InvalidFormatVersionError
from core.logging_config import get_logger
from core.reporting import Reporter
from events import event_index
from events.event_log import open_event_log
from events.sql_index import EventSQLIndex
from logfile.stream_index import is_valid_stream_index, rebuild_stream_index_file
from store.dataset import Dataset

_LOGGER = get_logger(__name__)


class IndexBuilder:
    """Validate and rebuild the cache indexes of one dataset."""

    def __init__(self, dataset: Dataset, reporter: Reporter | None = None) -> None:
        self._dataset = dataset
        self._reporter = reporter or Reporter()

    def rebuild(self, force: bool = False) -> None:
        """Rebuild stream and event indexes, see the dedicated methods."""
        self.rebuild_pocolog_indexes(force=force)
        self.rebuild_roby_index(force=force)

    def rebuild_pocolog_indexes(self, force: bool = False) -> list[Path]:
        """Regenerate stream indexes that are missing or stale.

        Args:
            force: Rebuild every index, even valid ones.

        Returns:
            The stream files whose index was rebuilt.
        """
        self._dataset.pocolog_cache_path.mkdir(parents=True, exist_ok=True)
        rebuilt = []
        for logfile_path in self._dataset.each_pocolog_path():
            index_path = self._dataset.stream_index_path(logfile_path)
            if not force and is_valid_stream_index(index_path, logfile_path):
                self._reporter.info(f"up-to-date: {logfile_path.name}")
                continue
            self._reporter.info(f"rebuilding: {logfile_path.name}")
            rebuild_stream_index_file(logfile_path, index_path)
            rebuilt.append(logfile_path)
        self._dataset.reset_streams()
        return rebuilt

    def rebuild_roby_index(self, force: bool = False) -> Path:
        """Rebuild event log position indexes and the combined SQL index.

        Logs in an unsupported format version are skipped with a warning.
        The SQL index is always rebuilt from the logs that remain; a
        partially written SQL index is deleted if construction fails.

        Returns:
            Path of the SQL index.
        """
        self._dataset.cache_path.mkdir(parents=True, exist_ok=True)
        valid_logs = [
            log_path
            for log_path in self._dataset.each_event_log_path()
            if self._rebuild_event_log_index(log_path, force)
        ]
        sql_path = self._dataset.roby_sql_index_path()
        try:
            with EventSQLIndex.create(sql_path) as sql_index:
                for log_path in valid_logs:
                    sql_index.add_event_log(log_path)
        except BaseException:
            sql_path.unlink(missing_ok=True)
            raise
        _LOGGER.info(
            "event_sql_index_rebuilt", path=str(sql_path), event_log_count=len(valid_logs)
        )
        return sql_path

    def stale_indexes(self) -> list[Path]:
        """Return the index files that ``rebuild`` would regenerate.

        Event logs in an unsupported format version are not reported.
        """
        stale = []
        for logfile_path in self._dataset.each_pocolog_path():
            index_path = self._dataset.stream_index_path(logfile_path)
            if not is_valid_stream_index(index_path, logfile_path):
                stale.append(index_path)
        supported_logs = [
            log_path
            for log_path in self._dataset.each_event_log_path()
            if is_supported_event_log(log_path)
        ]
        for log_path in supported_logs:
            index_path = self._dataset.roby_index_path(log_path)
            if not event_index.valid_file(index_path, log_path):
                stale.append(index_path)
        sql_path = self._dataset.roby_sql_index_path()
        if supported_logs and not sql_path.exists():
            stale.append(sql_path)
        return stale

    def _rebuild_event_log_index(self, log_path: Path, force: bool) -> bool:
        index_path = self._dataset.roby_index_path(log_path)
        if not force and event_index.valid_file(index_path, log_path):
            self._reporter.info(f"up-to-date: {log_path.name}")
            return True
        self._reporter.info(f"rebuilding: {log_path.name}")
        try:
            event_index.rebuild_file(log_path, index_path)
        except InvalidFormatVersionError as error:
            self._reporter.warn(
                f"{log_path.name} is in an unsupported event log format, skipping ({error})",
                path=str(log_path),
            )
            return False
        return True


def is_supported_event_log(log_path: Path) -> bool:
    """Return whether ``log_path`` is an event log in a supported format version."""
    try:
        with open_event_log(log_path):
            return True
    except (InvalidFormatError, InvalidFormatVersionError):
        return False


def index_build(dataset: Dataset, force: bool = False, reporter: Reporter | None = None) -> None:
    """Rebuild the cache indexes of ``dataset``."""
    IndexBuilder(dataset, reporter).rebuild(force=force)
