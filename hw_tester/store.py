"""SQLite-backed record of completed test runs."""

from __future__ import annotations

import contextlib
import csv
import io
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from .constants import MAX_TEST_ID
from .core.models import TIMESTAMP_FORMAT, TestRunRecord

LOGGER = logging.getLogger(__name__)

NOT_FOUND_TEXT = "No test record found for this ID"
CSV_HEADER = ("test_id", "timestamp", "duration", "result")

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS test_logs ("
    "test_id INTEGER PRIMARY KEY, "
    "timestamp TEXT NOT NULL, "
    "duration REAL NOT NULL, "
    "result INTEGER NOT NULL)"
)


class StoreError(RuntimeError):
    """Base class for result store failures."""


class StoreUnavailable(StoreError):
    """Raised when the database cannot be opened, read or written."""


class WriteConflict(StoreError):
    """Raised when a run is recorded under an id that already exists."""


def format_record(record: TestRunRecord) -> str:
    return (
        f"Test ID: {record.test_id}\n"
        f"Start Time: {record.timestamp}\n"
        f"Duration: {record.duration_seconds:g} seconds\n"
        f"Result: {'Success' if record.success else 'Failure'}"
    )


class SqliteResultStore:
    """Result store keeping one row per test run.

    Every operation opens its own connection so the store can be shared
    between the event loop and worker threads; a lock serialises access.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def prep(self) -> None:
        """Create the database directory and table if they are missing."""

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create {self.path.parent}: {exc}") from exc

        with self._connect() as conn:
            try:
                conn.execute(_SCHEMA)
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Create table error: {exc}") from exc

    def allocate_id(self) -> int:
        with self._connect() as conn:
            try:
                row = conn.execute("SELECT MAX(test_id) FROM test_logs").fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot read last test id: {exc}") from exc

        next_id = 1 if row is None or row[0] is None else int(row[0]) + 1
        if next_id > MAX_TEST_ID:
            raise StoreUnavailable("Test id space exhausted")
        return next_id

    def record_run(
        self, test_id: int, timestamp: str, duration_seconds: float, success: bool
    ) -> None:
        with self._connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO test_logs (test_id, timestamp, duration, result) "
                    "VALUES (?, ?, ?, ?)",
                    (test_id, timestamp, duration_seconds, int(success)),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                raise WriteConflict(f"Test id {test_id} is already recorded") from exc
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Insert error: {exc}") from exc

        LOGGER.debug("Recorded test %s (success=%s)", test_id, success)

    def get_run(self, test_id: int) -> Optional[TestRunRecord]:
        with self._connect() as conn:
            try:
                row = conn.execute(
                    "SELECT test_id, timestamp, duration, result "
                    "FROM test_logs WHERE test_id = ?",
                    (test_id,),
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot read test {test_id}: {exc}") from exc

        if row is None:
            return None
        return _row_to_record(row)

    def list_runs(self) -> List[TestRunRecord]:
        with self._connect() as conn:
            try:
                rows = conn.execute(
                    "SELECT test_id, timestamp, duration, result "
                    "FROM test_logs ORDER BY test_id ASC"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Error while reading rows: {exc}") from exc

        return [_row_to_record(row) for row in rows]

    def lookup_run(self, test_id: int) -> str:
        record = self.get_run(test_id)
        if record is None:
            return NOT_FOUND_TEXT
        return format_record(record)

    def export_all(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for record in self.list_runs():
            writer.writerow(
                (
                    record.test_id,
                    record.timestamp,
                    f"{record.duration_seconds:g}",
                    int(record.success),
                )
            )
        return buffer.getvalue()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = sqlite3.connect(self.path)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Cannot open DB at {self.path}: {exc}") from exc
            try:
                yield conn
            finally:
                conn.close()


def _row_to_record(row: tuple) -> TestRunRecord:
    test_id, timestamp, duration, result = row
    return TestRunRecord(
        test_id=int(test_id),
        started_at=datetime.strptime(timestamp, TIMESTAMP_FORMAT),
        duration_seconds=float(duration),
        success=bool(result),
    )
