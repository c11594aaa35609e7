"""A store persisted in a single SQLite database file."""

from __future__ import annotations

import os
import sqlite3
import threading
from itertools import takewhile
from typing import Iterable, Union

from web3track.store.base import Entry, Store
from web3track.structs import Log, log_from_json, log_to_json

_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS conf (key TEXT PRIMARY KEY, val TEXT NOT NULL)",
    "CREATE TABLE IF NOT EXISTS logs ("
    " bucket TEXT NOT NULL, indx INTEGER NOT NULL, val TEXT NOT NULL,"
    " PRIMARY KEY (bucket, indx))",
)


class FileEntry(Entry):
    """Logs of one filter, stored as JSON rows keyed by index."""

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock, bucket: str) -> None:
        self._conn = conn
        self._lock = lock
        self._bucket = bucket

    def _last_index(self) -> int:
        (last,) = self._conn.execute(
            "SELECT MAX(indx) FROM logs WHERE bucket = ?", (self._bucket,)
        ).fetchone()
        return 0 if last is None else last + 1

    def last_index(self) -> int:
        with self._lock:
            return self._last_index()

    def store_log(self, log: Log) -> None:
        self.store_logs([log])

    def store_logs(self, logs: Iterable[Log]) -> None:
        with self._lock, self._conn:
            start = self._last_index()
            self._conn.executemany(
                "INSERT INTO logs (bucket, indx, val) VALUES (?, ?, ?)",
                (
                    (self._bucket, start + offset, log_to_json(log))
                    for offset, log in enumerate(logs)
                ),
            )

    def remove_logs(self, index: int) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM logs WHERE bucket = ? AND indx >= ?", (self._bucket, index)
            )

    def get_log(self, index: int) -> Log:
        with self._lock:
            row = self._conn.execute(
                "SELECT val FROM logs WHERE bucket = ? AND indx = ?", (self._bucket, index)
            ).fetchone()
        if row is None:
            raise IndexError(f"no log at index {index}")
        return log_from_json(row[0])


class FileStore(Store):
    """Key-value pairs and log entries kept in one database file."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(os.fspath(path), check_same_thread=False)
        try:
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)
        except sqlite3.Error:
            self._conn.close()
            raise

    def get(self, key: str) -> str:
        with self._lock:
            row = self._conn.execute("SELECT val FROM conf WHERE key = ?", (key,)).fetchone()
        return "" if row is None else row[0]

    def list_prefix(self, prefix: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, val FROM conf WHERE key >= ? ORDER BY key", (prefix,)
            )
            return [val for _, val in takewhile(lambda row: row[0].startswith(prefix), rows)]

    def set(self, key: str, value: str) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO conf (key, val) VALUES (?, ?)", (key, value)
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def get_entry(self, name: str) -> FileEntry:
        return FileEntry(self._conn, self._lock, name)