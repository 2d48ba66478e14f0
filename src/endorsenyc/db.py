from __future__ import annotations

import os
import sqlite3
import threading
from typing import Any

from .migrations import apply_migrations

DEFAULT_DATA_DIR = "/data"
STATE_DB_NAME = "state.sqlite3"

_MIGRATED_PATHS: set[str] = set()
_MIGRATION_LOCK = threading.Lock()


def get_data_dir() -> str:
    return os.environ.get("ENYC_DATA_DIR", DEFAULT_DATA_DIR)


def get_state_db_path() -> str:
    return os.path.join(get_data_dir(), STATE_DB_NAME)


class DBConn:
    def __init__(self, conn: sqlite3.Connection, path: str) -> None:
        self._conn = conn
        self.path = path

    def execute(self, sql: str, params: tuple | list | None = None):
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    def begin_immediate(self) -> None:
        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=30, check_same_thread=False)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    key = os.path.abspath(path)
    with _MIGRATION_LOCK:
        if key not in _MIGRATED_PATHS:
            apply_migrations(raw)
            _MIGRATED_PATHS.add(key)
    return DBConn(raw, path)
