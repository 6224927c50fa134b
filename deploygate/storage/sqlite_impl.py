from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import sqlite3
import threading

from deploygate import config
from deploygate.storage.base import StorageBackend


class SQLiteStorageBackend(StorageBackend):
    def __init__(self, db_path: Optional[str] = None):
        self._db_path = db_path
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "sqlite"

    @property
    def db_path(self) -> str:
        return self._db_path or config.DB_PATH

    def _open(self) -> sqlite3.Connection:
        db_file = Path(self.db_path)
        db_file.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(db_file), timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        active = self._active_tx()
        if active is not None:
            cur = active["conn"].cursor()
            cur.execute(query, tuple(params))
            return cur.rowcount
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            conn.commit()
            return cur.rowcount

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        active = self._active_tx()
        if active is not None:
            cur = active["conn"].cursor()
            cur.execute(query, tuple(params))
            row = cur.fetchone()
            return dict(row) if row else None
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            row = cur.fetchone()
            return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        active = self._active_tx()
        if active is not None:
            cur = active["conn"].cursor()
            cur.execute(query, tuple(params))
            return [dict(r) for r in cur.fetchall()]
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return [dict(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["SQLiteStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = self._open()
        # IMMEDIATE takes the database write lock up front, serializing
        # concurrent dispatchers for the whole transaction.
        conn.execute("BEGIN IMMEDIATE")
        self._local.tx_state = {"conn": conn, "depth": 1}
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.tx_state = None
            conn.close()

    def is_transient_error(self, exc: BaseException) -> bool:
        if not isinstance(exc, sqlite3.OperationalError):
            return False
        message = str(exc).lower()
        return "locked" in message or "busy" in message
