from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import os
import threading

from deploygate.storage.base import StorageBackend

try:
    import psycopg2
    from psycopg2 import errorcodes
    from psycopg2.extras import RealDictCursor
except ImportError:  # pragma: no cover
    psycopg2 = None
    errorcodes = None
    RealDictCursor = None


_TRANSIENT_PGCODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
}


class PostgresStorageBackend(StorageBackend):
    def __init__(self, dsn: Optional[str] = None):
        self._dsn = (
            dsn
            or os.getenv("DEPLOYGATE_POSTGRES_DSN")
            or os.getenv("DATABASE_URL")
        )
        if not self._dsn:
            raise ValueError("Postgres DSN missing. Set DEPLOYGATE_POSTGRES_DSN or DATABASE_URL.")
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is required for PostgresStorageBackend")
        self._local = threading.local()

    @property
    def name(self) -> str:
        return "postgres"

    @property
    def row_lock_clause(self) -> str:
        return " FOR UPDATE"

    def _adapt_sql(self, query: str) -> str:
        # Queries are written with sqlite-style '?' placeholders.
        return query.replace("?", "%s")

    def _active_tx(self) -> Optional[Dict[str, Any]]:
        return getattr(self._local, "tx_state", None)

    def _run(self, cur, query: str, params: Sequence[Any]) -> None:
        q = self._adapt_sql(query)
        # psycopg2 treats '%' as an interpolation marker whenever a params
        # tuple is passed, so DDL without params goes through bare.
        if params:
            cur.execute(q, tuple(params))
        else:
            cur.execute(q)

    @contextmanager
    def connect(self) -> Iterator[Any]:
        active = self._active_tx()
        if active is not None:
            yield active["conn"]
            return
        conn = psycopg2.connect(self._dsn)
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        active = self._active_tx()
        if active is not None:
            with active["conn"].cursor() as cur:
                self._run(cur, query, params)
                return cur.rowcount
        with self.connect() as conn:
            with conn.cursor() as cur:
                self._run(cur, query, params)
                conn.commit()
                return cur.rowcount

    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._run(cur, query, params)
                return [dict(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator["PostgresStorageBackend"]:
        active = self._active_tx()
        if active is not None:
            active["depth"] += 1
            try:
                yield self
            finally:
                active["depth"] -= 1
            return

        conn = psycopg2.connect(self._dsn)
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
        if psycopg2 is None or not isinstance(exc, psycopg2.Error):
            return False
        if isinstance(exc, psycopg2.OperationalError) and getattr(exc, "pgcode", None) is None:
            # Connection dropped mid-transaction.
            return True
        return str(getattr(exc, "pgcode", "") or "") in _TRANSIENT_PGCODES
