from __future__ import annotations

import hashlib
import logging
import threading
from typing import Any, Callable, Dict, Optional

from deploygate import engine
from deploygate.config import get_scheduler_interval_seconds, is_scheduler_enabled
from deploygate.storage import get_storage_backend
from deploygate.utils.canonical import format_ts, utc_now

logger = logging.getLogger(__name__)

_LOCAL_TICK_LOCK = threading.Lock()
_SCHEDULER_THREAD: Optional[threading.Thread] = None
_STOP_EVENT = threading.Event()

TICK_LOCK_SCOPE = "deploygate:dispatch_tick"


def _advisory_lock_id(lock_scope: str) -> int:
    digest = hashlib.sha256(lock_scope.encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], byteorder="big", signed=False)
    return value & ((1 << 63) - 1)


def _with_scheduler_lock(fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    """One tick at a time per process, and per database on Postgres."""
    if not _LOCAL_TICK_LOCK.acquire(blocking=False):
        return {"ok": True, "skipped": True, "reason": "LOCAL_LOCK_HELD"}
    try:
        storage = get_storage_backend()
        if storage.name != "postgres":
            return fn()

        lock_id = _advisory_lock_id(TICK_LOCK_SCOPE)
        with storage.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_try_advisory_lock(%s)", (lock_id,))
                row = cur.fetchone()
                if not row or not bool(row[0]):
                    return {"ok": True, "skipped": True, "reason": "POSTGRES_LOCK_HELD"}
            try:
                return fn()
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
                conn.commit()
    finally:
        _LOCAL_TICK_LOCK.release()


def tick() -> Dict[str, Any]:
    def _run_tick() -> Dict[str, Any]:
        report = engine.tick()
        return {"ok": True, "generated_at": format_ts(utc_now()), **report.to_dict()}

    return _with_scheduler_lock(_run_tick)


def _scheduler_loop() -> None:
    interval_seconds = get_scheduler_interval_seconds()
    while not _STOP_EVENT.wait(max(1, interval_seconds)):
        try:
            tick()
        except Exception:
            logger.exception("dispatch scheduler tick failed")


def start_scheduler() -> Dict[str, Any]:
    global _SCHEDULER_THREAD
    if not is_scheduler_enabled():
        return {"started": False, "reason": "DISABLED"}
    if _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive():
        return {"started": True, "reason": "ALREADY_RUNNING"}
    _STOP_EVENT.clear()
    thread = threading.Thread(target=_scheduler_loop, name="deploygate-dispatch-scheduler", daemon=True)
    thread.start()
    _SCHEDULER_THREAD = thread
    return {"started": True, "reason": "STARTED"}


def stop_scheduler() -> Dict[str, Any]:
    global _SCHEDULER_THREAD
    if _SCHEDULER_THREAD is None:
        return {"stopped": True, "reason": "NOT_RUNNING"}
    _STOP_EVENT.set()
    _SCHEDULER_THREAD.join(timeout=2.0)
    _SCHEDULER_THREAD = None
    return {"stopped": True, "reason": "STOPPED"}


def scheduler_status() -> Dict[str, Any]:
    running = _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive()
    return {
        "enabled": is_scheduler_enabled(),
        "running": running,
        "interval_seconds": get_scheduler_interval_seconds(),
    }
