from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Any, Dict, Optional
import logging
import uuid

from deploygate.storage import get_storage_backend
from deploygate.utils.canonical import canonical_json, format_ts, utc_now

logger = logging.getLogger(__name__)

_lock = Lock()
_counters: Counter = Counter()


def incr(metric: str, value: int = 1, metadata: Optional[Dict[str, Any]] = None) -> None:
    with _lock:
        _counters[metric] += int(value)
    try:
        get_storage_backend().execute(
            """
            INSERT INTO metrics_events (event_id, metric_name, metric_value, created_at, metadata_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                metric,
                int(value),
                format_ts(utc_now()),
                canonical_json(metadata or {}),
            ),
        )
    except Exception:
        # Metrics persistence should never break the dispatch path.
        logger.debug("metric persistence failed metric=%s", metric, exc_info=True)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_counters)


def persisted_totals() -> Dict[str, int]:
    rows = get_storage_backend().fetchall(
        """
        SELECT metric_name, SUM(metric_value) AS total
        FROM metrics_events
        GROUP BY metric_name
        ORDER BY metric_name
        """
    )
    return {str(r["metric_name"]): int(r["total"] or 0) for r in rows}


def reset() -> None:
    with _lock:
        _counters.clear()
