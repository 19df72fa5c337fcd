from __future__ import annotations

import time
from collections import Counter
from threading import Lock
from typing import Dict, Optional

from .models import MetricsSnapshot


class MetricsCollector:
    """Thread-safe process-wide counters for one crawl session.

    Every mutation takes the same lock, so callers may record from any number
    of worker threads. Error counts are kept both as a total and per kind
    (fetch, extraction, timestamp, sink).

    Readers share that one Lock rather than a read-write lock: the stdlib has
    none, and snapshot() only copies a handful of counters, so readers hold
    it for about as long as writers do."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._processed = 0
        self._errors = 0
        self._elements = 0
        self._retry_exhausted = 0
        self._errors_by_kind: Counter = Counter()
        self._duration = 0.0
        self._last_processed: Optional[float] = None
        self._start_time = time.time()

    def record_processing_time(self, seconds: float) -> None:
        """Add the time spent processing one document to the running total."""
        with self._lock:
            self._duration += max(0.0, seconds)

    def record_elements_processed(self, count: int = 1) -> None:
        with self._lock:
            self._elements += count

    def record_processed(self) -> None:
        """Count one successfully extracted document."""
        with self._lock:
            self._processed += 1
            self._last_processed = time.time()

    def record_error(self, kind: str = "other") -> None:
        with self._lock:
            self._errors += 1
            self._errors_by_kind[kind] += 1

    def record_retry_exhausted(self) -> None:
        with self._lock:
            self._retry_exhausted += 1

    def snapshot(self) -> MetricsSnapshot:
        """Return a point-in-time copy of every counter."""
        with self._lock:
            return MetricsSnapshot(
                processed_count=self._processed,
                error_count=self._errors,
                elements_processed=self._elements,
                retry_exhausted_count=self._retry_exhausted,
                errors_by_kind=dict(self._errors_by_kind),
                processing_duration=self._duration,
                last_processed_time=self._last_processed,
                start_time=self._start_time,
            )

    get_metrics = snapshot

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()

    def export_json(self) -> Dict:
        """Export the current counters as a plain dictionary."""
        snap = self.snapshot()
        return {
            "processed_count": snap.processed_count,
            "error_count": snap.error_count,
            "elements_processed": snap.elements_processed,
            "retry_exhausted_count": snap.retry_exhausted_count,
            "errors_by_kind": snap.errors_by_kind,
            "processing_duration": round(snap.processing_duration, 6),
            "last_processed_time": snap.last_processed_time,
            "start_time": snap.start_time,
        }
