from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads_initiated": 0,
            "uploads_completed": 0,
            "uploads_failed": 0,
            "bytes_declared": 0,
            "deleted": 0,
            "read_grants": 0,
        }

    def record_initiated(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads_initiated"] += 1
            self._counters["bytes_declared"] += size_bytes

    def record_completed(self) -> None:
        with self._lock:
            self._counters["uploads_completed"] += 1

    def record_failed(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counters["uploads_failed"] += count

    def record_deletion(self) -> None:
        with self._lock:
            self._counters["deleted"] += 1

    def record_read_grants(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._counters["read_grants"] += count

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
