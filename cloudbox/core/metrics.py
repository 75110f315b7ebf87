from __future__ import annotations

import threading
from typing import Dict


class MetricsStore:
    """Thread-safe in-memory counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "uploads": 0,
            "bytes_uploaded": 0,
            "downloads": 0,
            "deleted": 0,
            "ingest_rollbacks": 0,
            "orphan_risks": 0,
            "orphans_swept": 0,
            "webhook_applied": 0,
            "webhook_ignored": 0,
        }

    def increment(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self._counters["uploads"] += 1
            self._counters["bytes_uploaded"] += size_bytes

    def record_download(self) -> None:
        self.increment("downloads")

    def record_deletions(self, count: int) -> None:
        self.increment("deleted", count)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)


metrics = MetricsStore()
