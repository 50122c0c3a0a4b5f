"""
Run counters for filehasher

One MetricsCollector is created per run and shared by all workers of that
run. Counters and gauges are guarded by a single lock.
"""

import json
import logging
import threading
import time
from collections import defaultdict
from typing import Dict, Optional

logger = logging.getLogger('filehasher.metrics')

# Counters reported at the end of every run, in display order
RUN_COUNTERS = (
    'new',
    'modified',
    'deleted',
    'restored',
    'metadata_refreshed',
    'backfilled',
    'unchanged',
    'declined',
    'failed',
)


class MetricsCollector:
    """Counters and gauges for one reconciliation run

    Counters:
    - new / modified / deleted / restored: applied changes
    - metadata_refreshed: timestamp-only updates
    - backfilled: tracked files whose content was stored for the first time
    - unchanged: paths that needed no action
    - declined: changes refused at the confirmation prompt
    - failed: paths whose task raised
    - bytes_stored, bytes_restored: content written to the db or to disk
    """

    def __init__(self):
        self._counters: Dict[str, int] = defaultdict(int)
        self._gauges: Dict[str, float] = {}
        self._lock = threading.Lock()

    def inc(self, name: str, amount: int = 1):
        with self._lock:
            self._counters[name] += amount

    def set_gauge(self, name: str, value: float):
        with self._lock:
            self._gauges[name] = value

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_gauge(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def counters(self) -> Dict[str, int]:
        """Snapshot of all counters, the run counters zero-filled and first"""
        with self._lock:
            snapshot = {name: self._counters.get(name, 0) for name in RUN_COUNTERS}
            for name, value in self._counters.items():
                snapshot.setdefault(name, value)
            return snapshot

    def gauges(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._gauges)

    def log_structured(self, event: str, **fields):
        """Emit one 'METRIC: {json}' line for log scrapers

        Args:
            event: Event name, stored under the 'event' key
            **fields: Extra values merged into the JSON object
        """
        payload = {'event': event, 'timestamp': time.time()}
        payload.update(fields)
        logger.info("METRIC: %s", json.dumps(payload, default=str))


class MetricsContext:
    """Times a block and stores the elapsed seconds as a gauge

    Usage:
        with MetricsContext(collector, 'backup_duration_seconds'):
            # perform run
    """

    def __init__(self, collector: MetricsCollector, metric_name: str):
        self.collector = collector
        self.metric_name = metric_name
        self.started: Optional[float] = None

    def __enter__(self):
        self.started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.set_gauge(self.metric_name, time.monotonic() - self.started)
        return False
