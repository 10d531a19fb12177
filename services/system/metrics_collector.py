"""
Memory Metrics Collector

Collects memory diagnostics for the acquisition process:
- Reading and trace counts held by the store
- Estimated store footprint
- Process resident memory and system memory usage
- Uptime
"""

import os
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone

import psutil

# Approximate in-memory size of one stored record (frozen dataclass + fields)
READING_BYTES_ESTIMATE = 184
TRACE_BYTES_ESTIMATE = 216


@dataclass
class MemoryMetrics:
    """Memory diagnostics sample"""
    reading_count: int
    trace_count: int
    estimated_bytes: int
    process_rss_bytes: int
    system_memory_pct: float
    uptime_seconds: int
    timestamp: str

    @property
    def estimated_mb(self) -> float:
        return self.estimated_bytes / 1024 / 1024

    @property
    def process_rss_mb(self) -> float:
        return self.process_rss_bytes / 1024 / 1024

    def to_dict(self) -> dict:
        data = asdict(self)
        data["estimated_mb"] = round(self.estimated_mb, 2)
        data["process_rss_mb"] = round(self.process_rss_mb, 1)
        return data


def estimate_store_bytes(reading_count: int, trace_count: int) -> int:
    """Rough footprint of the store contents."""
    return reading_count * READING_BYTES_ESTIMATE + trace_count * TRACE_BYTES_ESTIMATE


class MetricsCollector:
    """Collects memory metrics for this process"""

    def __init__(self):
        self._start_time = time.time()
        self._process = psutil.Process(os.getpid())

    def collect(self, reading_count: int = 0, trace_count: int = 0) -> MemoryMetrics:
        """Collect current memory metrics"""
        return MemoryMetrics(
            reading_count=reading_count,
            trace_count=trace_count,
            estimated_bytes=estimate_store_bytes(reading_count, trace_count),
            process_rss_bytes=self._get_process_rss(),
            system_memory_pct=self._get_memory_usage(),
            uptime_seconds=int(time.time() - self._start_time),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    def _get_process_rss(self) -> int:
        """Resident set size of this process in bytes"""
        try:
            return self._process.memory_info().rss
        except psutil.Error:
            return 0

    def _get_memory_usage(self) -> float:
        """Get system memory usage percentage"""
        try:
            return round(psutil.virtual_memory().percent, 1)
        except psutil.Error:
            return 0.0
