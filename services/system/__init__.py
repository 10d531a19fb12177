"""
System Service - Memory Diagnostics

Responsibilities:
- Estimate memory held by the reading store
- Report process resident memory (psutil)
"""

from .metrics_collector import MemoryMetrics, MetricsCollector, estimate_store_bytes

__all__ = ["MemoryMetrics", "MetricsCollector", "estimate_store_bytes"]
