"""
Bounded Time Series Store

Append-only reading store with size-bounded retention.

Retention marks:
- max_readings: hard cap, never exceeded
- high_water: when the count exceeds this, evict
- low_water: number of newest readings kept after eviction

Readings are kept in timestamp order in a deque, so eviction pops the
oldest entries from the left in O(1) each. A full sort only runs when an
append brings a timestamp older than the current tail.
"""

import threading
from collections import deque
from typing import Iterable, TYPE_CHECKING

from common.config import StoreSettings, raise_for_errors
from common.logging_setup import get_service_logger

from .readings import RawTrace, Reading

if TYPE_CHECKING:
    from .calibration import CalibrationTable

logger = get_service_logger("acquisition.store")


def _timestamp(item: Reading | RawTrace) -> int:
    return item.timestamp


class BoundedTimeSeriesStore:
    """
    Thread-safe bounded store of readings and their raw traces.

    Every mutation runs under one lock, so snapshot readers (health server,
    export threads) never see a half-applied batch.
    """

    def __init__(self, settings: StoreSettings | None = None):
        self.settings = settings or StoreSettings()
        raise_for_errors(self.settings.validate())

        self._lock = threading.Lock()
        self._readings: deque[Reading] = deque()
        self._traces: deque[RawTrace] = deque()
        self._last_sample_ms: int | None = None

        # Stats
        self._eviction_count = 0
        self._evicted_total = 0
        self._appended_total = 0

    # =========================================================================
    # Mutations
    # =========================================================================

    def append_batch(
        self,
        readings: Iterable[Reading],
        traces: Iterable[RawTrace] = (),
    ) -> int:
        """
        Append a batch of readings (and their traces).

        Args:
            readings: New readings, usually sharing one timestamp
            traces: Raw traces for the same samples

        Returns:
            Number of readings evicted by this append
        """
        readings = list(readings)
        traces = list(traces)
        if not readings and not traces:
            return 0

        with self._lock:
            self._extend(self._readings, readings)
            self._extend(self._traces, traces)

            evicted = self._evict(self._readings)
            self._evict(self._traces)

            if readings:
                newest = max(r.timestamp for r in readings)
                if self._last_sample_ms is None or newest > self._last_sample_ms:
                    self._last_sample_ms = newest
            self._appended_total += len(readings)

        if evicted:
            logger.info(
                f"Evicted {evicted} oldest readings, keeping newest {self.settings.low_water}"
            )
        return evicted

    def replace(self, readings: Iterable[Reading]) -> int:
        """
        Swap the whole contents (import).

        Readings are ordered by timestamp and trimmed to the hard cap keeping
        the newest. Raw traces are cleared.

        Returns:
            Number of readings stored
        """
        ordered = sorted(readings, key=_timestamp)
        dropped = max(0, len(ordered) - self.settings.max_readings)
        if dropped:
            ordered = ordered[dropped:]

        new_readings = deque(ordered)
        with self._lock:
            self._readings = new_readings
            self._traces = deque()
            self._last_sample_ms = ordered[-1].timestamp if ordered else None

        if dropped:
            logger.warning(
                f"Import exceeded {self.settings.max_readings} readings, "
                f"dropped {dropped} oldest"
            )
        logger.info(f"Store replaced with {len(ordered)} readings")
        return len(ordered)

    def clear(self) -> None:
        """Drop all readings, traces and cadence bookkeeping."""
        with self._lock:
            self._readings = deque()
            self._traces = deque()
            self._last_sample_ms = None
        logger.info("Store cleared")

    def apply_calibration(self, table: "CalibrationTable") -> int:
        """
        Rewrite calibrated temperatures of every stored reading.

        Returns:
            Number of readings rewritten
        """
        with self._lock:
            recalibrated = deque(table.apply(r) for r in self._readings)
            self._readings = recalibrated
        return len(recalibrated)

    def _extend(self, target: deque, items: list) -> None:
        if not items:
            return
        out_of_order = bool(target) and items[0].timestamp < target[-1].timestamp
        if not out_of_order:
            out_of_order = any(
                items[i].timestamp > items[i + 1].timestamp for i in range(len(items) - 1)
            )
        target.extend(items)
        if out_of_order:
            # Stable sort keeps batch order for equal timestamps
            ordered = sorted(target, key=_timestamp)
            target.clear()
            target.extend(ordered)

    def _evict(self, target: deque) -> int:
        if len(target) <= self.settings.high_water:
            return 0
        evicted = len(target) - self.settings.low_water
        for _ in range(evicted):
            target.popleft()
        if target is self._readings:
            self._eviction_count += 1
            self._evicted_total += evicted
        return evicted

    # =========================================================================
    # Reads
    # =========================================================================

    def snapshot(self) -> list[Reading]:
        """Copy of all readings in timestamp order."""
        with self._lock:
            return list(self._readings)

    def trace_snapshot(self, limit: int | None = None) -> list[RawTrace]:
        """Copy of the raw traces (the newest `limit` when given)."""
        with self._lock:
            if limit is None or limit >= len(self._traces):
                return list(self._traces)
            if limit <= 0:
                return []
            return list(self._traces)[-limit:]

    def readings_for_channel(self, channel: int) -> list[Reading]:
        with self._lock:
            return [r for r in self._readings if r.channel == channel]

    def readings_since(self, timestamp_ms: int) -> list[Reading]:
        """Readings with timestamp >= timestamp_ms."""
        with self._lock:
            result = []
            # Walk from the newest end; the deque is ordered
            for reading in reversed(self._readings):
                if reading.timestamp < timestamp_ms:
                    break
                result.append(reading)
        result.reverse()
        return result

    def __len__(self) -> int:
        return len(self._readings)

    @property
    def trace_count(self) -> int:
        return len(self._traces)

    @property
    def last_sample_ms(self) -> int | None:
        return self._last_sample_ms

    def get_stats(self) -> dict:
        """Get store statistics"""
        return {
            "reading_count": len(self._readings),
            "trace_count": len(self._traces),
            "last_sample_ms": self._last_sample_ms,
            "appended_total": self._appended_total,
            "eviction_count": self._eviction_count,
            "evicted_total": self._evicted_total,
            "max_readings": self.settings.max_readings,
            "high_water": self.settings.high_water,
            "low_water": self.settings.low_water,
        }
