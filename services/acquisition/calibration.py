"""
Per-Channel Calibration

Additive offsets applied on top of the converted temperature. The
converted value is kept; the offset lands in calibrated_temperature.
"""

from typing import Iterable

from common.config import CalibrationOffset

from .readings import Reading


class CalibrationTable:
    """Channel -> offset lookup built from CalibrationOffset entries."""

    def __init__(self, offsets: Iterable[CalibrationOffset] = ()):
        self._offsets: dict[int, CalibrationOffset] = {}
        for offset in offsets:
            # Later entries for the same channel win
            self._offsets[offset.channel] = offset

    def offset_for(self, channel: int) -> float | None:
        """Enabled offset for a channel, or None."""
        entry = self._offsets.get(channel)
        if entry is None or not entry.enabled:
            return None
        return entry.offset

    def apply(self, reading: Reading) -> Reading:
        offset = self.offset_for(reading.channel)
        if offset is None:
            if reading.calibrated_temperature is None:
                return reading
            return reading.with_calibration(None)
        return reading.with_calibration(reading.temperature + offset)

    def active_count(self) -> int:
        """Enabled offsets that actually shift the value."""
        return sum(1 for o in self._offsets.values() if o.enabled and o.offset != 0)

    def offsets(self) -> list[CalibrationOffset]:
        return [self._offsets[ch] for ch in sorted(self._offsets)]

    def __len__(self) -> int:
        return len(self._offsets)

    def __repr__(self) -> str:
        return f"CalibrationTable(channels={sorted(self._offsets)}, active={self.active_count()})"
