"""
Synthetic Test Mode Generator

Produces plausible multi-channel temperature readings without hardware.
Used as a drop-in substitute for the sensor bus: readings bypass the
conversion stage and carry the generated temperature directly.

Per channel ch (1-10), with spread = max - min:
    baseline  = min + spread / 10 * (ch - 1)
    variation = sin(t_ms / 30000 + ch) * spread * 0.2
    noise     = uniform(-1, 1) * noise_level * spread * 0.1
    temperature = clamp(baseline + variation + noise, min, max)
    raw_value   = round(temperature * 10) as 16-bit two's complement
"""

import math
import random

from common.config import TEST_MODE_CHANNELS, TestModeSettings
from common.timestamp import now_ms

from .readings import Reading

PERIOD_MS = 30000.0
VARIATION_FACTOR = 0.2
NOISE_FACTOR = 0.1


class TestModeGenerator:
    """
    Deterministic-when-seeded synthetic reading source.

    Pass a seeded random.Random for reproducible output.
    """
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        settings: TestModeSettings | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or TestModeSettings()
        self.rng = rng or random.Random()
        self._batches_generated = 0

    def baseline(self, channel: int) -> float:
        spread = self.settings.max_temp - self.settings.min_temp
        return self.settings.min_temp + spread / TEST_MODE_CHANNELS * (channel - 1)

    def temperature_for(self, channel: int, timestamp_ms: int) -> float:
        low = self.settings.min_temp
        high = self.settings.max_temp
        spread = high - low

        variation = math.sin(timestamp_ms / PERIOD_MS + channel) * spread * VARIATION_FACTOR
        amplitude = self.settings.noise_level * spread * NOISE_FACTOR
        noise = self.rng.uniform(-amplitude, amplitude) if amplitude > 0 else 0.0

        temperature = self.baseline(channel) + variation + noise
        return max(low, min(high, temperature))

    @staticmethod
    def raw_for(temperature: float) -> int:
        """Tenths of a degree, half rounded up, masked to 16 bits."""
        return math.floor(temperature * 10 + 0.5) & 0xFFFF

    def generate(self, timestamp_ms: int | None = None) -> list[Reading]:
        """
        One reading per channel 1-10, all sharing one timestamp.

        Channel filtering is left to the caller.
        """
        if timestamp_ms is None:
            timestamp_ms = now_ms()

        readings = []
        for channel in range(1, TEST_MODE_CHANNELS + 1):
            temperature = self.temperature_for(channel, timestamp_ms)
            readings.append(
                Reading(
                    timestamp=timestamp_ms,
                    channel=channel,
                    temperature=temperature,
                    raw_value=self.raw_for(temperature),
                )
            )

        self._batches_generated += 1
        return readings

    @property
    def batches_generated(self) -> int:
        return self._batches_generated

    def __repr__(self) -> str:
        return (
            f"TestModeGenerator(range={self.settings.min_temp}-{self.settings.max_temp}, "
            f"noise={self.settings.noise_level})"
        )
