"""
Reading Types

Immutable records produced by the polling engine and the test generator.
"""

from dataclasses import dataclass, replace
from enum import Enum


class ConversionMethod(str, Enum):
    """How a trace's temperature was produced"""
    BUILTIN = "builtin"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Reading:
    """One temperature sample"""
    timestamp: int                  # Epoch milliseconds
    channel: int                    # 1-16
    temperature: float              # deg C
    raw_value: int                  # 0-65535
    calibrated_temperature: float | None = None

    @property
    def effective_temperature(self) -> float:
        """Calibrated value when present, else the converted one."""
        if self.calibrated_temperature is not None:
            return self.calibrated_temperature
        return self.temperature

    def with_calibration(self, calibrated: float | None) -> "Reading":
        return replace(self, calibrated_temperature=calibrated)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "channel": self.channel,
            "temperature": round(self.temperature, 3),
            "raw_value": self.raw_value,
            "calibrated_temperature": (
                round(self.calibrated_temperature, 3)
                if self.calibrated_temperature is not None
                else None
            ),
        }


@dataclass(frozen=True)
class RawTrace:
    """Raw register value behind a reading"""
    timestamp: int
    channel: int
    register_address: int           # 0-65535
    raw_value: int
    converted_temperature: float
    conversion_method: ConversionMethod = ConversionMethod.BUILTIN

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "channel": self.channel,
            "register_address": self.register_address,
            "raw_value": self.raw_value,
            "converted_temperature": round(self.converted_temperature, 3),
            "conversion_method": self.conversion_method.value,
        }
