"""
Temperature Conversion

Maps a raw 16-bit register value to degrees Celsius.

Strategies:
- builtin: signed 16-bit tenths of a degree (raw > 32767 is negative)
- custom: a user formula (see formula.py)
"""

import math
from functools import lru_cache

from common.config import ConversionConfig, ConversionMode
from common.exceptions import ConversionFailure, FormulaError, InvalidTemperature
from common.logging_setup import get_service_logger

from .formula import CompiledFormula, compile_formula
from .readings import ConversionMethod

logger = get_service_logger("acquisition.conversion")

BUILTIN_SCALE = 0.1
MIN_TEMPERATURE = -273.15
MAX_TEMPERATURE = 1000.0
RAW_MIN = 0
RAW_MAX = 0xFFFF


def clamp_raw(raw_value: int) -> int:
    """Clamp to the 16-bit register range, warning when out of range."""
    if raw_value < RAW_MIN or raw_value > RAW_MAX:
        clamped = max(RAW_MIN, min(RAW_MAX, int(raw_value)))
        logger.warning(f"Raw value {raw_value} outside 0-65535, clamped to {clamped}")
        return clamped
    return int(raw_value)


def builtin_convert(raw_value: int) -> float:
    """
    Signed tenths of a degree.

    Examples:
        250   -> 25.0
        65436 -> -10.0
        32768 -> -3276.8
    """
    if raw_value > 32767:
        return (raw_value - 65536) * BUILTIN_SCALE
    return raw_value * BUILTIN_SCALE


def is_valid_temperature(temperature: object) -> bool:
    """Finite number within [-273.15, 1000.0] deg C."""
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        return False
    if not math.isfinite(temperature):
        return False
    return MIN_TEMPERATURE <= temperature <= MAX_TEMPERATURE


@lru_cache(maxsize=32)
def _cached_formula(source: str) -> CompiledFormula:
    return compile_formula(source)


def convert(raw_value: int, config: ConversionConfig) -> float:
    """
    Convert one raw value per the configured strategy.

    Raises:
        ConversionFailure: Custom formula failed for this value
    """
    raw_value = clamp_raw(raw_value)

    if config.mode == ConversionMode.CUSTOM:
        try:
            formula = _cached_formula(config.formula)
        except FormulaError as e:
            raise ConversionFailure(e.message, raw_value)
        return formula.evaluate(raw_value)

    return builtin_convert(raw_value)


def convert_validated(raw_value: int, config: ConversionConfig) -> float:
    """
    Convert and range-check one raw value.

    Raises:
        ConversionFailure: Custom formula failed
        InvalidTemperature: Result outside the physical range
    """
    temperature = convert(raw_value, config)
    if not is_valid_temperature(temperature):
        raise InvalidTemperature(temperature, raw_value)
    return temperature


class ConversionPipeline:
    """
    Conversion bound to one configuration.

    The formula is compiled when the pipeline is built, so a bad formula is
    reported at configuration time rather than on every sample.
    """

    def __init__(self, config: ConversionConfig | None = None):
        self._config = config or ConversionConfig()
        self._formula: CompiledFormula | None = None

        if self._config.mode == ConversionMode.CUSTOM:
            # Raises FormulaError
            self._formula = compile_formula(self._config.formula)

    @property
    def config(self) -> ConversionConfig:
        return self._config

    @property
    def method(self) -> ConversionMethod:
        if self._formula is not None:
            return ConversionMethod.CUSTOM
        return ConversionMethod.BUILTIN

    def convert(self, raw_value: int) -> float:
        raw_value = clamp_raw(raw_value)
        if self._formula is not None:
            return self._formula.evaluate(raw_value)
        return builtin_convert(raw_value)

    def convert_validated(self, raw_value: int) -> float:
        temperature = self.convert(raw_value)
        if not is_valid_temperature(temperature):
            raise InvalidTemperature(temperature, raw_value)
        return temperature

    def preview(self) -> float:
        """Convert the configured test value (for configuration UIs)."""
        return self.convert(self._config.test_value)

    def __repr__(self) -> str:
        if self._formula is not None:
            return f"ConversionPipeline(custom, {self._formula.source!r})"
        return "ConversionPipeline(builtin)"
