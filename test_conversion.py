"""Tests for raw-to-temperature conversion."""

import math

import pytest

from common.config import ConversionConfig, ConversionMode
from common.exceptions import ConversionFailure, FormulaError, InvalidTemperature
from services.acquisition.conversion import (
    ConversionPipeline,
    builtin_convert,
    clamp_raw,
    convert,
    convert_validated,
    is_valid_temperature,
)
from services.acquisition.readings import ConversionMethod


class TestBuiltin:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (0, 0.0),
            (250, 25.0),
            (1000, 100.0),
            (65436, -10.0),
            (32767, 3276.7),
            (32768, -3276.8),
            (65535, -0.1),
        ],
    )
    def test_values(self, raw: int, expected: float) -> None:
        assert builtin_convert(raw) == pytest.approx(expected)

    def test_deterministic(self) -> None:
        config = ConversionConfig()
        assert convert(1234, config) == convert(1234, config)


class TestValidity:
    @pytest.mark.parametrize("value", [-273.15, 0.0, 25.5, 1000.0, 500])
    def test_accepts(self, value) -> None:
        assert is_valid_temperature(value)

    @pytest.mark.parametrize(
        "value",
        [-273.16, 1000.01, math.nan, math.inf, -math.inf, None, "25", True],
    )
    def test_rejects(self, value) -> None:
        assert not is_valid_temperature(value)

    def test_convert_validated_rejects_out_of_range(self) -> None:
        with pytest.raises(InvalidTemperature) as exc:
            convert_validated(32767, ConversionConfig())
        assert exc.value.raw_value == 32767

    def test_convert_validated_passes_in_range(self) -> None:
        assert convert_validated(253, ConversionConfig()) == pytest.approx(25.3)


class TestClamp:
    def test_in_range_untouched(self) -> None:
        assert clamp_raw(1234) == 1234

    def test_clamps_high_and_low(self) -> None:
        assert clamp_raw(70000) == 65535
        assert clamp_raw(-5) == 0

    def test_convert_clamps_before_converting(self) -> None:
        assert convert(70000, ConversionConfig()) == pytest.approx(-0.1)


class TestCustomMode:
    def test_formula(self) -> None:
        config = ConversionConfig(mode=ConversionMode.CUSTOM, formula="registerValue * 0.1 - 40")
        assert convert(650, config) == pytest.approx(25.0)

    def test_all_input_names_bound(self) -> None:
        config = ConversionConfig(mode=ConversionMode.CUSTOM, formula="registerValue + raw + x")
        assert convert(10, config) == 30.0

    def test_failure_is_per_sample(self) -> None:
        config = ConversionConfig(mode=ConversionMode.CUSTOM, formula="100 / raw")
        with pytest.raises(ConversionFailure):
            convert(0, config)
        assert convert(50, config) == 2.0

    def test_bad_formula_reported_as_conversion_failure(self) -> None:
        config = ConversionConfig(mode=ConversionMode.CUSTOM, formula="import os")
        with pytest.raises(ConversionFailure):
            convert(1, config)


class TestConversionPipeline:
    def test_builtin_by_default(self) -> None:
        pipeline = ConversionPipeline()
        assert pipeline.method == ConversionMethod.BUILTIN
        assert pipeline.convert(250) == pytest.approx(25.0)

    def test_custom_compiled_at_construction(self) -> None:
        with pytest.raises(FormulaError):
            ConversionPipeline(ConversionConfig(mode=ConversionMode.CUSTOM, formula="open('x')"))

    def test_custom_method(self) -> None:
        pipeline = ConversionPipeline(
            ConversionConfig(mode=ConversionMode.CUSTOM, formula="raw / 16")
        )
        assert pipeline.method == ConversionMethod.CUSTOM
        assert pipeline.convert(400) == 25.0

    def test_preview_uses_test_value(self) -> None:
        pipeline = ConversionPipeline(ConversionConfig(test_value=321))
        assert pipeline.preview() == pytest.approx(32.1)

    def test_validated_rejects_implausible(self) -> None:
        pipeline = ConversionPipeline(
            ConversionConfig(mode=ConversionMode.CUSTOM, formula="raw * 100")
        )
        with pytest.raises(InvalidTemperature):
            pipeline.convert_validated(500)

    def test_formula_in_builtin_mode_is_ignored(self) -> None:
        pipeline = ConversionPipeline(ConversionConfig(mode=ConversionMode.BUILTIN, formula="raw * 2"))
        assert pipeline.method == ConversionMethod.BUILTIN
        assert pipeline.convert(100) == pytest.approx(10.0)
