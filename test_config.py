"""Tests for configuration loading and validation."""

import pytest

from common.config import (
    MAX_CHANNEL,
    AcquisitionConfig,
    ConversionMode,
    PollingSchedule,
    RegisterPlan,
    SerialSettings,
    find_config_path,
    load_acquisition_config,
    load_config_file,
    validate_acquisition_config,
)
from common.exceptions import ConfigError


class TestDefaults:
    def test_empty_dict_gives_defaults(self) -> None:
        config = load_acquisition_config({})
        assert config.serial.baudrate == 9600
        assert config.serial.slave_id == 1
        assert config.polling.interval_s == 1.0
        assert config.polling.selected_channels == set(range(1, 11))
        assert config.conversion.mode == ConversionMode.BUILTIN
        assert config.test_mode.enabled is False
        assert config.storage.max_readings == 5_000_000
        assert config.diagnostics.interval_s == 30.0

    def test_default_config_is_valid(self) -> None:
        assert validate_acquisition_config(AcquisitionConfig()) == []


class TestRegisterPlan:
    def test_contiguous(self) -> None:
        plan = RegisterPlan(start_register=100, register_count=3)
        assert plan.channel_registers() == [(1, 100), (2, 101), (3, 102)]
        assert plan.span() == (100, 3)

    def test_custom_capped_by_count(self) -> None:
        plan = RegisterPlan(register_count=2, custom_registers=[7, 3, 9])
        assert plan.channel_registers() == [(1, 7), (2, 3)]
        assert plan.span() == (3, 5)
        assert plan.register_for_channel(3) is None

    def test_span_too_wide(self) -> None:
        plan = RegisterPlan(register_count=2, custom_registers=[0, 125])
        assert any("exceeds" in e for e in plan.validate())

    def test_count_out_of_range(self) -> None:
        assert RegisterPlan(register_count=0).validate()
        assert RegisterPlan(register_count=MAX_CHANNEL + 1).validate()


class TestValidation:
    @pytest.mark.parametrize(
        "section,value",
        [
            ("serial", {"slave_id": 300}),
            ("serial", {"parity": "X"}),
            ("serial", {"timeout_s": 0}),
            ("polling", {"interval_s": -1}),
            ("polling", {"selected_channels": [0, 1]}),
            ("conversion", {"mode": "custom", "formula": ""}),
            ("conversion", {"mode": "fahrenheit"}),
            ("test_mode", {"min_temp": 90, "max_temp": 10}),
            ("storage", {"max_readings": 10, "high_water": 20, "low_water": 5}),
            ("diagnostics", {"interval_s": 0}),
        ],
    )
    def test_rejects(self, section: str, value: dict) -> None:
        with pytest.raises(ConfigError):
            load_acquisition_config({section: value})

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigError) as exc:
            load_acquisition_config({
                "serial": {"slave_id": 300, "stopbits": 3},
            })
        assert "slave_id" in exc.value.message
        assert "stopbits" in exc.value.message

    def test_calibration_channel_range(self) -> None:
        with pytest.raises(ConfigError):
            load_acquisition_config({"calibration": [{"channel": 17, "offset": 1.0}]})

    def test_selected_channels_all(self) -> None:
        config = load_acquisition_config({"polling": {"selected_channels": "all"}})
        assert config.polling.selected_channels == set(range(1, 17))

    def test_selected_channels_not_a_list(self) -> None:
        with pytest.raises(ConfigError):
            load_acquisition_config({"polling": {"selected_channels": 5}})

    def test_parity_normalized(self) -> None:
        assert load_acquisition_config({"serial": {"parity": "even"}}).serial.parity == "E"

    def test_schedule_validate(self) -> None:
        assert PollingSchedule().validate() == []
        assert SerialSettings(bytesize=9).validate()


class TestConfigFile:
    def test_load_yaml(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "serial:\n"
            "  port: /dev/ttyS1\n"
            "  baudrate: 19200\n"
            "  slave_id: 5\n"
            "polling:\n"
            "  interval_s: 0.5\n"
            "  selected_channels: [1, 2]\n"
            "  custom_registers: [40, 42]\n"
            "  register_count: 2\n"
            "conversion:\n"
            "  mode: custom\n"
            "  formula: \"raw / 16\"\n"
            "calibration:\n"
            "  - channel: 2\n"
            "    offset: -0.3\n"
        )
        config = load_config_file(path)
        assert config.serial.port == "/dev/ttyS1"
        assert config.serial.baudrate == 19200
        assert config.serial.slave_id == 5
        assert config.polling.selected_channels == {1, 2}
        assert config.polling.register_plan.channel_registers() == [(1, 40), (2, 42)]
        assert config.conversion.formula == "raw / 16"
        assert config.calibration[0].offset == pytest.approx(-0.3)
        assert config.calibration[0].enabled is True

    def test_empty_file_gives_defaults(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config_file(path).serial.slave_id == 1

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            load_config_file(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("serial: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config_file(path)

    def test_non_mapping_root(self, tmp_path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            load_config_file(path)

    def test_env_path_wins(self, monkeypatch, tmp_path) -> None:
        path = tmp_path / "elsewhere.yaml"
        monkeypatch.setenv("THERMOPOLL_CONFIG", str(path))
        assert find_config_path() == str(path)

    def test_repo_config_loads(self, monkeypatch) -> None:
        monkeypatch.delenv("THERMOPOLL_CONFIG", raising=False)
        config = load_config_file(find_config_path())
        assert validate_acquisition_config(config) == []
