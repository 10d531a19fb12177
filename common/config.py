"""
Configuration Dataclasses

Type-safe configuration structures for the acquisition pipeline.
Configuration is owned by the caller and passed into the engine by value;
the acquisition path never writes it back.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from common.exceptions import ConfigError

# Channel ids are 1-based sensor slots
MIN_CHANNEL = 1
MAX_CHANNEL = 16

# Modbus limit for one read-holding-registers request
MAX_REGISTERS_PER_REQUEST = 125

MAX_REGISTER_ADDRESS = 0xFFFF

# Test mode always produces this many channels
TEST_MODE_CHANNELS = 10


class ConversionMode(str, Enum):
    """Raw-to-temperature conversion strategies"""
    BUILTIN = "builtin"
    CUSTOM = "custom"


class AcquisitionMode(str, Enum):
    """Where readings come from"""
    DEVICE = "device"
    TEST = "test"


@dataclass
class SerialSettings:
    """Serial link and slave addressing"""
    port: str = "/dev/ttyUSB0"
    baudrate: int = 9600          # 9600, 19200, 38400, 57600, 115200
    parity: str = "N"             # N=None, E=Even, O=Odd
    stopbits: int = 1             # 1 or 2
    bytesize: int = 8             # 7 or 8
    slave_id: int = 1
    timeout_s: float = 2.0        # Response deadline per transaction
    verify_crc: bool = True

    def validate(self) -> list[str]:
        errors = []
        if not 0 <= self.slave_id <= 247:
            errors.append(f"slave_id must be 0-247, got {self.slave_id}")
        if self.timeout_s <= 0:
            errors.append(f"timeout_s must be positive, got {self.timeout_s}")
        if self.parity not in ("N", "E", "O"):
            errors.append(f"parity must be N, E or O, got {self.parity!r}")
        if self.stopbits not in (1, 2):
            errors.append(f"stopbits must be 1 or 2, got {self.stopbits}")
        if self.bytesize not in (7, 8):
            errors.append(f"bytesize must be 7 or 8, got {self.bytesize}")
        return errors


@dataclass
class RegisterPlan:
    """
    Which registers to read.

    Either a contiguous range [start_register, start_register + register_count)
    or an explicit ordered list of addresses. The n-th address feeds channel n;
    register_count also caps the number of channels.
    """
    start_register: int = 0
    register_count: int = 10
    custom_registers: list[int] | None = None

    def addresses(self) -> list[int]:
        """Ordered register addresses, one per channel slot."""
        if self.custom_registers:
            return list(self.custom_registers)
        return [self.start_register + i for i in range(self.register_count)]

    def channel_registers(self) -> list[tuple[int, int]]:
        """(channel, address) pairs within the configured channel count."""
        return [
            (index + 1, address)
            for index, address in enumerate(self.addresses())
            if index + 1 <= self.register_count
        ]

    def register_for_channel(self, channel: int) -> int | None:
        for ch, address in self.channel_registers():
            if ch == channel:
                return address
        return None

    def span(self) -> tuple[int, int]:
        """(start, quantity) of the single request covering every address."""
        addresses = [address for _, address in self.channel_registers()]
        if not addresses:
            raise ConfigError("register plan has no addresses")
        start = min(addresses)
        return start, max(addresses) - start + 1

    def validate(self) -> list[str]:
        errors = []
        if not MIN_CHANNEL <= self.register_count <= MAX_CHANNEL:
            errors.append(
                f"register_count must be {MIN_CHANNEL}-{MAX_CHANNEL}, got {self.register_count}"
            )
            return errors

        addresses = self.addresses()
        if not addresses:
            errors.append("register plan has no addresses")
            return errors

        bad = [a for a in addresses if not 0 <= a <= MAX_REGISTER_ADDRESS]
        if bad:
            errors.append(f"register addresses out of range 0-65535: {bad}")
            return errors

        if self.custom_registers and len(self.custom_registers) > MAX_CHANNEL:
            errors.append(
                f"at most {MAX_CHANNEL} custom registers, got {len(self.custom_registers)}"
            )

        start, quantity = self.span()
        if quantity > MAX_REGISTERS_PER_REQUEST:
            errors.append(
                f"register span {start}+{quantity} exceeds "
                f"{MAX_REGISTERS_PER_REQUEST} registers per request"
            )
        return errors


@dataclass
class PollingSchedule:
    """Cadence and channel selection"""
    interval_s: float = 1.0
    selected_channels: set[int] = field(
        default_factory=lambda: set(range(MIN_CHANNEL, TEST_MODE_CHANNELS + 1))
    )
    register_plan: RegisterPlan = field(default_factory=RegisterPlan)

    def is_selected(self, channel: int) -> bool:
        return channel in self.selected_channels

    def validate(self) -> list[str]:
        errors = []
        if self.interval_s <= 0:
            errors.append(f"interval_s must be positive, got {self.interval_s}")
        bad = sorted(c for c in self.selected_channels if not MIN_CHANNEL <= c <= MAX_CHANNEL)
        if bad:
            errors.append(f"selected channels out of range {MIN_CHANNEL}-{MAX_CHANNEL}: {bad}")
        errors.extend(self.register_plan.validate())
        return errors


@dataclass
class ConversionConfig:
    """Raw value conversion settings"""
    mode: ConversionMode = ConversionMode.BUILTIN
    formula: str = ""             # Only meaningful when mode == CUSTOM
    test_value: int = 250         # Preview input for configuration UIs

    def validate(self) -> list[str]:
        errors = []
        if self.mode == ConversionMode.CUSTOM and not self.formula.strip():
            errors.append("custom conversion mode requires a formula")
        if not 0 <= self.test_value <= MAX_REGISTER_ADDRESS:
            errors.append(f"test_value must be 0-65535, got {self.test_value}")
        return errors


@dataclass
class TestModeSettings:
    """Synthetic data generation settings"""
    __test__ = False  # not a pytest test class

    enabled: bool = False
    min_temp: float = 20.0
    max_temp: float = 80.0
    noise_level: float = 0.1      # 0-1 scale

    def validate(self) -> list[str]:
        errors = []
        if self.min_temp > self.max_temp:
            errors.append(
                f"test mode min_temp {self.min_temp} is above max_temp {self.max_temp}"
            )
        if self.noise_level < 0:
            errors.append(f"noise_level must be >= 0, got {self.noise_level}")
        return errors


@dataclass
class StoreSettings:
    """Reading store retention marks"""
    max_readings: int = 5_000_000     # Hard cap
    high_water: int = 4_500_000       # Evict when exceeded
    low_water: int = 3_000_000        # Newest readings kept after eviction

    def validate(self) -> list[str]:
        if not 0 < self.low_water < self.high_water <= self.max_readings:
            return [
                "storage marks must satisfy 0 < low_water < high_water <= max_readings "
                f"(got {self.low_water}, {self.high_water}, {self.max_readings})"
            ]
        return []


@dataclass
class CalibrationOffset:
    """Per-channel additive calibration"""
    channel: int
    offset: float = 0.0
    enabled: bool = True


@dataclass
class DiagnosticsSettings:
    """Memory diagnostics timer and health server"""
    interval_s: float = 30.0
    health_enabled: bool = True
    health_host: str = "127.0.0.1"
    health_port: int = 8093


@dataclass
class AcquisitionConfig:
    """Complete acquisition configuration"""
    serial: SerialSettings = field(default_factory=SerialSettings)
    polling: PollingSchedule = field(default_factory=PollingSchedule)
    conversion: ConversionConfig = field(default_factory=ConversionConfig)
    test_mode: TestModeSettings = field(default_factory=TestModeSettings)
    storage: StoreSettings = field(default_factory=StoreSettings)
    calibration: list[CalibrationOffset] = field(default_factory=list)
    diagnostics: DiagnosticsSettings = field(default_factory=DiagnosticsSettings)
    log_level: str = "INFO"


def validate_acquisition_config(config: AcquisitionConfig) -> list[str]:
    """Collect every validation error in the configuration."""
    errors = []
    errors.extend(config.serial.validate())
    errors.extend(config.polling.validate())
    errors.extend(config.conversion.validate())
    errors.extend(config.test_mode.validate())
    errors.extend(config.storage.validate())

    for offset in config.calibration:
        if not MIN_CHANNEL <= offset.channel <= MAX_CHANNEL:
            errors.append(f"calibration channel out of range: {offset.channel}")

    if config.diagnostics.interval_s <= 0:
        errors.append(f"diagnostics interval_s must be positive, got {config.diagnostics.interval_s}")

    return errors


def raise_for_errors(errors: list[str]) -> None:
    """Raise a single ConfigError carrying every message."""
    if errors:
        raise ConfigError("; ".join(errors))


def _parse_selected_channels(value: Any) -> set[int]:
    if value is None or value == "all":
        return set(range(MIN_CHANNEL, MAX_CHANNEL + 1))
    try:
        return {int(c) for c in value}
    except (TypeError, ValueError):
        raise ConfigError(f"selected_channels must be a list of integers, got {value!r}")


def load_acquisition_config(data: dict) -> AcquisitionConfig:
    """Load AcquisitionConfig from dictionary (e.g., from a YAML file)"""
    data = data or {}

    serial_data = data.get("serial", {}) or {}
    serial = SerialSettings(
        port=serial_data.get("port", "/dev/ttyUSB0"),
        baudrate=serial_data.get("baudrate", 9600),
        parity=str(serial_data.get("parity", "N")).upper()[:1],
        stopbits=serial_data.get("stopbits", 1),
        bytesize=serial_data.get("bytesize", 8),
        slave_id=serial_data.get("slave_id", 1),
        timeout_s=float(serial_data.get("timeout_s", 2.0)),
        verify_crc=serial_data.get("verify_crc", True),
    )

    polling_data = data.get("polling", {}) or {}
    custom_registers = polling_data.get("custom_registers") or None
    polling = PollingSchedule(
        interval_s=float(polling_data.get("interval_s", 1.0)),
        selected_channels=_parse_selected_channels(
            polling_data.get("selected_channels", list(range(1, TEST_MODE_CHANNELS + 1)))
        ),
        register_plan=RegisterPlan(
            start_register=polling_data.get("start_register", 0),
            register_count=polling_data.get("register_count", 10),
            custom_registers=[int(r) for r in custom_registers] if custom_registers else None,
        ),
    )

    conversion_data = data.get("conversion", {}) or {}
    try:
        mode = ConversionMode(conversion_data.get("mode", "builtin"))
    except ValueError:
        raise ConfigError(f"unknown conversion mode {conversion_data.get('mode')!r}")
    conversion = ConversionConfig(
        mode=mode,
        formula=conversion_data.get("formula", "") or "",
        test_value=conversion_data.get("test_value", 250),
    )

    test_data = data.get("test_mode", {}) or {}
    test_mode = TestModeSettings(
        enabled=test_data.get("enabled", False),
        min_temp=float(test_data.get("min_temp", 20.0)),
        max_temp=float(test_data.get("max_temp", 80.0)),
        noise_level=float(test_data.get("noise_level", 0.1)),
    )

    storage_data = data.get("storage", {}) or {}
    storage = StoreSettings(
        max_readings=storage_data.get("max_readings", 5_000_000),
        high_water=storage_data.get("high_water", 4_500_000),
        low_water=storage_data.get("low_water", 3_000_000),
    )

    calibration = [
        CalibrationOffset(
            channel=int(c["channel"]),
            offset=float(c.get("offset", 0.0)),
            enabled=c.get("enabled", True),
        )
        for c in data.get("calibration", []) or []
    ]

    diag_data = data.get("diagnostics", {}) or {}
    diagnostics = DiagnosticsSettings(
        interval_s=float(diag_data.get("interval_s", 30.0)),
        health_enabled=diag_data.get("health_enabled", True),
        health_host=diag_data.get("health_host", "127.0.0.1"),
        health_port=diag_data.get("health_port", 8093),
    )

    config = AcquisitionConfig(
        serial=serial,
        polling=polling,
        conversion=conversion,
        test_mode=test_mode,
        storage=storage,
        calibration=calibration,
        diagnostics=diagnostics,
        log_level=data.get("log_level", "INFO"),
    )

    raise_for_errors(validate_acquisition_config(config))
    return config


def find_config_path() -> str:
    """Find configuration file"""
    env_path = os.environ.get("THERMOPOLL_CONFIG")
    if env_path:
        return env_path

    possible_paths = [
        Path("/etc/thermopoll/config.yaml"),
        Path(__file__).parent.parent / "config.yaml",
    ]

    for path in possible_paths:
        if path.exists():
            return str(path)

    return str(possible_paths[-1])


def load_config_file(config_path: str | Path) -> AcquisitionConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated AcquisitionConfig

    Raises:
        ConfigError: File missing, unparsable or invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {config_path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"configuration root must be a mapping in {config_path}")

    return load_acquisition_config(data)
