"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and YAML loading
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Precise interval loop
- timestamp.py - Epoch millisecond helpers
"""

from .config import (
    AcquisitionConfig,
    SerialSettings,
    RegisterPlan,
    PollingSchedule,
    ConversionConfig,
    TestModeSettings,
    StoreSettings,
    CalibrationOffset,
    DiagnosticsSettings,
    ConversionMode,
    AcquisitionMode,
    load_acquisition_config,
    load_config_file,
)
from .exceptions import (
    ThermopollError,
    ConfigError,
    FormulaError,
    FrameError,
    FrameTooShort,
    UnexpectedSlave,
    UnexpectedFunction,
    FrameIncomplete,
    CrcMismatch,
    TransportError,
    TransportTimeout,
    TransportIOError,
    ConversionError,
    ConversionFailure,
    InvalidTemperature,
    ServiceError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    LogContext,
    log_transaction,
    log_memory_usage,
)

__all__ = [
    # Config
    "AcquisitionConfig",
    "SerialSettings",
    "RegisterPlan",
    "PollingSchedule",
    "ConversionConfig",
    "TestModeSettings",
    "StoreSettings",
    "CalibrationOffset",
    "DiagnosticsSettings",
    "ConversionMode",
    "AcquisitionMode",
    "load_acquisition_config",
    "load_config_file",
    # Exceptions
    "ThermopollError",
    "ConfigError",
    "FormulaError",
    "FrameError",
    "FrameTooShort",
    "UnexpectedSlave",
    "UnexpectedFunction",
    "FrameIncomplete",
    "CrcMismatch",
    "TransportError",
    "TransportTimeout",
    "TransportIOError",
    "ConversionError",
    "ConversionFailure",
    "InvalidTemperature",
    "ServiceError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "LogContext",
    "log_transaction",
    "log_memory_usage",
]
