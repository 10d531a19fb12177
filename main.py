#!/usr/bin/env python3
"""
thermopoll - Main Entry Point

Polls a multi-channel Modbus RTU temperature module and keeps a bounded
in-memory time series, served over a local HTTP endpoint.

Usage:
    python main.py                    # Use default config.yaml
    python main.py --config my.yaml   # Use custom config file
    python main.py --dry-run          # Print config and exit
    python main.py --test-mode        # Synthetic data, no serial port
    python main.py --simulate         # Virtual sensor instead of a serial port

The service will:
1. Load configuration from YAML file
2. Open the serial port (or a virtual sensor)
3. Poll the sensor on the configured cadence
4. Serve readings, traces and status on 127.0.0.1:8093
"""

import argparse
import asyncio
import sys

from common.config import AcquisitionConfig, ConversionMode, find_config_path, load_config_file
from common.exceptions import ConfigError, ConversionError, TransportIOError
from common.logging_setup import get_service_logger, set_log_level
from services.acquisition.conversion import ConversionPipeline
from services.acquisition.service import AcquisitionService
from services.acquisition.transport import SerialTransport, Transport
from simulator.virtual_sensor_bus import VirtualTemperatureSensor

logger = get_service_logger("main")


def print_config_summary(config: AcquisitionConfig, simulate: bool = False) -> None:
    """Print a summary of the configuration."""
    print("\n" + "=" * 60)
    print("  THERMOPOLL TEMPERATURE ACQUISITION")
    print("=" * 60)

    serial = config.serial
    if config.test_mode.enabled:
        print("\n  Source: Test mode (synthetic data)")
    elif simulate:
        print(f"\n  Source: Virtual sensor (slave {serial.slave_id})")
    else:
        print(f"\n  Source: {serial.port} @ {serial.baudrate} baud "
              f"({serial.bytesize}{serial.parity}{serial.stopbits})")
        print(f"  Slave ID: {serial.slave_id}")
        print(f"  Timeout: {serial.timeout_s}s, CRC check: {'on' if serial.verify_crc else 'off'}")

    polling = config.polling
    plan = polling.register_plan
    start, quantity = plan.span()
    print(f"\n  Polling:")
    print(f"    - Interval: {polling.interval_s}s")
    print(f"    - Channels: {sorted(polling.selected_channels)} (of {plan.register_count})")
    if plan.custom_registers:
        print(f"    - Registers: {plan.custom_registers} (span {start}+{quantity})")
    else:
        print(f"    - Registers: {start}-{start + quantity - 1}")

    conversion = config.conversion
    print(f"\n  Conversion: {conversion.mode.value}")
    if conversion.mode == ConversionMode.CUSTOM:
        print(f"    - Formula: {conversion.formula}")
    try:
        preview = ConversionPipeline(conversion).preview()
        print(f"    - Preview: raw {conversion.test_value} -> {preview:.2f} C")
    except ConversionError as e:
        print(f"    - Preview: raw {conversion.test_value} failed ({e.message})")

    if config.test_mode.enabled:
        tm = config.test_mode
        print(f"\n  Test Mode: {tm.min_temp}-{tm.max_temp} C, noise {tm.noise_level}")

    storage = config.storage
    print(f"\n  Storage: cap {storage.max_readings:,}, "
          f"evict above {storage.high_water:,} to {storage.low_water:,}")

    active = [c for c in config.calibration if c.enabled and c.offset != 0]
    print(f"  Calibration: {len(active)} active offsets")

    diag = config.diagnostics
    if diag.health_enabled:
        print(f"\n  Health server: http://{diag.health_host}:{diag.health_port}")

    print("=" * 60 + "\n")


def build_transport(config: AcquisitionConfig, simulate: bool) -> Transport | None:
    """Create the transport for device mode (None in test mode)."""
    if config.test_mode.enabled:
        return None

    if simulate:
        plan = config.polling.register_plan
        start, _ = plan.span()
        return VirtualTemperatureSensor(
            slave_id=config.serial.slave_id,
            base_address=start,
            channel_count=plan.register_count,
            auto_drift=True,
        )

    serial = config.serial
    transport = SerialTransport(
        port=serial.port,
        baudrate=serial.baudrate,
        parity=serial.parity,
        stopbits=serial.stopbits,
        bytesize=serial.bytesize,
        timeout=serial.timeout_s,
    )
    transport.open()
    return transport


async def main_async(config: AcquisitionConfig, transport: Transport | None) -> None:
    """
    Async main function.

    Args:
        config: Validated configuration
        transport: Opened transport, or None for test mode
    """
    service = AcquisitionService(config, transport=transport)

    try:
        await service.start()
        await service.start_recording()
        await service.run_until_shutdown()
    except asyncio.CancelledError:
        logger.info("Acquisition cancelled")
    finally:
        await service.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="thermopoll - Modbus RTU temperature acquisition"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: $THERMOPOLL_CONFIG or config.yaml)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without starting acquisition"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Generate synthetic readings instead of polling hardware"
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Poll a virtual sensor instead of the serial port"
    )

    args = parser.parse_args()

    # Load and validate configuration
    config_path = args.config or find_config_path()
    try:
        config = load_config_file(config_path)
        # Compile the formula now so a bad one fails before startup
        ConversionPipeline(config.conversion)
    except ConfigError as e:
        logger.error(e.message)
        sys.exit(1)

    # Set log level
    set_log_level("DEBUG" if args.verbose else config.log_level)

    if args.test_mode:
        config.test_mode.enabled = True

    # Print summary
    print_config_summary(config, simulate=args.simulate)

    # Dry run mode
    if args.dry_run:
        print("Dry run mode - exiting without starting acquisition")
        sys.exit(0)

    try:
        transport = build_transport(config, args.simulate)
    except TransportIOError as e:
        logger.error(e.message)
        sys.exit(1)

    logger.info(f"Starting acquisition (config: {config_path})")
    print("Press Ctrl+C to stop\n")

    try:
        asyncio.run(main_async(config, transport))
    except KeyboardInterrupt:
        print("\nStopped by user")
    finally:
        if isinstance(transport, SerialTransport):
            transport.close()


if __name__ == "__main__":
    main()
