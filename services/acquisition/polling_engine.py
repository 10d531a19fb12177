"""
Modbus Polling Engine

Drives acquisition on a fixed cadence, in one of two modes:

- DEVICE: one FC03 transaction per tick against the attached transport
- TEST: one synthetic batch per tick; the transport is never touched

Device transaction state machine:

    IDLE -> POLLING -> AWAITING_RESPONSE -> PARSING   -> IDLE
                                         -> TIMED_OUT -> IDLE
                                         -> FAULTED   -> IDLE

At most one transaction is in flight. A tick that arrives while the engine
is not IDLE is skipped and counted, never queued. A transaction commits all
of its readings in one store append, or nothing.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from common.config import (
    AcquisitionMode,
    CalibrationOffset,
    ConversionConfig,
    PollingSchedule,
    SerialSettings,
    TestModeSettings,
    raise_for_errors,
)
from common.exceptions import ConversionError, FrameError, TransportError, TransportTimeout
from common.logging_setup import get_service_logger, log_transaction, LogContext
from common.scheduler import ScheduledLoop
from common.timestamp import now_ms

from .calibration import CalibrationTable
from .conversion import ConversionPipeline
from .frame_codec import build_read_request, format_frame, parse_read_response, register_span
from .readings import ConversionMethod, RawTrace, Reading
from .store import BoundedTimeSeriesStore
from .synthetic import TestModeGenerator
from .transport import Transport

logger = get_service_logger("acquisition.engine")

# Test mode never runs faster than this
MIN_TEST_INTERVAL_S = 0.1

OPERATION_LOG_SIZE = 10


class EngineState(str, Enum):
    """Device transaction states"""
    IDLE = "idle"
    POLLING = "polling"
    AWAITING_RESPONSE = "awaiting_response"
    PARSING = "parsing"
    TIMED_OUT = "timed_out"
    FAULTED = "faulted"


class TickOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAULTED = "faulted"
    SKIPPED = "skipped"
    NO_TRANSPORT = "no_transport"
    DISCARDED = "discarded"


@dataclass
class TransactionState:
    """One in-flight device transaction (never persisted)"""
    sequence: int
    request: bytes
    expected_slave: int
    expected_function: int
    start_address: int
    quantity: int
    deadline: float               # loop.time() based
    started_at: float = field(default_factory=time.monotonic)


@dataclass
class TickResult:
    """Outcome of one tick"""
    outcome: TickOutcome
    sequence: int | None = None
    readings: list[Reading] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome == TickOutcome.SUCCESS


class ModbusPollingEngine:
    """
    Cadence-driven acquisition orchestrator.

    The transport is injected with attach_transport(); configuration is
    passed in by value and replaced only through the set_* methods.
    """

    def __init__(
        self,
        store: BoundedTimeSeriesStore,
        serial: SerialSettings | None = None,
        schedule: PollingSchedule | None = None,
        conversion: ConversionConfig | None = None,
        test_mode: TestModeSettings | None = None,
        calibration: Iterable[CalibrationOffset] = (),
        generator: TestModeGenerator | None = None,
        mode: AcquisitionMode = AcquisitionMode.DEVICE,
    ):
        self._store = store
        self._serial = serial or SerialSettings()
        self._schedule = schedule or PollingSchedule()
        raise_for_errors(self._serial.validate() + self._schedule.validate())

        # Raises FormulaError for a bad custom formula
        self._pipeline = ConversionPipeline(conversion)
        self._generator = generator or TestModeGenerator(test_mode)
        self._calibration = CalibrationTable(calibration)
        self._mode = mode

        self._transport: Transport | None = None
        self._state = EngineState.IDLE
        self._transaction: TransactionState | None = None
        self._sequence = 0

        self._running = False
        self._loops: dict[AcquisitionMode, ScheduledLoop] = {}

        self._operation_log: deque[dict] = deque(maxlen=OPERATION_LOG_SIZE)
        self._stats = {
            "transactions": 0,
            "successes": 0,
            "timeouts": 0,
            "faults": 0,
            "skipped_ticks": 0,
            "no_transport": 0,
            "discarded_responses": 0,
            "conversion_errors": 0,
            "missing_values": 0,
            "test_batches": 0,
            "readings_committed": 0,
            "last_error": None,
            "last_success_ms": None,
        }

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def mode(self) -> AcquisitionMode:
        return self._mode

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_transport(self) -> bool:
        return self._transport is not None

    @property
    def schedule(self) -> PollingSchedule:
        return self._schedule

    @property
    def conversion(self) -> ConversionConfig:
        return self._pipeline.config

    @property
    def pipeline(self) -> ConversionPipeline:
        return self._pipeline

    @property
    def calibration(self) -> CalibrationTable:
        return self._calibration

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the cadence for the current mode."""
        if self._running:
            return
        self._running = True
        await self._start_loop(self._mode)
        logger.info(
            f"Engine started in {self._mode.value} mode "
            f"(interval {self._interval_for(self._mode)}s)"
        )

    def stop(self) -> None:
        """Stop all cadences; an in-flight transaction is cancelled."""
        if not self._running:
            return
        self._running = False
        self._stop_loops()
        logger.info("Engine stopped")

    async def set_mode(self, mode: AcquisitionMode) -> None:
        """
        Switch between device and test acquisition.

        The old mode's loop is stopped before the new one starts, so the
        two modes never interleave.
        """
        mode = AcquisitionMode(mode)
        if mode == self._mode:
            return

        previous = self._mode
        self._mode = mode
        if self._running:
            self._stop_loops()
            await self._start_loop(mode)

        logger.info(f"Acquisition mode {previous.value} -> {mode.value}")

    def _interval_for(self, mode: AcquisitionMode) -> float:
        if mode == AcquisitionMode.TEST:
            return max(self._schedule.interval_s, MIN_TEST_INTERVAL_S)
        return self._schedule.interval_s

    async def _start_loop(self, mode: AcquisitionMode) -> None:
        if mode == AcquisitionMode.TEST:
            callback = self._test_tick
        else:
            callback = self._device_tick

        loop = ScheduledLoop(
            self._interval_for(mode),
            callback,
            name=f"acquisition-{mode.value}",
            run_immediately=True,
        )
        self._loops[mode] = loop
        await loop.start()

    def _stop_loops(self) -> None:
        for loop in self._loops.values():
            loop.stop()
        self._loops.clear()

    async def _device_tick(self) -> None:
        await self.poll_once()

    async def _test_tick(self) -> None:
        self.generate_once()

    # =========================================================================
    # Transport and configuration
    # =========================================================================

    def attach_transport(self, transport: Transport) -> None:
        """Use `transport` for device transactions (not opened here)."""
        self._transport = transport
        logger.info(f"Transport attached: {transport!r}")

    def detach_transport(self) -> None:
        """Drop the transport; any in-flight response is discarded."""
        self._transport = None
        # A response to the abandoned transaction fails the sequence check
        self._transaction = None
        logger.info("Transport detached")

    async def set_schedule(self, schedule: PollingSchedule) -> None:
        """Replace cadence, channel selection and register plan."""
        raise_for_errors(schedule.validate())
        interval_changed = schedule.interval_s != self._schedule.interval_s
        self._schedule = schedule

        if interval_changed:
            for mode, loop in self._loops.items():
                loop.set_interval(self._interval_for(mode))

        logger.info(
            f"Schedule updated: interval {schedule.interval_s}s, "
            f"channels {sorted(schedule.selected_channels)}"
        )

    def set_conversion(self, config: ConversionConfig) -> float:
        """
        Replace the conversion strategy.

        The formula is compiled before the swap; on FormulaError the
        previous strategy stays active.

        Returns:
            Converted preview of config.test_value
        """
        raise_for_errors(config.validate())
        pipeline = ConversionPipeline(config)
        self._pipeline = pipeline
        logger.info(f"Conversion set to {pipeline!r}")
        try:
            return pipeline.preview()
        except ConversionError as e:
            logger.warning(f"Conversion preview of {config.test_value} failed: {e.message}")
            return float("nan")

    def set_calibration(
        self,
        offsets: Iterable[CalibrationOffset],
        apply_to_history: bool = False,
    ) -> CalibrationTable:
        """Replace calibration offsets, optionally rewriting stored readings."""
        self._calibration = CalibrationTable(offsets)
        if apply_to_history:
            count = self._store.apply_calibration(self._calibration)
            logger.info(f"Recalibrated {count} stored readings")
        logger.info(f"Calibration set: {self._calibration.active_count()} active offsets")
        return self._calibration

    def set_test_settings(self, settings: TestModeSettings) -> None:
        raise_for_errors(settings.validate())
        self._generator.settings = settings

    # =========================================================================
    # Device mode
    # =========================================================================

    async def poll_once(self) -> TickResult:
        """
        Run one device transaction.

        Never raises for frame, transport or conversion problems; the
        outcome is reported in the TickResult and the stats.
        """
        if self._state != EngineState.IDLE:
            self._stats["skipped_ticks"] += 1
            logger.debug(f"Tick skipped, engine is {self._state.value}")
            return TickResult(TickOutcome.SKIPPED)

        transport = self._transport
        if transport is None:
            self._stats["no_transport"] += 1
            return TickResult(TickOutcome.NO_TRANSPORT, error="no transport attached")

        self._sequence += 1
        sequence = self._sequence
        self._stats["transactions"] += 1
        started = time.monotonic()

        # Configuration is read once per transaction
        schedule = self._schedule
        pipeline = self._pipeline
        calibration = self._calibration

        try:
            result = await self._transact(transport, sequence, schedule, pipeline, calibration)
        finally:
            self._transaction = None
            self._state = EngineState.IDLE

        result.duration_ms = (time.monotonic() - started) * 1000
        self._record(result, AcquisitionMode.DEVICE)
        return result

    async def _transact(
        self,
        transport: Transport,
        sequence: int,
        schedule: PollingSchedule,
        pipeline: ConversionPipeline,
        calibration: CalibrationTable,
    ) -> TickResult:
        loop = asyncio.get_running_loop()

        # IDLE -> POLLING
        self._state = EngineState.POLLING
        channel_registers = schedule.register_plan.channel_registers()
        start_address, quantity = register_span(address for _, address in channel_registers)
        try:
            request = build_read_request(self._serial.slave_id, start_address, quantity)
        except ValueError as e:
            return self._fault(sequence, str(e))

        transaction = TransactionState(
            sequence=sequence,
            request=request,
            expected_slave=self._serial.slave_id,
            expected_function=request[1],
            start_address=start_address,
            quantity=quantity,
            deadline=loop.time() + self._serial.timeout_s,
        )
        self._transaction = transaction
        logger.debug(f"TX #{sequence}: {format_frame(request)}")

        # POLLING -> AWAITING_RESPONSE
        try:
            response = await asyncio.wait_for(
                self._exchange(transport, request),
                timeout=self._serial.timeout_s,
            )
        except asyncio.TimeoutError:
            return self._timeout(sequence, f"no response within {self._serial.timeout_s:.3f}s")
        except TransportTimeout as e:
            return self._timeout(sequence, e.message)
        except (TransportError, OSError) as e:
            return self._fault(sequence, getattr(e, "message", str(e)))

        if self._transaction is None or self._transaction.sequence != sequence:
            self._stats["discarded_responses"] += 1
            logger.info(f"Discarded response for abandoned transaction #{sequence}")
            return TickResult(TickOutcome.DISCARDED, sequence, error="transaction abandoned")

        # AWAITING_RESPONSE -> PARSING
        self._state = EngineState.PARSING
        logger.debug(f"RX #{sequence}: {format_frame(response)}")
        try:
            values = parse_read_response(
                response,
                transaction.expected_slave,
                transaction.expected_function,
                verify_crc=self._serial.verify_crc,
            )
        except FrameError as e:
            return self._fault(sequence, e.message)

        timestamp = now_ms()
        readings, traces = self._build_batch(
            values, channel_registers, start_address, timestamp, schedule, pipeline, calibration
        )

        # One append per transaction; readers never see a partial tick
        self._store.append_batch(readings, traces)

        self._stats["successes"] += 1
        self._stats["readings_committed"] += len(readings)
        self._stats["last_success_ms"] = timestamp
        return TickResult(TickOutcome.SUCCESS, sequence, readings=readings)

    async def _exchange(self, transport: Transport, request: bytes) -> bytes:
        await transport.write(request)
        self._state = EngineState.AWAITING_RESPONSE
        return await transport.read()

    def _timeout(self, sequence: int, error: str) -> TickResult:
        self._state = EngineState.TIMED_OUT
        self._stats["timeouts"] += 1
        self._stats["last_error"] = error
        return TickResult(TickOutcome.TIMEOUT, sequence, error=error)

    def _fault(self, sequence: int, error: str) -> TickResult:
        self._state = EngineState.FAULTED
        self._stats["faults"] += 1
        self._stats["last_error"] = error
        return TickResult(TickOutcome.FAULTED, sequence, error=error)

    def _build_batch(
        self,
        values: list[int],
        channel_registers: list[tuple[int, int]],
        span_start: int,
        timestamp: int,
        schedule: PollingSchedule,
        pipeline: ConversionPipeline,
        calibration: CalibrationTable,
    ) -> tuple[list[Reading], list[RawTrace]]:
        """Map register values to channels, convert and calibrate."""
        readings = []
        traces = []

        for channel, address in channel_registers:
            if not schedule.is_selected(channel):
                continue

            index = address - span_start
            if index >= len(values):
                self._stats["missing_values"] += 1
                logger.debug(f"No value for channel {channel} (register {address})")
                continue

            raw_value = values[index]
            try:
                temperature = pipeline.convert_validated(raw_value)
            except ConversionError as e:
                self._stats["conversion_errors"] += 1
                logger.debug(f"Channel {channel} sample dropped: {e.message}")
                continue

            reading = calibration.apply(
                Reading(
                    timestamp=timestamp,
                    channel=channel,
                    temperature=temperature,
                    raw_value=raw_value,
                )
            )
            readings.append(reading)
            traces.append(
                RawTrace(
                    timestamp=timestamp,
                    channel=channel,
                    register_address=address,
                    raw_value=raw_value,
                    converted_temperature=temperature,
                    conversion_method=pipeline.method,
                )
            )

        return readings, traces

    # =========================================================================
    # Test mode
    # =========================================================================

    def generate_once(self) -> TickResult:
        """Generate and store one synthetic batch (transport untouched)."""
        started = time.monotonic()
        schedule = self._schedule
        calibration = self._calibration

        readings = []
        traces = []
        for reading in self._generator.generate():
            if not schedule.is_selected(reading.channel):
                continue
            readings.append(calibration.apply(reading))
            traces.append(
                RawTrace(
                    timestamp=reading.timestamp,
                    channel=reading.channel,
                    register_address=schedule.register_plan.register_for_channel(reading.channel) or 0,
                    raw_value=reading.raw_value,
                    converted_temperature=reading.temperature,
                    conversion_method=ConversionMethod.BUILTIN,
                )
            )

        self._store.append_batch(readings, traces)
        self._stats["test_batches"] += 1
        self._stats["readings_committed"] += len(readings)
        if readings:
            self._stats["last_success_ms"] = readings[0].timestamp

        result = TickResult(
            TickOutcome.SUCCESS,
            readings=readings,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        self._record(result, AcquisitionMode.TEST)
        return result

    # =========================================================================
    # Observability
    # =========================================================================

    def _record(self, result: TickResult, mode: AcquisitionMode) -> None:
        self._operation_log.append({
            "timestamp": now_ms(),
            "mode": mode.value,
            "sequence": result.sequence,
            "outcome": result.outcome.value,
            "readings": len(result.readings),
            "duration_ms": round(result.duration_ms, 1),
            "error": result.error,
        })
        if mode == AcquisitionMode.DEVICE and result.sequence is not None:
            with LogContext(logger, slave_id=self._serial.slave_id):
                log_transaction(
                    logger,
                    result.sequence,
                    result.outcome.value,
                    readings=len(result.readings),
                    duration_ms=result.duration_ms,
                    error=result.error,
                )

    def get_operation_log(self) -> list[dict]:
        """Most recent operations, oldest first."""
        return list(self._operation_log)

    def get_stats(self) -> dict:
        """Get engine statistics"""
        return {
            **self._stats,
            "state": self._state.value,
            "mode": self._mode.value,
            "running": self._running,
            "has_transport": self._transport is not None,
            "sequence": self._sequence,
            "interval_s": self._interval_for(self._mode),
            "conversion_method": self._pipeline.method.value,
            "calibration_active": self._calibration.active_count(),
            "loops": [loop.get_stats() for loop in self._loops.values()],
        }
