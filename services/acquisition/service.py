"""
Acquisition Service - Temperature Polling

Responsible for:
- Owning the reading store and the polling engine
- Recording session control (start, pause, test mode)
- Memory diagnostics on a 30 s cadence
- Serving readings, traces and status over a local HTTP server
"""

import asyncio
import signal
from datetime import datetime, timezone
from typing import Iterable

from aiohttp import web

from common.config import (
    AcquisitionConfig,
    AcquisitionMode,
    TestModeSettings,
    find_config_path,
    load_config_file,
)
from common.exceptions import ServiceError
from common.logging_setup import get_service_logger, log_memory_usage
from common.scheduler import ScheduledLoop

from services.system.metrics_collector import MemoryMetrics, MetricsCollector

from .polling_engine import ModbusPollingEngine
from .readings import Reading
from .session import SessionLog
from .statistics import all_channel_statistics
from .store import BoundedTimeSeriesStore
from .synthetic import TestModeGenerator
from .transport import Transport

logger = get_service_logger("acquisition")

DEFAULT_READINGS_LIMIT = 1000
DEFAULT_TRACES_LIMIT = 100


class AcquisitionService:
    """
    Acquisition Service

    Wires configuration, store and engine together:
    - Device or test mode acquisition through ModbusPollingEngine
    - Bounded retention through BoundedTimeSeriesStore
    - Memory diagnostics through MetricsCollector
    - Health/readings HTTP server (aiohttp)
    """

    def __init__(
        self,
        config: AcquisitionConfig | None = None,
        transport: Transport | None = None,
        generator: TestModeGenerator | None = None,
    ):
        self.config = config or AcquisitionConfig()

        self.store = BoundedTimeSeriesStore(self.config.storage)
        self.engine = ModbusPollingEngine(
            store=self.store,
            serial=self.config.serial,
            schedule=self.config.polling,
            conversion=self.config.conversion,
            test_mode=self.config.test_mode,
            calibration=self.config.calibration,
            generator=generator,
            mode=AcquisitionMode.TEST if self.config.test_mode.enabled else AcquisitionMode.DEVICE,
        )
        self.session = SessionLog()
        self.metrics_collector = MetricsCollector()

        self._transport = transport
        self._start_time = datetime.now(timezone.utc)
        self._last_metrics: MemoryMetrics | None = None

        # Diagnostics
        self._diagnostics_loop: ScheduledLoop | None = None

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # State
        self._running = False
        self._recording = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def test_mode(self) -> bool:
        return self.engine.mode == AcquisitionMode.TEST

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start diagnostics and the health server (recording starts separately)"""
        if self._running:
            return

        logger.info("Starting Acquisition Service")
        self._running = True
        self._start_time = datetime.now(timezone.utc)

        if self._transport is not None:
            self.engine.attach_transport(self._transport)

        self._diagnostics_loop = ScheduledLoop(
            self.config.diagnostics.interval_s,
            self._diagnostics_tick,
            name="memory-diagnostics",
        )
        await self._diagnostics_loop.start()

        if self.config.diagnostics.health_enabled:
            await self._start_health_server()

        logger.info(
            f"Acquisition Service started ({self.engine.mode.value} mode)",
            extra={"mode": self.engine.mode.value},
        )

    async def stop(self) -> None:
        """Stop the acquisition service"""
        if not self._running:
            return

        logger.info("Stopping Acquisition Service")
        self._running = False

        if self._recording:
            self.engine.stop()
            self._recording = False
            self.session.record_stop("Service stopped")

        if self._diagnostics_loop:
            self._diagnostics_loop.stop()
            self._diagnostics_loop = None

        await self._stop_health_server()

        logger.info("Acquisition Service stopped")

    async def run_until_shutdown(self) -> None:
        """Block until SIGINT/SIGTERM (or request_shutdown())"""
        self._setup_signal_handlers()
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # =========================================================================
    # Recording control
    # =========================================================================

    async def start_recording(self) -> None:
        """Start (or resume) acquisition"""
        if not self._running:
            raise ServiceError("service is not running", "acquisition")
        if self._recording:
            return

        await self.engine.start()
        self._recording = True
        event = self.session.record_start(test_mode=self.test_mode)
        if event:
            logger.info(f"Session {event.action.value}: {event.reason}")

    async def pause_recording(self) -> None:
        """Pause acquisition; stored readings are kept"""
        if not self._recording:
            return

        self.engine.stop()
        self._recording = False
        event = self.session.record_pause(test_mode=self.test_mode)
        if event:
            logger.info(f"Session {event.action.value}: {event.reason}")

    async def enable_test_mode(self, settings: TestModeSettings | None = None) -> None:
        """Switch acquisition to the synthetic generator"""
        if settings is not None:
            self.engine.set_test_settings(settings)
            self.config.test_mode = settings
        self.config.test_mode.enabled = True
        await self.engine.set_mode(AcquisitionMode.TEST)

    async def disable_test_mode(self) -> None:
        """Switch acquisition back to the sensor bus"""
        self.config.test_mode.enabled = False
        await self.engine.set_mode(AcquisitionMode.DEVICE)

    def import_readings(
        self,
        readings: Iterable[Reading],
        continue_writing: bool = False,
        source: str = "import",
    ) -> int:
        """
        Load readings from an external source.

        Args:
            readings: Imported readings
            continue_writing: Merge with the current contents instead of replacing
            source: Label for the session log (e.g. file name)

        Returns:
            Number of readings held after the import
        """
        imported = list(readings)

        if continue_writing and len(self.store) > 0:
            current = self.store.snapshot()
            current_channels = {r.channel for r in current}
            imported_channels = {r.channel for r in imported}

            count = self.store.replace(current + imported)

            reason = f"Continued from import: {source} ({len(imported)} records)"
            if imported_channels and current_channels != imported_channels:
                reason += " - Channel count mismatch detected"
                logger.warning(
                    f"Imported channels {sorted(imported_channels)} differ from "
                    f"current {sorted(current_channels)}"
                )
            self.session.record_resume(reason)
        else:
            count = self.store.replace(imported)

        logger.info(f"Imported {len(imported)} readings from {source}, store holds {count}")
        return count

    def clear(self) -> None:
        """Drop all readings, traces and session events"""
        self.store.clear()
        self.session.clear()

    # =========================================================================
    # Diagnostics
    # =========================================================================

    def collect_diagnostics(self) -> MemoryMetrics:
        """Sample memory usage; reads store sizes only"""
        metrics = self.metrics_collector.collect(
            reading_count=len(self.store),
            trace_count=self.store.trace_count,
        )
        self._last_metrics = metrics
        return metrics

    async def _diagnostics_tick(self) -> None:
        metrics = self.collect_diagnostics()
        if metrics.reading_count > 0:
            log_memory_usage(
                logger,
                metrics.reading_count,
                metrics.trace_count,
                metrics.estimated_mb,
                metrics.process_rss_mb,
            )

    def get_status(self) -> dict:
        """Get service status"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "running": self._running,
            "recording": self._recording,
            "mode": self.engine.mode.value,
            "uptime": int(uptime),
            "engine": self.engine.get_stats(),
            "store": self.store.get_stats(),
            "operation_log": self.engine.get_operation_log(),
            "session_events": [e.to_dict() for e in self.session.events()],
            "memory": self._last_metrics.to_dict() if self._last_metrics else None,
        }

    # =========================================================================
    # Health server
    # =========================================================================

    def build_health_app(self) -> web.Application:
        """HTTP routes for health, readings, traces, status and statistics"""
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/readings", self._readings_handler)
        app.router.add_get("/traces", self._traces_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/statistics", self._statistics_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_app = self.build_health_app()

        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        host = self.config.diagnostics.health_host
        port = self.config.diagnostics.health_port
        site = web.TCPSite(self._health_runner, host, port)
        await site.start()

        logger.info(f"Health server started on {host}:{port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None
            self._health_app = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        stats = self.engine.get_stats()

        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "acquisition",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mode": stats["mode"],
            "recording": self._recording,
            "readings": len(self.store),
            "last_sample_ms": self.store.last_sample_ms,
        })

    async def _readings_handler(self, request: web.Request) -> web.Response:
        """Return stored readings (?channel=&since=&limit=)"""
        try:
            channel = _int_param(request, "channel")
            since = _int_param(request, "since")
            limit = _int_param(request, "limit", DEFAULT_READINGS_LIMIT)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        if since is not None:
            readings = self.store.readings_since(since)
        else:
            readings = self.store.snapshot()
        if channel is not None:
            readings = [r for r in readings if r.channel == channel]

        total = len(readings)
        if limit is not None and limit >= 0:
            readings = readings[-limit:] if limit else []

        return web.json_response({
            "count": len(readings),
            "total": total,
            "readings": [r.to_dict() for r in readings],
        })

    async def _traces_handler(self, request: web.Request) -> web.Response:
        """Return the newest raw traces (?limit=)"""
        try:
            limit = _int_param(request, "limit", DEFAULT_TRACES_LIMIT)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        traces = self.store.trace_snapshot(limit)
        return web.json_response({
            "count": len(traces),
            "traces": [t.to_dict() for t in traces],
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Return engine, store and session status"""
        return web.json_response(self.get_status())

    async def _statistics_handler(self, request: web.Request) -> web.Response:
        """Return per-channel statistics (?calibrated=true)"""
        calibrated = request.query.get("calibrated", "false").lower() in ("1", "true", "yes")
        stats = all_channel_statistics(self.store.snapshot(), calibrated=calibrated)
        return web.json_response({
            "calibrated": calibrated,
            "channels": {str(ch): s.to_dict() for ch, s in stats.items()},
        })


def _int_param(request: web.Request, name: str, default: int | None = None) -> int | None:
    value = request.query.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"query parameter '{name}' must be an integer, got {value!r}")


async def main() -> None:
    """Main entry point"""
    service = AcquisitionService(load_config_file(find_config_path()))

    try:
        await service.start()
        await service.start_recording()
        await service.run_until_shutdown()
    finally:
        await service.stop()


if __name__ == "__main__":
    asyncio.run(main())
