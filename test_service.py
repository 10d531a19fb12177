"""Tests for the acquisition service and its HTTP routes."""

import asyncio

import pytest
from aiohttp import test_utils

from common.config import (
    AcquisitionConfig,
    DiagnosticsSettings,
    PollingSchedule,
    TestModeSettings,
)
from common.exceptions import ServiceError
from conftest import make_reading
from services.acquisition import AcquisitionService
from services.acquisition.session import SessionAction
from simulator import VirtualTemperatureSensor


def _config(test_mode: bool = False) -> AcquisitionConfig:
    return AcquisitionConfig(
        polling=PollingSchedule(interval_s=0.1),
        test_mode=TestModeSettings(enabled=test_mode),
        diagnostics=DiagnosticsSettings(health_enabled=False),
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_recording_requires_running_service(self) -> None:
        service = AcquisitionService(_config())
        with pytest.raises(ServiceError):
            await service.start_recording()

    @pytest.mark.asyncio
    async def test_start_does_not_record(self) -> None:
        service = AcquisitionService(_config(test_mode=True))
        await service.start()
        await asyncio.sleep(0.05)
        assert service.is_running
        assert not service.is_recording
        assert len(service.store) == 0
        await service.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self) -> None:
        service = AcquisitionService(_config())
        await service.start()
        await service.stop()
        await service.stop()
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_test_mode_recording(self) -> None:
        service = AcquisitionService(_config(test_mode=True))
        await service.start()
        await service.start_recording()
        await asyncio.sleep(0.05)

        assert service.test_mode
        assert len(service.store) == 10
        await service.stop()

    @pytest.mark.asyncio
    async def test_device_recording_with_virtual_sensor(self) -> None:
        sensor = VirtualTemperatureSensor(slave_id=1, channel_count=10)
        service = AcquisitionService(_config(), transport=sensor)
        await service.start()
        await service.start_recording()
        await asyncio.sleep(0.05)
        await service.stop()

        readings = service.store.snapshot()
        assert [r.channel for r in readings[:10]] == list(range(1, 11))
        assert readings[0].temperature == pytest.approx(20.0)
        assert readings[9].temperature == pytest.approx(42.5)
        assert sensor.requests_handled >= 1

    @pytest.mark.asyncio
    async def test_switch_to_test_mode(self) -> None:
        service = AcquisitionService(_config())
        await service.start()
        await service.start_recording()
        await service.enable_test_mode(TestModeSettings(min_temp=30.0, max_temp=40.0))
        await asyncio.sleep(0.05)

        assert service.test_mode
        assert service.config.test_mode.enabled
        assert all(30.0 <= r.temperature <= 40.0 for r in service.store.snapshot())

        await service.disable_test_mode()
        assert not service.test_mode
        await service.stop()


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_start_pause_resume_stop(self) -> None:
        service = AcquisitionService(_config(test_mode=True))
        await service.start()
        await service.start_recording()
        await service.pause_recording()
        await service.start_recording()
        await service.stop()

        actions = [e.action for e in service.session.events()]
        assert actions == [
            SessionAction.START,
            SessionAction.PAUSE,
            SessionAction.RESUME,
            SessionAction.STOP,
        ]
        assert service.session.events()[0].reason == "Test mode started"

    @pytest.mark.asyncio
    async def test_pause_keeps_readings(self) -> None:
        service = AcquisitionService(_config(test_mode=True))
        await service.start()
        await service.start_recording()
        await asyncio.sleep(0.05)
        await service.pause_recording()

        count = len(service.store)
        await asyncio.sleep(0.15)
        assert len(service.store) == count > 0
        await service.stop()


class TestImport:
    def test_replace(self) -> None:
        service = AcquisitionService(_config())
        service.store.append_batch([make_reading(1)])

        count = service.import_readings([make_reading(10, 2), make_reading(5, 2)])

        assert count == 2
        assert [r.timestamp for r in service.store.snapshot()] == [5, 10]
        assert service.session.events() == []

    def test_merge_records_resume(self) -> None:
        service = AcquisitionService(_config())
        service.store.append_batch([make_reading(1, 1), make_reading(1, 2)])

        count = service.import_readings(
            [make_reading(2, 1), make_reading(2, 2)],
            continue_writing=True,
            source="run1.csv",
        )

        assert count == 4
        event = service.session.events()[-1]
        assert event.action == SessionAction.RESUME
        assert "run1.csv" in event.reason
        assert "mismatch" not in event.reason

    def test_merge_flags_channel_mismatch(self) -> None:
        service = AcquisitionService(_config())
        service.store.append_batch([make_reading(1, 1), make_reading(1, 2)])

        service.import_readings([make_reading(2, 1)], continue_writing=True)

        assert "Channel count mismatch" in service.session.events()[-1].reason

    def test_clear(self) -> None:
        service = AcquisitionService(_config())
        service.import_readings([make_reading(1)], continue_writing=False)
        service.session.record_resume("manual")
        service.clear()
        assert len(service.store) == 0
        assert service.session.events() == []


class TestDiagnostics:
    def test_collect(self) -> None:
        service = AcquisitionService(_config())
        service.store.append_batch([make_reading(1, ch) for ch in range(1, 5)])

        metrics = service.collect_diagnostics()

        assert metrics.reading_count == 4
        assert metrics.estimated_bytes > 0
        assert metrics.process_rss_bytes > 0
        assert service.get_status()["memory"]["reading_count"] == 4

    def test_status_shape(self) -> None:
        status = AcquisitionService(_config()).get_status()
        assert status["mode"] == "device"
        assert status["recording"] is False
        assert status["memory"] is None
        assert {"engine", "store", "operation_log", "session_events"} <= set(status)


class TestHttpRoutes:
    @pytest.fixture
    def service(self) -> AcquisitionService:
        service = AcquisitionService(_config())
        service.store.append_batch(
            [make_reading(ts, ch, 20.0 + ts) for ts in (1, 2, 3) for ch in (1, 2)]
        )
        return service

    @pytest.mark.asyncio
    async def test_health(self, service: AcquisitionService) -> None:
        async with test_utils.TestClient(test_utils.TestServer(service.build_health_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
        assert data["service"] == "acquisition"
        assert data["readings"] == 6
        assert data["last_sample_ms"] == 3

    @pytest.mark.asyncio
    async def test_readings_filters(self, service: AcquisitionService) -> None:
        async with test_utils.TestClient(test_utils.TestServer(service.build_health_app())) as client:
            resp = await client.get("/readings", params={"channel": "2", "since": "2"})
            data = await resp.json()
            assert data["count"] == 2
            assert {r["channel"] for r in data["readings"]} == {2}

            resp = await client.get("/readings", params={"limit": "1"})
            data = await resp.json()
            assert data["count"] == 1
            assert data["total"] == 6
            assert data["readings"][0]["timestamp"] == 3

    @pytest.mark.asyncio
    async def test_readings_bad_parameter(self, service: AcquisitionService) -> None:
        async with test_utils.TestClient(test_utils.TestServer(service.build_health_app())) as client:
            resp = await client.get("/readings", params={"channel": "two"})
            assert resp.status == 400
            assert "channel" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_statistics(self, service: AcquisitionService) -> None:
        async with test_utils.TestClient(test_utils.TestServer(service.build_health_app())) as client:
            resp = await client.get("/statistics")
            data = await resp.json()
        channel = data["channels"]["1"]
        assert channel["max_temp"] == 23.0
        assert channel["min_temp"] == 21.0
        assert channel["trend"] == "up"
        assert data["calibrated"] is False

    @pytest.mark.asyncio
    async def test_status_and_traces(self, service: AcquisitionService) -> None:
        async with test_utils.TestClient(test_utils.TestServer(service.build_health_app())) as client:
            status = await (await client.get("/status")).json()
            traces = await (await client.get("/traces")).json()
        assert status["store"]["reading_count"] == 6
        assert traces["count"] == 0
