"""Shared pytest fixtures."""

import asyncio
import random

import pytest

from common.config import (
    PollingSchedule,
    RegisterPlan,
    SerialSettings,
    StoreSettings,
    TestModeSettings,
)
from services.acquisition.readings import Reading
from services.acquisition.store import BoundedTimeSeriesStore


class ScriptedTransport:
    """Transport that answers each read from a queue of canned responses.

    Each queued item is bytes (returned), an Exception (raised), or None
    (never answers, so the caller's timeout fires).
    """

    def __init__(self, responses=(), read_delay: float = 0.0):
        self.responses = list(responses)
        self.read_delay = read_delay
        self.writes: list[bytes] = []
        self.reads = 0

    async def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))

    async def read(self) -> bytes:
        self.reads += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        item = self.responses.pop(0) if self.responses else None
        if item is None:
            await asyncio.get_running_loop().create_future()
        if isinstance(item, Exception):
            raise item
        return item


def make_reading(timestamp: int, channel: int = 1, temperature: float = 25.0) -> Reading:
    return Reading(
        timestamp=timestamp,
        channel=channel,
        temperature=temperature,
        raw_value=round(temperature * 10) & 0xFFFF,
    )


@pytest.fixture
def small_store() -> BoundedTimeSeriesStore:
    """Store with tiny marks: evict above 8, keep 5, cap 10."""
    return BoundedTimeSeriesStore(StoreSettings(max_readings=10, high_water=8, low_water=5))


@pytest.fixture
def store() -> BoundedTimeSeriesStore:
    return BoundedTimeSeriesStore()


@pytest.fixture
def serial_settings() -> SerialSettings:
    return SerialSettings(slave_id=1, timeout_s=0.2)


@pytest.fixture
def schedule() -> PollingSchedule:
    """Four channels at registers 0-3, all selected."""
    return PollingSchedule(
        interval_s=1.0,
        selected_channels={1, 2, 3, 4},
        register_plan=RegisterPlan(start_register=0, register_count=4),
    )


@pytest.fixture
def test_settings() -> TestModeSettings:
    return TestModeSettings(enabled=True, min_temp=20.0, max_temp=80.0, noise_level=0.5)


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)
