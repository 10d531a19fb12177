"""
Channel Statistics

Summaries computed over a store snapshot for status endpoints.
"""

from dataclasses import dataclass, asdict
from typing import Iterable, Sequence

from .readings import Reading

# Change between the last two samples below this is "stable"
TREND_THRESHOLD = 0.1


@dataclass
class ChannelStatistics:
    """Summary of one channel's readings"""
    channel: int
    max_temp: float = 0.0
    min_temp: float = 0.0
    avg_temp: float = 0.0
    current_temp: float | None = None
    reading_count: int = 0
    trend: str = "stable"           # up, down, stable

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("max_temp", "min_temp", "avg_temp", "current_temp"):
            if data[key] is not None:
                data[key] = round(data[key], 2)
        return data


def _trend(current: float, previous: float) -> str:
    if current > previous + TREND_THRESHOLD:
        return "up"
    if current < previous - TREND_THRESHOLD:
        return "down"
    return "stable"


def channel_statistics(
    readings: Iterable[Reading],
    channel: int,
    calibrated: bool = False,
) -> ChannelStatistics:
    """
    Statistics for one channel.

    Args:
        readings: Readings in timestamp order (any channels)
        channel: Channel to summarize
        calibrated: Use calibrated temperatures where present

    Returns:
        ChannelStatistics; zeros and current_temp=None when the channel is empty
    """
    values = [
        r.effective_temperature if calibrated else r.temperature
        for r in readings
        if r.channel == channel
    ]
    if not values:
        return ChannelStatistics(channel=channel)

    current = values[-1]
    previous = values[-2] if len(values) > 1 else current
    return ChannelStatistics(
        channel=channel,
        max_temp=max(values),
        min_temp=min(values),
        avg_temp=sum(values) / len(values),
        current_temp=current,
        reading_count=len(values),
        trend=_trend(current, previous),
    )


def all_channel_statistics(
    readings: Sequence[Reading],
    calibrated: bool = False,
) -> dict[int, ChannelStatistics]:
    """Statistics for every channel present, keyed by channel."""
    channels = sorted({r.channel for r in readings})
    return {ch: channel_statistics(readings, ch, calibrated) for ch in channels}


def moving_average(values: Sequence[float], window: int = 5) -> float:
    """Mean of the last `window` values (0.0 for no values)."""
    if not values:
        return 0.0
    if window <= 0:
        raise ValueError(f"window must be positive, got {window}")
    tail = list(values)[-window:]
    return sum(tail) / len(tail)
