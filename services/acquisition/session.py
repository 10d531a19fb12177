"""
Recording Session Log

Tracks start/pause/resume/stop transitions of a recording session.
"""

from dataclasses import dataclass
from enum import Enum

from common.timestamp import now_ms, ms_to_iso


class SessionAction(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


@dataclass(frozen=True)
class SessionEvent:
    timestamp: int
    action: SessionAction
    reason: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "time": ms_to_iso(self.timestamp),
            "action": self.action.value,
            "reason": self.reason,
        }


class SessionLog:
    """
    Ordered session events.

    Rules:
    - starting when nothing is active records START, or RESUME after a pause
    - pausing is only recorded while a session is active
    - stop ends the session from any active or paused state
    """

    def __init__(self):
        self._events: list[SessionEvent] = []

    @property
    def last_action(self) -> SessionAction | None:
        return self._events[-1].action if self._events else None

    @property
    def is_active(self) -> bool:
        return self.last_action in (SessionAction.START, SessionAction.RESUME)

    def record_start(self, test_mode: bool, timestamp: int | None = None) -> SessionEvent | None:
        """Record start (or resume); None when a session is already active."""
        if self.is_active:
            return None
        if self.last_action == SessionAction.PAUSE:
            action = SessionAction.RESUME
        else:
            action = SessionAction.START
        reason = "Test mode started" if test_mode else "Recording started"
        return self._append(action, reason, timestamp)

    def record_pause(self, test_mode: bool, timestamp: int | None = None) -> SessionEvent | None:
        """Record pause; None unless a session is active."""
        if not self.is_active:
            return None
        reason = "Test mode paused" if test_mode else "Recording paused"
        return self._append(SessionAction.PAUSE, reason, timestamp)

    def record_stop(self, reason: str = "Recording stopped", timestamp: int | None = None) -> SessionEvent | None:
        if self.last_action in (None, SessionAction.STOP):
            return None
        return self._append(SessionAction.STOP, reason, timestamp)

    def record_resume(self, reason: str, timestamp: int | None = None) -> SessionEvent:
        """Record an explicit resume (e.g. continuing from imported data)."""
        return self._append(SessionAction.RESUME, reason, timestamp)

    def events(self) -> list[SessionEvent]:
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def _append(self, action: SessionAction, reason: str, timestamp: int | None) -> SessionEvent:
        event = SessionEvent(
            timestamp=timestamp if timestamp is not None else now_ms(),
            action=action,
            reason=reason,
        )
        self._events.append(event)
        return event

    def __len__(self) -> int:
        return len(self._events)
