"""
Datenmodelle fuer den Vacation Mode.

- TrackingKey: Identitaet eines beobachteten Kanals (Geraet + Capability)
- Event: ein aufgezeichneter Zustandswechsel (unveraenderlich)
- ReplayMode: Wochenzyklus (normal) oder Stundenzyklus (Test)
- TrackedDevice + ListenerMode/PollMode: Tracking-Zustand pro Kanal
- NextEvent / ScheduledReplay: Ergebnis der Zeitplanberechnung bzw. laufender Timer
- SyncOutcome / SyncResult: Ergebnis des Initial-Syncs pro Kanal
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from .constants import (
    CAPABILITY_ONOFF,
    DAYS_PER_WEEK,
    MINUTES_PER_HOUR,
    PERIOD_NORMAL_MINUTES,
    PERIOD_TEST_MINUTES,
)


@dataclass(frozen=True)
class TrackingKey:
    """Ein beobachteter Kanal: (device_id, capability).

    Ein Geraet mit mehreren Ausgaengen liefert mehrere Keys.
    """
    device_id: str
    capability: str = CAPABILITY_ONOFF

    def __str__(self) -> str:
        return f"{self.device_id}:{self.capability}"

    @classmethod
    def parse(cls, raw: str) -> "TrackingKey":
        """'light.kueche' oder 'light.kueche:onoff' → TrackingKey."""
        raw = (raw or "").strip()
        if not raw:
            raise ValueError("Leerer Tracking-Key")
        if ":" in raw:
            device_id, capability = raw.rsplit(":", 1)
            if not device_id or not capability:
                raise ValueError(f"Ungueltiger Tracking-Key: {raw!r}")
            return cls(device_id, capability)
        return cls(raw)


@dataclass(frozen=True)
class Event:
    """Ein aufgezeichneter Zustandswechsel.

    Wochentag/Uhrzeit stammen aus der lokalen Wanduhr (weekday(): Montag = 0).
    """
    timestamp_ms: int
    value: bool
    day_of_week: int
    hour_of_day: int
    minute_of_hour: int

    @property
    def time_minutes(self) -> int:
        return self.hour_of_day * MINUTES_PER_HOUR + self.minute_of_hour

    @property
    def is_valid(self) -> bool:
        return (
            0 <= self.day_of_week < DAYS_PER_WEEK
            and 0 <= self.hour_of_day < 24
            and 0 <= self.minute_of_hour < MINUTES_PER_HOUR
        )

    @classmethod
    def from_datetime(cls, when: datetime, value: bool) -> "Event":
        return cls(
            timestamp_ms=int(when.timestamp() * 1000),
            value=bool(value),
            day_of_week=when.weekday(),
            hour_of_day=when.hour,
            minute_of_hour=when.minute,
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp_ms,
            "value": self.value,
            "day_of_week": self.day_of_week,
            "hour_of_day": self.hour_of_day,
            "minute_of_hour": self.minute_of_hour,
            "time_minutes": self.time_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        value = data["value"]
        if not isinstance(value, bool):
            raise ValueError(f"Event-Wert ist kein bool: {value!r}")
        return cls(
            timestamp_ms=int(data["timestamp"]),
            value=value,
            day_of_week=int(data["day_of_week"]),
            hour_of_day=int(data["hour_of_day"]),
            minute_of_hour=int(data["minute_of_hour"]),
        )


class ReplayMode(Enum):
    NORMAL = "normal"
    TEST = "test"

    @property
    def period_minutes(self) -> int:
        if self is ReplayMode.TEST:
            return PERIOD_TEST_MINUTES
        return PERIOD_NORMAL_MINUTES

    @property
    def period_ms(self) -> int:
        return self.period_minutes * 60 * 1000

    @classmethod
    def from_flag(cls, test_mode: bool) -> "ReplayMode":
        return cls.TEST if test_mode else cls.NORMAL


@dataclass
class ListenerMode:
    """Push-Tracking ueber den HA WebSocket."""
    handle: str


@dataclass
class PollMode:
    """Fallback: periodisches Auslesen des aktuellen Werts."""
    task_name: str
    last_value: Optional[bool] = None


TrackingMode = Union[ListenerMode, PollMode]


@dataclass
class TrackedDevice:
    key: TrackingKey
    display_name: str
    mode: TrackingMode
    last_observed_value: Optional[bool] = None

    @property
    def mode_name(self) -> str:
        return "listener" if isinstance(self.mode, ListenerMode) else "poll"

    def to_dict(self) -> dict:
        return {
            "key": str(self.key),
            "device_id": self.key.device_id,
            "capability": self.key.capability,
            "name": self.display_name,
            "mode": self.mode_name,
            "last_value": self.last_observed_value,
        }


@dataclass(frozen=True)
class NextEvent:
    """Naechstes abzuspielendes Event und Verzoegerung in Minuten."""
    event: Event
    delay_minutes: int


@dataclass
class ScheduledReplay:
    """Ein laufender Replay-Timer (max. einer pro Key)."""
    event: Event
    delay_minutes: int
    due_at: datetime
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        return {
            "value": self.event.value,
            "delay_minutes": self.delay_minutes,
            "due_at": self.due_at.isoformat(),
        }


class SyncOutcome(Enum):
    SYNCED = "synced"
    ALREADY_CORRECT = "already_correct"
    NO_HISTORY = "no_history"
    NO_HISTORICAL_STATE = "no_historical_state"
    ERROR = "error"


@dataclass
class SyncResult:
    outcome: SyncOutcome
    target_value: Optional[bool] = None
    live_value: Optional[bool] = None
    error: str = ""
