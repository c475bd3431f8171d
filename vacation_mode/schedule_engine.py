"""
Schedule Engine - Berechnet das naechste Replay-Event und verwaltet die Timer.

Normalbetrieb: Wochenring (7 x 1440 Minuten). Fuer jedes Event wird der
Vorwaertsabstand von "jetzt" (Wochentag, Minute des Tages) zum Event
(Wochentag, Minute des Tages) berechnet. Das Event mit dem kleinsten
positiven Abstand gewinnt.

Testbetrieb: gleiche Logik auf dem Stundenring (Minute der Stunde).

Pro Key laeuft hoechstens ein Timer. arm() bricht den alten Timer immer
zuerst ab. Beim Ablauf wird der Live-Wert gelesen, nur bei Abweichung
geschrieben und danach mit der *aktuellen* History neu geplant.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .config import local_now
from .constants import DAYS_PER_WEEK, MINUTES_PER_DAY, MINUTES_PER_HOUR
from .ha_client import DeviceUnavailable, HomeAssistantClient
from .history_store import HistoryStore
from .log_setup import set_log_key
from .models import Event, NextEvent, ReplayMode, ScheduledReplay, TrackingKey

logger = logging.getLogger(__name__)

REPLAY_WRITTEN = "written"
REPLAY_SKIPPED = "skipped"
REPLAY_ERROR = "error"
REPLAY_UNTRACKED = "untracked"


def _delay_normal(event: Event, current_day: int, current_minutes: int, period: int) -> int:
    if event.day_of_week == current_day:
        if event.time_minutes > current_minutes:
            return event.time_minutes - current_minutes
        return period - current_minutes + event.time_minutes
    days_until = (event.day_of_week - current_day) % DAYS_PER_WEEK
    return days_until * MINUTES_PER_DAY - current_minutes + event.time_minutes


def _delay_test(event: Event, current_minute: int, period: int) -> int:
    if event.minute_of_hour > current_minute:
        return event.minute_of_hour - current_minute
    return period - current_minute + event.minute_of_hour


def calculate_next_event(
    history: Iterable[Event], mode: ReplayMode, now: datetime,
) -> Optional[NextEvent]:
    """Naechstes Event mit kleinstem positiven Abstand, oder None.

    Bei gleichem Abstand gewinnt das erste Event in History-Reihenfolge.
    """
    period = mode.period_minutes
    current_day = now.weekday()
    current_minutes = now.hour * MINUTES_PER_HOUR + now.minute

    best: Optional[Event] = None
    best_delay = None
    for event in history:
        if not event.is_valid:
            continue
        if mode is ReplayMode.TEST:
            delay = _delay_test(event, now.minute, period)
        else:
            delay = _delay_normal(event, current_day, current_minutes, period)
        if delay <= 0:
            continue
        if best_delay is None or delay < best_delay:
            best, best_delay = event, delay

    if best is None:
        return None
    return NextEvent(event=best, delay_minutes=best_delay)


class ReplayScheduler:
    """Verwaltet die ScheduleState-Tabelle (ein Timer pro Key)."""

    def __init__(
        self,
        ha: HomeAssistantClient,
        history: HistoryStore,
        is_tracked: Callable[[TrackingKey], bool],
        clock: Callable[[], datetime] = local_now,
    ):
        self.ha = ha
        self.history = history
        self._is_tracked = is_tracked
        self._clock = clock
        self.mode = ReplayMode.NORMAL
        self.active = False
        self._timers: dict[TrackingKey, ScheduledReplay] = {}
        self._in_flight: dict[TrackingKey, asyncio.Future] = {}

    def scheduled(self, key: TrackingKey) -> Optional[ScheduledReplay]:
        return self._timers.get(key)

    @property
    def timer_count(self) -> int:
        return len(self._timers)

    def arm(self, key: TrackingKey) -> Optional[NextEvent]:
        """Bricht den bestehenden Timer ab und plant das naechste Event."""
        self.cancel(key)
        if not self.active:
            logger.debug("Replay nicht aktiv, %s nicht geplant", key)
            return None

        now = self._clock()
        next_event = calculate_next_event(self.history.get(key), self.mode, now)
        if next_event is None:
            logger.info("Kein passendes Event fuer %s gefunden", key)
            return None

        entry = ScheduledReplay(
            event=next_event.event,
            delay_minutes=next_event.delay_minutes,
            due_at=now + timedelta(minutes=next_event.delay_minutes),
        )
        self._timers[key] = entry
        entry.task = asyncio.create_task(
            self._run_timer(key, next_event.delay_minutes), name=f"replay:{key}",
        )
        logger.info(
            "Geplant: %s -> %s in %d Min (%s, %s)",
            key, "an" if next_event.event.value else "aus",
            next_event.delay_minutes, entry.due_at.strftime("%a %H:%M"),
            self.mode.value,
        )
        return next_event

    def arm_all(self, keys: Iterable[TrackingKey]) -> int:
        """Plant alle Keys mit History. Returns: Anzahl gestarteter Timer."""
        armed = 0
        for key in keys:
            if not self.history.has_history(key):
                logger.debug("%s hat keine History, nicht geplant", key)
                continue
            if self.arm(key):
                armed += 1
        return armed

    def cancel(self, key: TrackingKey) -> bool:
        entry = self._timers.pop(key, None)
        if entry is None:
            return False
        if entry.task and not entry.task.done():
            entry.task.cancel()
        return True

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._timers):
            if self.cancel(key):
                count += 1
        self._timers.clear()
        return count

    async def _run_timer(self, key: TrackingKey, delay_minutes: int) -> None:
        set_log_key(key)
        await asyncio.sleep(delay_minutes * 60)

        entry = self._timers.get(key)
        if entry is None or entry.task is not asyncio.current_task():
            return
        # Vor dem Schreiben austragen: der Rearm darf diesen Task nicht abbrechen
        del self._timers[key]
        logger.info("Timer abgelaufen fuer %s", key)
        await self.fire(key, entry.event)

    async def fire(self, key: TrackingKey, event: Event) -> str:
        """Spielt ein Event ab und plant danach neu.

        Laufende Geraete-I/O wird bei Cancel nicht abgebrochen (shield),
        ihr Ergebnis wird nur noch geloggt. Pro Key laeuft hoechstens ein
        Replay, ein spaeterer Timer wartet bis der vorherige fertig ist.
        """
        previous = self._in_flight.get(key)
        while previous is not None and not previous.done():
            logger.info("Replay fuer %s laeuft noch, warte", key)
            await asyncio.wait([previous])
            previous = self._in_flight.get(key)

        replay = asyncio.ensure_future(self.replay(key, event))
        self._in_flight[key] = replay
        replay.add_done_callback(lambda t: self._on_replay_done(key, t))
        try:
            result = await asyncio.shield(replay)
        except asyncio.CancelledError:
            logger.info("Replay fuer %s abgebrochen, laufender Schreibvorgang wird nicht neu geplant", key)
            raise

        if not self.active:
            logger.info("Replay inzwischen deaktiviert, %s nicht neu geplant", key)
        elif not self._is_tracked(key):
            logger.info("%s nicht mehr getrackt, nicht neu geplant", key)
        else:
            self.arm(key)
        return result

    def _on_replay_done(self, key: TrackingKey, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def replay(self, key: TrackingKey, event: Event) -> str:
        """Liest den Live-Wert und schreibt nur bei Abweichung."""
        if not self._is_tracked(key):
            logger.info("%s nicht mehr getrackt, Replay uebersprungen", key)
            return REPLAY_UNTRACKED

        target = "an" if event.value else "aus"
        try:
            live = await self.ha.read_value(key)
            if live == event.value:
                logger.info("%s ist bereits %s, kein Schreibvorgang", key, target)
                return REPLAY_SKIPPED
            await self.ha.write_value(key, event.value)
        except DeviceUnavailable as e:
            logger.warning("Replay fuer %s fehlgeschlagen: %s", key, e)
            return REPLAY_ERROR
        except Exception as e:
            logger.error("Unerwarteter Replay-Fehler fuer %s: %s", key, e)
            return REPLAY_ERROR

        logger.info("✓ Replay ausgefuehrt: %s -> %s", key, target)
        return REPLAY_WRITTEN

    def status(self) -> dict:
        return {
            "active": self.active,
            "mode": self.mode.value,
            "timers": {str(k): v.to_dict() for k, v in self._timers.items()},
        }
