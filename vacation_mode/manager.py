"""
Vacation Mode Manager - Scheduler-Kontext fuer Tracking, History und Replay.

Besitzt exklusiv die drei Tabellen (TrackedDevice ueber den Tracker,
History ueber den HistoryStore, ScheduleState ueber den ReplayScheduler).
Alle Aenderungen laufen ueber die Methoden hier; niemand sonst haelt
eigene Kopien.

Lebenszyklus:
  manager = VacationModeManager(ha, listener, redis_client)
  await manager.initialize()   # Flags + History laden, Tracking wiederherstellen
  ...
  await manager.shutdown()

Die Command-Methoden (track, untrack, clear_history, generate_test_data,
list_events, ...) sind duenne Einstiegspunkte fuer eine spaetere
Bedienoberflaeche.
"""

import asyncio
import json
import logging
import random
from datetime import datetime, timedelta
from typing import Iterable, Optional, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import local_now, settings
from .constants import (
    HISTORY_RETENTION_DAYS,
    IMPORT_MAX_POINTS,
    KEY_REPLAY_ARMED,
    KEY_TEST_MODE,
    KEY_TRACKED,
    SWEEP_INTERVAL,
)
from .ha_client import HomeAssistantClient
from .ha_events import StateChangeListener
from .history_store import HistoryStore
from .initial_sync import run_initial_sync
from .log_setup import get_recent_logs
from .models import Event, ReplayMode, SyncResult, TrackedDevice, TrackingKey
from .schedule_engine import ReplayScheduler
from .task_registry import TaskRegistry
from .tracking import DeviceTracker, TrackingFailure

logger = logging.getLogger(__name__)

KeyLike = Union[TrackingKey, str]


def _as_key(key: KeyLike) -> TrackingKey:
    return key if isinstance(key, TrackingKey) else TrackingKey.parse(key)


def _decode(raw) -> Optional[str]:
    if isinstance(raw, bytes):
        return raw.decode()
    return raw


class VacationModeManager:
    """Zentrale Steuerung des Vacation Mode."""

    def __init__(
        self,
        ha: HomeAssistantClient,
        listener: StateChangeListener,
        redis_client: Optional[aioredis.Redis] = None,
        clock=local_now,
        poll_interval: Optional[int] = None,
        subscribe_timeout: Optional[float] = None,
        restart_sync_delay: Optional[float] = None,
    ):
        self.ha = ha
        self.listener = listener
        self.redis = redis_client
        self._clock = clock
        self.restart_sync_delay = (
            settings.restart_sync_delay_seconds if restart_sync_delay is None else restart_sync_delay
        )

        self.tasks = TaskRegistry()
        self.history = HistoryStore(redis_client)
        self.tracker = DeviceTracker(
            ha, listener, self.tasks, self.record_event,
            poll_interval=settings.poll_interval_seconds if poll_interval is None else poll_interval,
            subscribe_timeout=(
                settings.subscribe_timeout_seconds if subscribe_timeout is None else subscribe_timeout
            ),
        )
        self.scheduler = ReplayScheduler(ha, self.history, self.tracker.is_tracked, clock)
        self.last_sync: dict[TrackingKey, SyncResult] = {}

    # ----- Zustand -----

    @property
    def replay_active(self) -> bool:
        return self.scheduler.active

    @property
    def test_mode(self) -> bool:
        return self.scheduler.mode is ReplayMode.TEST

    @property
    def mode(self) -> ReplayMode:
        return self.scheduler.mode

    # ----- Start / Stop -----

    async def initialize(self, initial_devices: Iterable[str] = ()) -> None:
        """Laedt den gespeicherten Zustand und stellt Tracking/Replay wieder her."""
        logger.info("Vacation Mode startet...")
        armed = await self._get_flag(KEY_REPLAY_ARMED)
        self.scheduler.mode = ReplayMode.from_flag(await self._get_flag(KEY_TEST_MODE))

        await self.history.load(int(self._clock().timestamp() * 1000))

        saved = await self._load_tracked()
        first_start = saved is None
        if first_start:
            saved = []
            for raw in initial_devices:
                try:
                    saved.append(TrackingKey.parse(raw))
                except ValueError as e:
                    logger.warning("Ungueltiger Eintrag in tracked_devices: %s", e)
            if saved:
                logger.info("Erster Start: %d Geraete aus settings.yaml", len(saved))

        restored = 0
        for key in saved:
            try:
                await self.tracker.start_tracking(key)
                restored += 1
            except TrackingFailure as e:
                logger.error("✗ Tracking fuer %s nicht wiederhergestellt: %s", key, e)
        if first_start and restored:
            await self._save_tracked()

        self.tasks.create_task(self._sweep_loop(), name="history_sweep")

        logger.info(
            "Vacation Mode initialisiert: %d/%d Geraete getrackt, %d Histories, Modus %s",
            restored, len(saved), len(self.history.keys()), self.mode.value,
        )

        if armed:
            self.scheduler.active = True
            logger.info("Replay war aktiv, Initial-Sync und Neuplanung nach Neustart")
            self.tasks.create_task(self._restore_replay(), name="restart_sync")

    async def _restore_replay(self) -> None:
        if self.restart_sync_delay > 0:
            await asyncio.sleep(self.restart_sync_delay)
        if not self.replay_active:
            return
        await self._sync_and_arm()

    async def shutdown(self) -> None:
        """Stoppt Timer, Subscriptions und Background-Tasks (Zustand bleibt gespeichert)."""
        self.scheduler.cancel_all()
        self.tracker.stop_all()
        await self.tasks.shutdown()
        logger.info("Vacation Mode gestoppt")

    # ----- Replay an/aus -----

    async def enable_replay(self) -> dict:
        """Aktiviert den Replay: Initial-Sync + Timer fuer alle getrackten Geraete."""
        if self.replay_active:
            logger.info("Replay bereits aktiv")
            return {"success": True, "message": "Replay bereits aktiv."}

        self.scheduler.active = True
        await self._set_flag(KEY_REPLAY_ARMED, True)

        logger.info("=" * 40)
        logger.info(
            "Replay AKTIVIERT (%s)",
            "TEST: stuendlich" if self.test_mode else "NORMAL: woechentlich",
        )
        for key in self.tracker.tracked_keys:
            logger.info(
                "  %s: %d Events in History", self.tracker.display_name(key), self.history.count(key),
            )
        logger.info("=" * 40)

        armed = await self._sync_and_arm()
        return {"success": True, "message": f"Replay aktiviert, {armed} Timer geplant.", "armed": armed}

    async def disable_replay(self) -> dict:
        """Deaktiviert den Replay und verwirft alle Timer."""
        if not self.replay_active:
            logger.info("Replay bereits deaktiviert")
            return {"success": True, "message": "Replay bereits deaktiviert."}

        self.scheduler.active = False
        cancelled = self.scheduler.cancel_all()
        await self._set_flag(KEY_REPLAY_ARMED, False)
        self.tasks.cancel("restart_sync")
        logger.info("Replay DEAKTIVIERT (%d Timer verworfen)", cancelled)
        return {"success": True, "message": "Replay deaktiviert.", "cancelled": cancelled}

    async def set_test_mode(self, enabled: bool) -> dict:
        """Wechselt zwischen Wochen- und Stundenzyklus; plant bei aktivem Replay neu."""
        mode = ReplayMode.from_flag(enabled)
        if mode is self.mode:
            return {"success": True, "message": f"Modus bereits {mode.value}."}

        self.scheduler.mode = mode
        await self._set_flag(KEY_TEST_MODE, enabled)
        logger.info("Testmodus %s", "AKTIVIERT" if enabled else "deaktiviert")

        armed = 0
        if self.replay_active:
            logger.info("Neuplanung mit neuem Modus...")
            armed = self.scheduler.arm_all(self.tracker.tracked_keys)
        return {"success": True, "message": f"Modus {mode.value}.", "armed": armed}

    async def _sync_and_arm(self) -> int:
        keys = self.tracker.tracked_keys
        self.last_sync = await run_initial_sync(
            keys, self.history, self.ha, self.mode, self._clock(),
        )
        if not self.replay_active:
            # Waehrend des Syncs deaktiviert
            return 0
        armed = self.scheduler.arm_all(keys)
        logger.info("%d von %d Geraeten geplant", armed, len(keys))
        return armed

    # ----- Tracking -----

    async def track(self, key: KeyLike) -> TrackedDevice:
        """Startet das Tracking. Raises TrackingFailure an den Aufrufer."""
        key = _as_key(key)
        device = await self.tracker.start_tracking(key)
        await self._save_tracked()
        if self.replay_active and self.history.has_history(key):
            self.scheduler.arm(key)
        return device

    async def untrack(self, key: KeyLike, clear_history: bool = False) -> bool:
        """Beendet Tracking und Timer eines Keys (optional inkl. History)."""
        key = _as_key(key)
        self.scheduler.cancel(key)
        stopped = self.tracker.stop_tracking(key)
        if stopped:
            await self._save_tracked()
        if clear_history:
            await self.history.clear(key)
        return stopped

    async def record_event(self, key: TrackingKey, value: bool, when: Optional[datetime] = None) -> bool:
        """Zeichnet einen beobachteten Wechsel auf (nur wenn der Wert sich aendert)."""
        if self.history.last_value(key) == value:
            logger.debug("%s -> %s ist kein Wechsel, ignoriert", key, value)
            return False

        when = when or self._clock()
        event = Event.from_datetime(when, value)
        recorded = await self.history.append_event(key, event, now_ms=event.timestamp_ms)
        if recorded:
            if self.test_mode:
                detail = f"Minute {event.minute_of_hour}"
            else:
                detail = f"Tag {event.day_of_week}"
            logger.info(
                "Aufgezeichnet: %s -> %s um %s (%s)",
                key, "an" if value else "aus", when.strftime("%H:%M:%S"), detail,
            )
        return recorded

    # ----- History-Commands -----

    async def clear_history(self, key: Optional[KeyLike] = None) -> int:
        """Loescht die History eines Keys oder aller Keys."""
        if key is None:
            keys = self.history.keys()
            cleared = await self.history.clear_all()
        else:
            keys = [_as_key(key)]
            cleared = int(await self.history.clear(keys[0]))
        for k in keys:
            self.scheduler.cancel(k)
        logger.info("History geloescht (%d Keys)", cleared)
        return cleared

    async def import_history(self, key: KeyLike, points: list[dict]) -> int:
        """Einmaliger Import externer {timestamp, value}-Punkte (max. 50, neueste zuerst).

        Returns:
            Anzahl neu hinzugekommener Events
        """
        key = _as_key(key)
        tz = self._clock().tzinfo
        parsed = []
        for point in points:
            ts = point.get("timestamp_ms", point.get("timestamp"))
            value = point.get("value")
            if not isinstance(value, bool) or not isinstance(ts, (int, float)):
                logger.debug("Import-Punkt uebersprungen: %s", point)
                continue
            parsed.append((int(ts), value))

        parsed.sort()
        if len(parsed) > IMPORT_MAX_POINTS:
            logger.warning(
                "Import fuer %s: %d Punkte, nur die neuesten %d werden uebernommen",
                key, len(parsed), IMPORT_MAX_POINTS,
            )
            parsed = parsed[-IMPORT_MAX_POINTS:]

        events = [
            Event.from_datetime(datetime.fromtimestamp(ts / 1000, tz=tz), value)
            for ts, value in parsed
        ]
        now_ms = int(self._clock().timestamp() * 1000)
        added = await self.history.merge_events(key, events, now_ms=now_ms)
        logger.info("Import fuer %s: %d Punkte, %d neue Events", key, len(parsed), added)
        self._rearm_if_active(key)
        return added

    async def import_from_ha(self, key: KeyLike) -> int:
        """Importiert die HA-History der letzten 8 Tage fuer einen Key."""
        key = _as_key(key)
        since = self._clock() - timedelta(days=HISTORY_RETENTION_DAYS)
        points = await self.ha.get_history_points(key, since)
        return await self.import_history(key, points)

    async def generate_test_data(self, key: KeyLike) -> int:
        """Erzeugt synthetische Events fuer einen Key.

        Normalbetrieb: pro Tag der letzten Woche abends an (18-20 Uhr) und
        nachts aus (22-24 Uhr). Testbetrieb: in der letzten Stunde alle
        ~10 Minuten ein Wechsel.
        """
        key = _as_key(key)
        now = self._clock()
        events = []
        if self.test_mode:
            start = now - timedelta(hours=1)
            value = True
            for slot in range(6):
                when = start + timedelta(minutes=slot * 10 + random.randint(0, 8))
                events.append(Event.from_datetime(when, value))
                value = not value
        else:
            for days_ago in range(7, 0, -1):
                day = (now - timedelta(days=days_ago)).replace(second=0, microsecond=0)
                on_at = day.replace(hour=18, minute=0) + timedelta(minutes=random.randint(0, 119))
                off_at = day.replace(hour=22, minute=0) + timedelta(minutes=random.randint(0, 119))
                events.append(Event.from_datetime(on_at, True))
                events.append(Event.from_datetime(off_at, False))

        added = await self.history.merge_events(key, events, now_ms=int(now.timestamp() * 1000))
        logger.info("Testdaten fuer %s: %d Events erzeugt, %d uebernommen", key, len(events), added)
        self._rearm_if_active(key)
        return added

    def list_events(self) -> list[dict]:
        """Alle Events aller Keys, neueste zuerst, mit Geraeteinfo."""
        result = []
        for key in self.history.keys():
            name = self.tracker.display_name(key)
            for event in self.history.get(key):
                entry = event.to_dict()
                entry.update({"key": str(key), "device_id": key.device_id, "device_name": name})
                result.append(entry)
        result.sort(key=lambda e: e["timestamp"], reverse=True)
        return result

    async def sweep_history(self) -> int:
        trimmed = await self.history.sweep(int(self._clock().timestamp() * 1000))
        logger.info("Taeglicher Cleanup: %d Keys getrimmt", trimmed)
        return trimmed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            try:
                await self.sweep_history()
            except Exception as e:
                logger.error("History-Sweep fehlgeschlagen: %s", e)

    def _rearm_if_active(self, key: TrackingKey) -> None:
        if self.replay_active and self.tracker.is_tracked(key):
            self.scheduler.arm(key)

    # ----- Diagnose -----

    def status(self) -> dict:
        devices = []
        for key in self.tracker.tracked_keys:
            entry = self.tracker.get(key).to_dict()
            entry["events"] = self.history.count(key)
            scheduled = self.scheduler.scheduled(key)
            entry["next_replay"] = scheduled.to_dict() if scheduled else None
            devices.append(entry)
        return {
            "replay_active": self.replay_active,
            "test_mode": self.test_mode,
            "devices": devices,
            "timers": self.scheduler.timer_count,
            "push_connected": self.listener.is_connected,
            "tasks": self.tasks.status(),
            "last_sync": {str(k): r.outcome.value for k, r in self.last_sync.items()},
        }

    @staticmethod
    def recent_logs(level: str = "") -> list[dict]:
        return get_recent_logs(level)

    # ----- Persistenz (Flags, Tracked-Liste) -----

    async def _get_flag(self, name: str) -> bool:
        if not self.redis:
            return False
        try:
            return _decode(await self.redis.get(name)) == "1"
        except RedisError as e:
            logger.error("Flag %s nicht lesbar: %s", name, e)
            return False

    async def _set_flag(self, name: str, value: bool) -> None:
        if not self.redis:
            return
        try:
            await self.redis.set(name, "1" if value else "0")
        except RedisError as e:
            logger.error("Flag %s nicht gespeichert: %s", name, e)

    async def _load_tracked(self) -> Optional[list[TrackingKey]]:
        """Gespeicherte Tracked-Liste, None wenn noch nie gespeichert."""
        if not self.redis:
            return None
        try:
            raw = _decode(await self.redis.get(KEY_TRACKED))
        except RedisError as e:
            logger.error("Tracked-Liste nicht lesbar: %s", e)
            return []
        if raw is None:
            return None
        try:
            items = json.loads(raw)
        except ValueError as e:
            logger.error("Tracked-Liste kaputt: %s", e)
            return []
        keys = []
        for item in items if isinstance(items, list) else []:
            try:
                keys.append(TrackingKey.parse(str(item)))
            except ValueError as e:
                logger.warning("Tracked-Liste: %s", e)
        return keys

    async def _save_tracked(self) -> None:
        if not self.redis:
            return
        try:
            await self.redis.set(KEY_TRACKED, json.dumps([str(k) for k in self.tracker.tracked_keys]))
        except RedisError as e:
            logger.error("Tracked-Liste nicht gespeichert: %s", e)
