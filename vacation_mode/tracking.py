"""
Device Tracker - Beobachtet on/off-Wechsel der getrackten Geraete.

Pro Key: Untracked → Subscribe-Versuch → Listening | Polling → Untracked.

- Listening: Push ueber den HA WebSocket (StateChangeListener)
- Polling: Fallback wenn die Subscription scheitert; liest alle
  poll_interval Sekunden den aktuellen Wert und vergleicht mit dem
  zuletzt beobachteten

Der Modus wird einmal beim Start gewaehlt und danach nicht mehr gewechselt.
Jeder beobachtete Wechsel geht an den on_transition Callback (Manager).
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .constants import POLL_INTERVAL_DEFAULT
from .ha_client import DeviceUnavailable, HomeAssistantClient
from .ha_events import StateChangeListener, SubscriptionError
from .log_setup import set_log_key
from .models import ListenerMode, PollMode, TrackedDevice, TrackingKey
from .task_registry import TaskRegistry

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[TrackingKey, bool], Awaitable[None]]


class TrackingFailure(Exception):
    """Weder Push-Subscription noch Polling konnten eingerichtet werden."""


class DeviceTracker:
    """Verwaltet die TrackedDevice-Tabelle."""

    def __init__(
        self,
        ha: HomeAssistantClient,
        listener: StateChangeListener,
        tasks: TaskRegistry,
        on_transition: TransitionCallback,
        poll_interval: int = POLL_INTERVAL_DEFAULT,
        subscribe_timeout: float = 0.0,
    ):
        self.ha = ha
        self.listener = listener
        self.tasks = tasks
        self._on_transition = on_transition
        self.poll_interval = poll_interval
        self.subscribe_timeout = subscribe_timeout
        self._devices: dict[TrackingKey, TrackedDevice] = {}
        self._start_locks: dict[TrackingKey, asyncio.Lock] = {}

    def is_tracked(self, key: TrackingKey) -> bool:
        return key in self._devices

    def get(self, key: TrackingKey) -> Optional[TrackedDevice]:
        return self._devices.get(key)

    @property
    def tracked_keys(self) -> list[TrackingKey]:
        return list(self._devices.keys())

    def display_name(self, key: TrackingKey) -> str:
        device = self._devices.get(key)
        return device.display_name if device else key.device_id

    async def start_tracking(self, key: TrackingKey) -> TrackedDevice:
        """Startet das Tracking fuer einen Key (idempotent).

        Gleichzeitige Aufrufe fuer denselben Key warten auf den ersten und
        bekommen dessen TrackedDevice zurueck.

        Raises:
            TrackingFailure: Subscription und Polling-Setup gescheitert
        """
        lock = self._start_locks.setdefault(key, asyncio.Lock())
        async with lock:
            existing = self._devices.get(key)
            if existing:
                logger.info("%s wird bereits getrackt (%s)", key, existing.mode_name)
                return existing
            return await self._start(key)

    async def _start(self, key: TrackingKey) -> TrackedDevice:
        name = await self._resolve_name(key)

        try:
            handle = await self.listener.subscribe(
                key, self._make_push_callback(key), timeout=self.subscribe_timeout,
            )
        except SubscriptionError as e:
            logger.info("Push fuer %s nicht moeglich (%s), Fallback auf Polling", key, e)
            return await self._start_polling(key, name)

        device = TrackedDevice(key=key, display_name=name, mode=ListenerMode(handle))
        self._devices[key] = device
        try:
            device.last_observed_value = await self.ha.read_value(key)
        except DeviceUnavailable as e:
            logger.debug("Startwert fuer %s unbekannt: %s", key, e)
        logger.info("Tracking gestartet: %s (%s) via Listener", name, key)
        return device

    async def _start_polling(self, key: TrackingKey, name: str) -> TrackedDevice:
        try:
            value = await self.ha.read_value(key)
        except DeviceUnavailable as e:
            logger.error("Tracking fuer %s fehlgeschlagen: %s", key, e)
            raise TrackingFailure(f"{key}: weder Subscription noch Polling moeglich ({e})") from e

        task_name = f"poll:{key}"
        device = TrackedDevice(
            key=key,
            display_name=name,
            mode=PollMode(task_name=task_name, last_value=value),
            last_observed_value=value,
        )
        self._devices[key] = device
        self.tasks.create_task(self._poll_loop(key), name=task_name, replace=True)
        logger.info(
            "Tracking gestartet: %s (%s) via Polling alle %ds",
            name, key, self.poll_interval,
        )
        return device

    def stop_tracking(self, key: TrackingKey) -> bool:
        """Beendet Subscription bzw. Poll-Loop und entfernt den Eintrag."""
        device = self._devices.pop(key, None)
        if device is None:
            logger.info("%s wird nicht getrackt", key)
            return False

        if isinstance(device.mode, ListenerMode):
            self.listener.unsubscribe(device.mode.handle)
        else:
            self.tasks.cancel(device.mode.task_name)

        logger.info("Tracking beendet: %s (%s)", device.display_name, key)
        return True

    def stop_all(self) -> None:
        for key in list(self._devices):
            self.stop_tracking(key)

    def _make_push_callback(self, key: TrackingKey):
        async def on_change(value: bool) -> None:
            await self._observe(key, value)
        return on_change

    async def _observe(self, key: TrackingKey, value: bool) -> None:
        """Gemeinsamer Pfad fuer Push und Poll."""
        device = self._devices.get(key)
        if device is None:
            # Inzwischen untracked, Ergebnis verwerfen
            logger.debug("Wert fuer nicht mehr getrackten Key %s verworfen", key)
            return
        device.last_observed_value = value
        if isinstance(device.mode, PollMode):
            device.mode.last_value = value
        await self._on_transition(key, value)

    async def _poll_loop(self, key: TrackingKey) -> None:
        set_log_key(key)
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once(key)

    async def poll_once(self, key: TrackingKey) -> bool:
        """Ein Poll-Zyklus. Fehler werden geloggt, der Loop laeuft weiter.

        Returns:
            True wenn ein Wechsel erkannt wurde
        """
        device = self._devices.get(key)
        if device is None or not isinstance(device.mode, PollMode):
            return False
        try:
            value = await self.ha.read_value(key)
        except DeviceUnavailable as e:
            logger.warning("Poll fuer %s fehlgeschlagen: %s", key, e)
            return False
        except Exception as e:
            logger.error("Poll-Fehler fuer %s: %s", key, e)
            return False

        if value == device.mode.last_value:
            return False

        logger.info("Poll erkennt Wechsel: %s -> %s", device.display_name, value)
        try:
            await self._observe(key, value)
        except Exception as e:
            logger.error("Verarbeitung des Poll-Wechsels fuer %s fehlgeschlagen: %s", key, e)
        return True

    async def _resolve_name(self, key: TrackingKey) -> str:
        try:
            return await self.ha.get_display_name(key)
        except Exception as e:
            logger.debug("Name fuer %s nicht ermittelbar: %s", key, e)
            return key.device_id
