"""
State-Change Listener - Push-Benachrichtigungen ueber den HA WebSocket.

Eine einzige WebSocket-Verbindung abonniert `state_changed` und verteilt
on/off-Wechsel an die pro Tracking-Key registrierten Callbacks.
Bei Verbindungsabbruch wird automatisch neu verbunden; bestehende
Subscriptions bleiben dabei erhalten.
"""

import asyncio
import json
import logging
import uuid
from typing import Awaitable, Callable, Optional

import aiohttp

from .config import settings
from .constants import CAPABILITY_ONOFF, WS_RECONNECT_DELAY
from .ha_client import parse_onoff
from .log_setup import set_log_key
from .models import TrackingKey

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[bool], Awaitable[None]]


class SubscriptionError(Exception):
    """Push-Subscription nicht moeglich (WebSocket down, Capability unbekannt)."""


class StateChangeListener:
    """Hoert auf HA state_changed Events und verteilt sie pro Entity."""

    def __init__(self, ha_url: str = "", ha_token: str = ""):
        base = (ha_url or settings.ha_url).rstrip("/")
        self.ws_url = base.replace("http://", "ws://").replace("https://", "wss://") + "/api/websocket"
        self.ha_token = ha_token or settings.ha_token
        # entity_id -> {handle: (key, callback)}
        self._subscribers: dict[str, dict[str, tuple[TrackingKey, ChangeCallback]]] = {}
        self._handles: dict[str, str] = {}  # handle -> entity_id
        self._connected = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def start(self) -> None:
        """Startet den WebSocket-Listener im Hintergrund."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen(), name="ha_state_listener")
        logger.info("State-Change Listener gestartet (%s)", self.ws_url)

    async def stop(self) -> None:
        """Stoppt den Listener."""
        self._running = False
        self._connected.clear()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("State-Change Listener gestoppt")

    async def subscribe(
        self, key: TrackingKey, on_change: ChangeCallback, timeout: float = 0.0,
    ) -> str:
        """Registriert einen Callback fuer on/off-Wechsel von `key`.

        Wartet bis zu `timeout` Sekunden auf eine bestehende Verbindung.

        Returns:
            Handle fuer unsubscribe()

        Raises:
            SubscriptionError: Capability nicht abonnierbar oder WebSocket nicht verbunden
        """
        if key.capability != CAPABILITY_ONOFF:
            raise SubscriptionError(f"Capability '{key.capability}' nicht abonnierbar")
        if not self._running:
            raise SubscriptionError("Listener nicht gestartet")
        if not self._connected.is_set():
            try:
                await asyncio.wait_for(self._connected.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                raise SubscriptionError(
                    f"WebSocket nicht verbunden (nach {timeout:.0f}s)"
                ) from None

        handle = uuid.uuid4().hex[:12]
        self._subscribers.setdefault(key.device_id, {})[handle] = (key, on_change)
        self._handles[handle] = key.device_id
        logger.debug("Subscription %s fuer %s", handle, key)
        return handle

    def unsubscribe(self, handle: str) -> bool:
        """Entfernt eine Subscription (synchron, lokal)."""
        entity_id = self._handles.pop(handle, None)
        if entity_id is None:
            return False
        subs = self._subscribers.get(entity_id, {})
        subs.pop(handle, None)
        if not subs:
            self._subscribers.pop(entity_id, None)
        return True

    async def _listen(self) -> None:
        """Verbindungsschleife mit Reconnect."""
        while self._running:
            try:
                await self._connect_and_listen()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("HA WebSocket Fehler: %s", e)
            self._connected.clear()
            if self._running:
                logger.info("HA WebSocket Reconnect in %ds", WS_RECONNECT_DELAY)
                await asyncio.sleep(WS_RECONNECT_DELAY)

    async def _subscribe_state_changed(self, ws) -> bool:
        """Abonniert state_changed und wartet auf die Bestaetigung von HA."""
        await ws.send_json({
            "id": 1,
            "type": "subscribe_events",
            "event_type": "state_changed",
        })
        while True:
            data = await ws.receive_json()
            if data.get("type") == "event":
                await self.dispatch(data.get("event", {}))
                continue
            if data.get("id") != 1 or data.get("type") != "result":
                continue
            if not data.get("success"):
                logger.error("HA WebSocket Subscription abgelehnt: %s", data.get("error"))
                return False
            return True

    async def _connect_and_listen(self) -> None:
        """Verbindet sich mit HA WebSocket und verarbeitet Events."""
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.ws_url) as ws:
                auth_msg = await ws.receive_json()
                if auth_msg.get("type") == "auth_required":
                    await ws.send_json({
                        "type": "auth",
                        "access_token": self.ha_token,
                    })
                    auth_result = await ws.receive_json()
                else:
                    auth_result = auth_msg
                if auth_result.get("type") != "auth_ok":
                    logger.error("HA WebSocket Auth fehlgeschlagen")
                    return

                if not await self._subscribe_state_changed(ws):
                    return
                self._connected.set()
                logger.info("HA WebSocket verbunden")

                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        data = json.loads(msg.data)
                        if data.get("type") == "event":
                            await self.dispatch(data.get("event", {}))
                    elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                        break

        logger.warning("HA WebSocket Verbindung beendet")

    async def dispatch(self, event: dict) -> int:
        """Verteilt ein state_changed Event an die Subscriber der Entity.

        Returns:
            Anzahl benachrichtigter Callbacks
        """
        if event.get("event_type") != "state_changed":
            return 0
        data = event.get("data") or {}
        subs = self._subscribers.get(data.get("entity_id", ""))
        if not subs:
            return 0

        new_state = data.get("new_state") or {}
        old_state = data.get("old_state") or {}
        new_val = parse_onoff(new_state.get("state"))
        if new_val is None:
            return 0
        # Nur echte Wechsel (Attribut-Updates ignorieren)
        if parse_onoff(old_state.get("state")) == new_val:
            return 0

        notified = 0
        for key, callback in list(subs.values()):
            set_log_key(key)
            try:
                await callback(new_val)
                notified += 1
            except Exception as e:
                logger.error("State-Change Callback Fehler fuer %s: %s", key, e)
        set_log_key("")
        return notified
