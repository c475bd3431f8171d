"""
Home Assistant API Client - Capability-I/O fuer den Vacation Mode

Features:
  - read_value / write_value fuer on/off-Capabilities
  - Friendly-Name Lookup
  - History-Abfrage fuer den einmaligen Import
  - Retry-Logik mit Backoff (3 Versuche) bei 5xx/Transportfehlern
  - Connection Pooling via shared aiohttp.ClientSession
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from .config import settings
from .constants import CAPABILITY_ONOFF, SWITCHABLE_DOMAINS
from .models import TrackingKey

logger = logging.getLogger(__name__)

# Retry-Konfiguration
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.5  # Sekunden: 1.5, 3.0

_STATE_TO_BOOL = {"on": True, "off": False}


class DeviceUnavailable(Exception):
    """Capability konnte nicht gelesen oder geschrieben werden."""


def parse_onoff(state: Optional[str]) -> Optional[bool]:
    """'on'/'off' → bool, alles andere (unavailable, unknown, ...) → None."""
    if state is None:
        return None
    return _STATE_TO_BOOL.get(str(state).lower())


class HomeAssistantClient:
    """Client fuer die Home Assistant REST API mit Retry und Connection Pooling."""

    def __init__(self, ha_url: str = "", ha_token: str = ""):
        self.ha_url = (ha_url or settings.ha_url).rstrip("/")
        self.ha_token = ha_token or settings.ha_token
        self._ha_headers = {
            "Authorization": f"Bearer {self.ha_token}",
            "Content-Type": "application/json",
        }
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Gibt die shared aiohttp Session zurueck (lazy init)."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                timeout = aiohttp.ClientTimeout(total=20)
                self._session = aiohttp.ClientSession(timeout=timeout)
            return self._session

    async def close(self) -> None:
        """Schliesst die HTTP Session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # ----- Home Assistant API -----

    async def get_state(self, entity_id: str) -> Optional[dict]:
        """State einer einzelnen Entity."""
        return await self._get_ha(f"/api/states/{entity_id}")

    async def call_service(
        self, domain: str, service: str, data: Optional[dict] = None
    ) -> bool:
        """HA Service aufrufen (z.B. light.turn_off). True bei Erfolg."""
        result = await self._post_ha(
            f"/api/services/{domain}/{service}", data or {}
        )
        return result is not None

    async def get_history(self, entity_id: str, start: datetime) -> list[dict]:
        """Rohe State-History einer Entity ab `start` (HA /api/history/period)."""
        path = (
            f"/api/history/period/{quote(start.isoformat())}"
            f"?filter_entity_id={quote(entity_id)}&minimal_response&no_attributes"
        )
        result = await self._get_ha(path)
        if not result or not isinstance(result, list):
            return []
        # HA liefert eine Liste pro Entity
        return result[0] if result and isinstance(result[0], list) else []

    async def is_available(self) -> bool:
        """Prueft ob HA erreichbar ist."""
        result = await self._get_ha("/api/")
        return isinstance(result, dict) and "message" in result

    # ----- Capability-I/O -----

    async def read_value(self, key: TrackingKey) -> bool:
        """Liest den aktuellen on/off-Wert. Raises DeviceUnavailable."""
        self._check_capability(key)
        state = await self.get_state(key.device_id)
        if not state:
            raise DeviceUnavailable(f"{key}: kein State von HA")
        value = parse_onoff(state.get("state"))
        if value is None:
            raise DeviceUnavailable(f"{key}: State '{state.get('state')}' ist kein on/off")
        return value

    async def write_value(self, key: TrackingKey, value: bool) -> None:
        """Schaltet die Entity per turn_on/turn_off. Raises DeviceUnavailable."""
        self._check_capability(key)
        domain = key.device_id.split(".", 1)[0]
        if domain not in SWITCHABLE_DOMAINS:
            raise DeviceUnavailable(f"{key}: Domain '{domain}' ist nicht schaltbar")
        service = "turn_on" if value else "turn_off"
        ok = await self.call_service(domain, service, {"entity_id": key.device_id})
        if not ok:
            raise DeviceUnavailable(f"{key}: {domain}.{service} fehlgeschlagen")
        logger.info("Geschaltet: %s.%s (%s)", domain, service, key.device_id)

    async def get_display_name(self, key: TrackingKey) -> str:
        """Friendly-Name der Entity, Fallback auf die entity_id."""
        state = await self.get_state(key.device_id)
        if state:
            name = (state.get("attributes") or {}).get("friendly_name")
            if name:
                return str(name)
        return key.device_id

    async def get_history_points(self, key: TrackingKey, since: datetime) -> list[dict]:
        """History als Liste von {timestamp_ms, value} (nur on/off-States)."""
        self._check_capability(key)
        points = []
        for entry in await self.get_history(key.device_id, since):
            value = parse_onoff(entry.get("state"))
            changed = entry.get("last_changed") or entry.get("last_updated")
            if value is None or not changed:
                continue
            try:
                ts = datetime.fromisoformat(str(changed).replace("Z", "+00:00"))
            except ValueError:
                logger.debug("History-Eintrag mit ungueltigem Zeitstempel: %s", changed)
                continue
            points.append({"timestamp_ms": int(ts.timestamp() * 1000), "value": value})
        return points

    @staticmethod
    def _check_capability(key: TrackingKey) -> None:
        if key.capability != CAPABILITY_ONOFF:
            raise DeviceUnavailable(
                f"{key}: Capability '{key.capability}' wird nicht unterstuetzt"
            )

    # ----- Interne HTTP Methoden mit Retry -----

    async def _get_ha(self, path: str) -> Any:
        return await self._request_ha("GET", path)

    async def _post_ha(self, path: str, data: dict) -> Any:
        return await self._request_ha("POST", path, data)

    async def _request_ha(self, method: str, path: str, data: Optional[dict] = None) -> Any:
        """Request an Home Assistant mit Retry.

        5xx und Transportfehler werden bis zu MAX_RETRIES mal wiederholt,
        4xx nicht. Returns None wenn kein Versuch erfolgreich war.
        """
        session = await self._get_session()
        url = f"{self.ha_url}{path}"
        last_error = None

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                async with session.request(
                    method, url, headers=self._ha_headers, json=data,
                ) as resp:
                    if resp.status in (200, 201):
                        return await resp.json()
                    body = await resp.text()
                    if 400 <= resp.status < 500:
                        logger.warning(
                            "HA %s %s -> %d (Client-Fehler): %s",
                            method, path, resp.status, body[:200],
                        )
                        return None
                    last_error = f"HTTP {resp.status}: {body[:200]}"
            except aiohttp.ClientError as e:
                last_error = str(e)
            except asyncio.TimeoutError:
                last_error = "Timeout"

            logger.warning(
                "HA %s %s fehlgeschlagen (Versuch %d/%d): %s",
                method, path, attempt, MAX_RETRIES, last_error,
            )
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_BACKOFF_BASE * attempt)

        logger.error("HA %s %s endgueltig fehlgeschlagen: %s", method, path, last_error)
        return None
