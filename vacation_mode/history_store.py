"""
History Store - Begrenzte, deduplizierte Event-History pro Tracking-Key.

Invarianten pro Key:
- aufsteigend nach Zeitstempel
- keine zwei aufeinanderfolgenden Events mit gleichem Wert
- aeltestes Event hoechstens 8 Tage alt
- hoechstens 10.000 Events

Persistenz: ein JSON-Blob pro Key in Redis. Geschrieben wird immer nur
der betroffene Key, nie die ganze Tabelle.
"""

import json
import logging
import time
from typing import Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .constants import (
    HISTORY_MAX_EVENTS,
    HISTORY_RETENTION_MS,
    KEY_HISTORY_INDEX,
    KEY_HISTORY_PREFIX,
)
from .models import Event, TrackingKey

logger = logging.getLogger(__name__)


class StorageFailure(Exception):
    """History-Blob eines Keys fehlt oder ist nicht lesbar."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def history_key(key: TrackingKey) -> str:
    return f"{KEY_HISTORY_PREFIX}:{key}"


def serialize_history(events: list[Event]) -> str:
    return json.dumps([e.to_dict() for e in events])


def deserialize_history(blob) -> list[Event]:
    """JSON-Blob → Events. Raises StorageFailure bei fehlendem/kaputtem Blob."""
    if blob is None:
        raise StorageFailure("Blob fehlt")
    if isinstance(blob, bytes):
        blob = blob.decode()
    try:
        raw = json.loads(blob)
        if not isinstance(raw, list):
            raise ValueError("kein JSON-Array")
        return [Event.from_dict(item) for item in raw]
    except (ValueError, KeyError, TypeError) as e:
        raise StorageFailure(f"Blob nicht lesbar: {e}") from e


def trim_history(events: list[Event], now_ms: int) -> list[Event]:
    """Entfernt Events aelter als 8 Tage und kappt auf die neuesten 10.000.

    Ein Event, das genau 8 Tage alt ist, bleibt erhalten.
    """
    cutoff = now_ms - HISTORY_RETENTION_MS
    kept = [e for e in events if e.timestamp_ms >= cutoff]
    if len(kept) > HISTORY_MAX_EVENTS:
        kept = kept[-HISTORY_MAX_EVENTS:]
    return kept


def collapse_duplicates(events: Iterable[Event]) -> list[Event]:
    """Entfernt aufeinanderfolgende Events mit gleichem Wert (das erste bleibt)."""
    result: list[Event] = []
    for event in events:
        if result and result[-1].value == event.value:
            continue
        result.append(event)
    return result


class HistoryStore:
    """Haelt die History-Tabelle im Speicher und persistiert pro Key."""

    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self.redis = redis_client
        self._histories: dict[TrackingKey, list[Event]] = {}

    # ----- Lesen -----

    def get(self, key: TrackingKey) -> list[Event]:
        """Aktuelle History (Kopie, aelteste zuerst)."""
        return list(self._histories.get(key, ()))

    def keys(self) -> list[TrackingKey]:
        return list(self._histories.keys())

    def has_history(self, key: TrackingKey) -> bool:
        return bool(self._histories.get(key))

    def last_value(self, key: TrackingKey) -> Optional[bool]:
        events = self._histories.get(key)
        return events[-1].value if events else None

    def count(self, key: TrackingKey) -> int:
        return len(self._histories.get(key, ()))

    # ----- Laden -----

    async def load(self, now_ms: Optional[int] = None) -> int:
        """Laedt alle persistierten Histories. Kaputte Keys starten leer.

        Jeder Key wird beim Laden auf die Retention getrimmt, gekuerzte
        Keys werden sofort zurueckgeschrieben.

        Returns:
            Anzahl geladener Keys
        """
        self._histories.clear()
        if not self.redis:
            return 0

        now = now_ms if now_ms is not None else _now_ms()
        index = await self._load_index()
        loaded = 0
        for raw_key in index:
            try:
                key = TrackingKey.parse(raw_key)
            except ValueError as e:
                logger.warning("History-Index enthaelt ungueltigen Key %r: %s", raw_key, e)
                continue
            try:
                events = await self.load_key(key)
            except StorageFailure as e:
                logger.warning("History fuer %s uebersprungen: %s", key, e)
                self._histories[key] = []
                continue
            trimmed = trim_history(events, now)
            self._histories[key] = trimmed
            loaded += 1
            if len(trimmed) != len(events):
                logger.info("History %s beim Laden getrimmt: %d -> %d Events", key, len(events), len(trimmed))
                await self._persist(key)

        logger.info("History geladen: %d/%d Keys", loaded, len(index))
        return loaded

    async def load_key(self, key: TrackingKey) -> list[Event]:
        """Liest den Blob eines Keys. Raises StorageFailure."""
        try:
            blob = await self.redis.get(history_key(key))
        except RedisError as e:
            raise StorageFailure(f"Redis-Fehler: {e}") from e
        return deserialize_history(blob)

    async def _load_index(self) -> list[str]:
        try:
            raw = await self.redis.get(KEY_HISTORY_INDEX)
        except RedisError as e:
            logger.error("History-Index nicht lesbar: %s", e)
            return []
        if not raw:
            return []
        try:
            index = json.loads(raw)
        except ValueError as e:
            logger.error("History-Index kaputt: %s", e)
            return []
        return [str(k) for k in index] if isinstance(index, list) else []

    # ----- Schreiben -----

    async def append_event(self, key: TrackingKey, event: Event, now_ms: Optional[int] = None) -> bool:
        """Haengt ein Event an, trimmt und persistiert nur diesen Key.

        Returns:
            False wenn das Event die Invarianten verletzen wuerde (Duplikat
            zum letzten Wert oder aelter als das letzte Event)
        """
        events = self._histories.get(key, [])
        if events:
            last = events[-1]
            if last.value == event.value:
                logger.debug("Duplikat verworfen: %s -> %s", key, event.value)
                return False
            if event.timestamp_ms < last.timestamp_ms:
                logger.warning(
                    "Event fuer %s liegt vor dem letzten Event (%d < %d), verworfen",
                    key, event.timestamp_ms, last.timestamp_ms,
                )
                return False

        is_new = key not in self._histories
        events = trim_history(events + [event], now_ms if now_ms is not None else _now_ms())
        self._histories[key] = events
        if is_new:
            await self._save_index()
        await self._persist(key)
        return True

    async def merge_events(self, key: TrackingKey, new_events: list[Event], now_ms: Optional[int] = None) -> int:
        """Fuegt mehrere Events (z.B. Import) ein, mit Dedup und Retention.

        Returns:
            Anzahl hinzugekommener Events
        """
        existing = self._histories.get(key, [])
        merged = sorted(existing + list(new_events), key=lambda e: e.timestamp_ms)
        merged = collapse_duplicates(merged)
        merged = trim_history(merged, now_ms if now_ms is not None else _now_ms())

        is_new = key not in self._histories
        self._histories[key] = merged
        if is_new:
            await self._save_index()
        await self._persist(key)
        return len(merged) - len(existing)

    async def clear(self, key: TrackingKey) -> bool:
        """Loescht History und Blob eines Keys."""
        existed = self._histories.pop(key, None) is not None
        if self.redis:
            try:
                await self.redis.delete(history_key(key))
            except RedisError as e:
                logger.error("History-Blob fuer %s nicht geloescht: %s", key, e)
            await self._save_index()
        return existed

    async def clear_all(self) -> int:
        keys = list(self._histories.keys())
        for key in keys:
            await self.clear(key)
        return len(keys)

    async def sweep(self, now_ms: Optional[int] = None) -> int:
        """Retention fuer alle Keys neu anwenden (auch ohne neue Events).

        Returns:
            Anzahl getrimmter Keys
        """
        now_ms = now_ms if now_ms is not None else _now_ms()
        trimmed = 0
        for key, events in list(self._histories.items()):
            kept = trim_history(events, now_ms)
            if len(kept) != len(events):
                self._histories[key] = kept
                await self._persist(key)
                trimmed += 1
                logger.info("Sweep %s: %d -> %d Events", key, len(events), len(kept))
        return trimmed

    async def _persist(self, key: TrackingKey) -> None:
        if not self.redis:
            return
        try:
            await self.redis.set(history_key(key), serialize_history(self._histories.get(key, [])))
        except RedisError as e:
            logger.error("History fuer %s nicht gespeichert: %s", key, e)

    async def _save_index(self) -> None:
        if not self.redis:
            return
        try:
            await self.redis.set(
                KEY_HISTORY_INDEX, json.dumps([str(k) for k in self._histories]),
            )
        except RedisError as e:
            logger.error("History-Index nicht gespeichert: %s", e)
