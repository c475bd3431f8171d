"""
Initial State Sync - Einmaliger Korrekturlauf beim Aktivieren / Neustart.

Ohne diesen Lauf wuerde ein Geraet bis zum naechsten geplanten Event im
falschen Zustand bleiben (z.B. Licht aus, obwohl es vor genau einer Woche
um diese Zeit an war). Der Sync setzt jedes getrackte Geraet auf den
Zustand, den es vor genau einer Periode hatte.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

from .ha_client import DeviceUnavailable, HomeAssistantClient
from .history_store import HistoryStore
from .log_setup import set_log_key
from .models import Event, ReplayMode, SyncOutcome, SyncResult, TrackingKey

logger = logging.getLogger(__name__)


def find_state_at(history: list[Event], target_ms: int) -> Optional[Event]:
    """Letztes Event mit timestamp <= target_ms (History ist aufsteigend sortiert)."""
    match = None
    for event in history:
        if event.timestamp_ms > target_ms:
            break
        match = event
    return match


async def sync_device(
    key: TrackingKey, history: list[Event], ha: HomeAssistantClient, target_ms: int,
) -> SyncResult:
    """Synchronisiert ein einzelnes Geraet. Faengt alle Geraetefehler ab."""
    if not history:
        return SyncResult(SyncOutcome.NO_HISTORY)

    event = find_state_at(history, target_ms)
    if event is None:
        return SyncResult(SyncOutcome.NO_HISTORICAL_STATE)

    try:
        live = await ha.read_value(key)
        if live == event.value:
            return SyncResult(SyncOutcome.ALREADY_CORRECT, target_value=event.value, live_value=live)
        await ha.write_value(key, event.value)
    except DeviceUnavailable as e:
        return SyncResult(SyncOutcome.ERROR, target_value=event.value, error=str(e))
    except Exception as e:
        logger.exception("Unerwarteter Sync-Fehler fuer %s", key)
        return SyncResult(SyncOutcome.ERROR, target_value=event.value, error=str(e))

    return SyncResult(SyncOutcome.SYNCED, target_value=event.value, live_value=live)


async def run_initial_sync(
    keys: Iterable[TrackingKey],
    history: HistoryStore,
    ha: HomeAssistantClient,
    mode: ReplayMode,
    now: datetime,
) -> dict[TrackingKey, SyncResult]:
    """Setzt alle Keys auf ihren Zustand von vor einer Periode.

    Die Ergebnisse dienen nur dem Logging, nicht der Ablaufsteuerung.
    """
    target_ms = int(now.timestamp() * 1000) - mode.period_ms
    logger.info(
        "Initial-Sync (%s): Zielzeitpunkt %s",
        mode.value, datetime.fromtimestamp(target_ms / 1000, tz=now.tzinfo).strftime("%a %d.%m. %H:%M"),
    )

    results: dict[TrackingKey, SyncResult] = {}
    for key in keys:
        set_log_key(key)
        result = await sync_device(key, history.get(key), ha, target_ms)
        results[key] = result
        if result.outcome is SyncOutcome.SYNCED:
            logger.info("Sync: %s -> %s", key, "an" if result.target_value else "aus")
        elif result.outcome is SyncOutcome.ERROR:
            logger.warning("Sync fehlgeschlagen fuer %s: %s", key, result.error)
        else:
            logger.debug("Sync %s: %s", key, result.outcome.value)
    set_log_key("")

    counts = Counter(r.outcome.value for r in results.values())
    logger.info(
        "Initial-Sync abgeschlossen: %d Geraete (%s)",
        len(results), ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "keine",
    )
    return results
