"""
Vacation Mode - Hauptanwendung.

Baut HA-Client, WebSocket-Listener, Redis und den Manager auf und laeuft
bis SIGINT/SIGTERM. Der gespeicherte Zustand (Tracked-Liste, History,
Replay-Flag) bleibt in Redis und wird beim naechsten Start wiederhergestellt.
"""

import asyncio
import logging
import signal
from typing import Optional

import redis.asyncio as aioredis

from .config import get_initial_devices, settings, yaml_config
from .ha_client import HomeAssistantClient
from .ha_events import StateChangeListener
from .log_setup import setup_structured_logging
from .manager import VacationModeManager

logger = logging.getLogger("vacation_mode")


async def connect_redis() -> Optional[aioredis.Redis]:
    """Verbindet Redis. Ohne Redis laeuft alles, aber ohne Persistenz."""
    try:
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        logger.info("Redis verbunden")
        return client
    except Exception as e:
        logger.warning("Redis nicht verfuegbar (%s), Zustand wird nicht gespeichert", e)
        return None


async def main() -> None:
    setup_structured_logging(settings.log_level)
    logger.info("Vacation Mode startet (HA: %s, Zeitzone: %s)", settings.ha_url, settings.timezone)

    redis_client = await connect_redis()
    ha = HomeAssistantClient()
    listener = StateChangeListener()
    manager = VacationModeManager(ha, listener, redis_client)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: kein add_signal_handler
            pass

    try:
        if not await ha.is_available():
            logger.warning("Home Assistant unter %s nicht erreichbar", settings.ha_url)
        await listener.start()
        await manager.initialize(get_initial_devices(yaml_config))
        await stop.wait()
    finally:
        logger.info("Vacation Mode faehrt herunter...")
        await manager.shutdown()
        await listener.stop()
        await ha.close()
        if redis_client is not None:
            await redis_client.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
