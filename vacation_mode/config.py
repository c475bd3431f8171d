"""
Zentrale Konfiguration - liest .env und settings.yaml
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import yaml
from pydantic_settings import BaseSettings

from .constants import (
    POLL_INTERVAL_DEFAULT,
    RESTART_SYNC_DELAY_DEFAULT,
    SUBSCRIBE_TIMEOUT_DEFAULT,
)

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Umgebungsvariablen aus .env"""

    # Home Assistant
    ha_url: str = "http://192.168.1.100:8123"
    ha_token: str = ""

    # Redis (History, Flags, Tracked-Liste)
    redis_url: str = "redis://localhost:6379"

    # Lokale Zeitzone fuer Wochentag/Uhrzeit der Events
    timezone: str = "Europe/Berlin"

    # Tracking
    poll_interval_seconds: int = POLL_INTERVAL_DEFAULT
    subscribe_timeout_seconds: float = SUBSCRIBE_TIMEOUT_DEFAULT

    # Nach Neustart kurz warten bis Geraete/WebSocket bereit sind
    restart_sync_delay_seconds: float = RESTART_SYNC_DELAY_DEFAULT

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


def load_yaml_config(config_path: Path = None) -> dict:
    """Laedt settings.yaml, erzeugt sie aus .example wenn sie fehlt."""
    if config_path is None:
        config_path = Path(__file__).parent.parent / "config" / "settings.yaml"
    example_path = config_path.with_suffix(".yaml.example")

    if not config_path.exists() and example_path.exists():
        shutil.copy2(example_path, config_path)

    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
                if not isinstance(data, dict):
                    return {}
                return data
        except yaml.YAMLError as e:
            logger.warning("settings.yaml nicht lesbar: %s", e)
            return {}
    return {}


def apply_yaml_overrides(target: Settings, config: dict) -> None:
    """Uebernimmt Werte aus dem vacation_mode-Abschnitt der settings.yaml."""
    section = config.get("vacation_mode") or {}
    if not isinstance(section, dict):
        return

    if section.get("timezone"):
        target.timezone = str(section["timezone"])
    if section.get("poll_interval_seconds"):
        target.poll_interval_seconds = int(section["poll_interval_seconds"])
    if section.get("subscribe_timeout_seconds") is not None:
        target.subscribe_timeout_seconds = float(section["subscribe_timeout_seconds"])
    if section.get("restart_sync_delay_seconds") is not None:
        target.restart_sync_delay_seconds = float(section["restart_sync_delay_seconds"])
    if section.get("log_level"):
        target.log_level = str(section["log_level"]).upper()


def get_initial_devices(config: dict) -> list[str]:
    """Geraete die beim ersten Start automatisch getrackt werden.

    Format in settings.yaml:
        vacation_mode:
          tracked_devices:
            - light.wohnzimmer
            - switch.stehlampe:onoff
    """
    section = config.get("vacation_mode") or {}
    devices = section.get("tracked_devices") or []
    return [str(d).strip() for d in devices if str(d).strip()]


def local_now() -> datetime:
    """Timezone-aware datetime.now() in der konfigurierten Zeitzone."""
    return datetime.now(ZoneInfo(settings.timezone))


# Globale Instanzen
settings = Settings()
yaml_config = load_yaml_config()

# settings.yaml ueberschreibt .env fuer bestimmte Werte
apply_yaml_overrides(settings, yaml_config)
