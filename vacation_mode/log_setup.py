"""
Log-Kontext - Tracking-Key Tracing + Structured Logging + Ring-Buffer.

Jeder Timer-Fire, Poll-Zyklus und Push-Callback setzt den betroffenen
Tracking-Key in eine ContextVar. Der Formatter haengt ihn an jede
Log-Zeile, damit Logs pro Geraet korrelierbar sind.

Die letzten Log-Eintraege werden zusaetzlich in einem Ring-Buffer
gehalten (Diagnose ohne Zugriff auf Container-Logs).
"""

import logging
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone

from .constants import RECENT_LOG_MAX_SIZE

# ContextVar fuer den aktuellen Tracking-Key (asyncio-kompatibel, pro Task)
_log_key_var: ContextVar[str] = ContextVar("tracking_key", default="")

_recent_logs: deque[dict] = deque(maxlen=RECENT_LOG_MAX_SIZE)


def set_log_key(key) -> None:
    """Setzt den Tracking-Key fuer alle folgenden Logs im aktuellen Task."""
    _log_key_var.set(str(key) if key else "")


def get_log_key() -> str:
    return _log_key_var.get()


class StructuredFormatter(logging.Formatter):
    """Log-Formatter der den Tracking-Key voranstellt.

    Output-Format:
        12:34:56 [vacation_mode.schedule_engine] INFO: [light.flur:onoff] Message here
    """

    def format(self, record: logging.LogRecord) -> str:
        key = _log_key_var.get()
        record.tracking_key = f"[{key}] " if key else ""
        return super().format(record)


class RecentLogHandler(logging.Handler):
    """Speichert die letzten Log-Eintraege im Ring-Buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            _recent_logs.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "key": _log_key_var.get(),
                "message": record.getMessage(),
            })
        except Exception:
            self.handleError(record)


def get_recent_logs(level: str = "") -> list[dict]:
    """Gibt die gepufferten Log-Eintraege zurueck (optional nach Level gefiltert)."""
    if not level:
        return list(_recent_logs)
    level = level.upper()
    return [entry for entry in _recent_logs if entry["level"] == level]


def clear_recent_logs() -> None:
    _recent_logs.clear()


def setup_structured_logging(level: str = "INFO") -> None:
    """Konfiguriert Structured Logging fuer die gesamte Anwendung."""
    fmt = "%(asctime)s [%(name)s] %(levelname)s: %(tracking_key)s%(message)s"
    formatter = StructuredFormatter(fmt=fmt, datefmt="%H:%M:%S")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Bestehende Handler aktualisieren
    for handler in root.handlers:
        handler.setFormatter(formatter)

    # Falls keine Handler existieren, einen hinzufuegen
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if not any(isinstance(h, RecentLogHandler) for h in root.handlers):
        root.addHandler(RecentLogHandler(level=logging.INFO))
