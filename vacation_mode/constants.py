"""
Zentrale Konstanten fuer den Vacation Mode.

Sammelt Perioden, Limits, Intervalle und Redis-Keys an einem Ort
statt sie ueber die Module zu verstreuen.
"""

from typing import Final

# ============================================================
# Replay-Perioden (Minuten)
# ============================================================

MINUTES_PER_HOUR: Final[int] = 60
MINUTES_PER_DAY: Final[int] = 24 * 60
DAYS_PER_WEEK: Final[int] = 7

# Normalbetrieb: Wochenzyklus
PERIOD_NORMAL_MINUTES: Final[int] = DAYS_PER_WEEK * MINUTES_PER_DAY  # 10080
# Testbetrieb: Stundenzyklus
PERIOD_TEST_MINUTES: Final[int] = MINUTES_PER_HOUR

# ============================================================
# History
# ============================================================

# 8 statt 7 Tage: beim Replay ist immer ein kompletter Vorzyklus vorhanden
HISTORY_RETENTION_DAYS: Final[int] = 8
HISTORY_RETENTION_MS: Final[int] = HISTORY_RETENTION_DAYS * 86400 * 1000
HISTORY_MAX_EVENTS: Final[int] = 10_000

# Historischer Import (HA History API oder extern geliefert)
IMPORT_MAX_POINTS: Final[int] = 50

# ============================================================
# Intervalle (Sekunden)
# ============================================================

POLL_INTERVAL_DEFAULT: Final[int] = 300  # 5 Min
SWEEP_INTERVAL: Final[int] = 86400  # 1x pro Tag
SUBSCRIBE_TIMEOUT_DEFAULT: Final[float] = 5.0
RESTART_SYNC_DELAY_DEFAULT: Final[float] = 2.0
WS_RECONNECT_DELAY: Final[int] = 10

# ============================================================
# Logging
# ============================================================

RECENT_LOG_MAX_SIZE: Final[int] = 200

# ============================================================
# Capabilities
# ============================================================

CAPABILITY_ONOFF: Final[str] = "onoff"

# Domains die per turn_on/turn_off schaltbar sind
SWITCHABLE_DOMAINS: Final[frozenset] = frozenset({
    "light", "switch", "fan", "input_boolean",
})

# ============================================================
# Redis Keys
# ============================================================

KEY_REPLAY_ARMED: Final[str] = "vm:flags:replay_armed"
KEY_TEST_MODE: Final[str] = "vm:flags:test_mode"
KEY_TRACKED: Final[str] = "vm:tracked"
KEY_HISTORY_INDEX: Final[str] = "vm:history:index"
KEY_HISTORY_PREFIX: Final[str] = "vm:history"
