"""
Globale Test-Fixtures fuer den Vacation Mode.

Stellt wiederverwendbare Mock-Objekte bereit:
  - redis_mock: AsyncMock Redis Client mit dict-basiertem Key-Value Store
  - ha_mock: AsyncMock Home Assistant Client (Capability-I/O)
  - listener_mock: Mock StateChangeListener (Push-Subscriptions)
  - tasks_mock: TaskRegistry-Mock der Coroutines nur schliesst
"""

from unittest.mock import AsyncMock, MagicMock

import pytest


# ============================================================
# Redis Mock
# ============================================================

@pytest.fixture
def redis_mock():
    """AsyncMock Redis Client, get/set/delete arbeiten auf einem echten dict."""
    mock = AsyncMock()
    store: dict[str, str] = {}

    async def _get(key):
        return store.get(key)

    async def _set(key, value, *args, **kwargs):
        store[key] = value
        return True

    async def _delete(*keys):
        return sum(1 for k in keys if store.pop(k, None) is not None)

    mock.ping = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    mock.get = AsyncMock(side_effect=_get)
    mock.set = AsyncMock(side_effect=_set)
    mock.delete = AsyncMock(side_effect=_delete)
    mock._store = store  # Fuer direkte Assertions in Tests
    return mock


# ============================================================
# Home Assistant Client Mock
# ============================================================

@pytest.fixture
def ha_mock():
    """AsyncMock Home Assistant Client."""
    mock = AsyncMock()
    mock.read_value = AsyncMock(return_value=False)
    mock.write_value = AsyncMock(return_value=None)
    mock.get_display_name = AsyncMock(side_effect=lambda key: key.device_id)
    mock.get_history_points = AsyncMock(return_value=[])
    mock.close = AsyncMock()
    return mock


# ============================================================
# State-Change Listener Mock
# ============================================================

@pytest.fixture
def listener_mock():
    """Listener dessen subscribe() erfolgreich ist."""
    mock = MagicMock()
    mock.subscribe = AsyncMock(return_value="handle-1")
    mock.unsubscribe = MagicMock(return_value=True)
    mock.start = AsyncMock()
    mock.stop = AsyncMock()
    return mock


# ============================================================
# TaskRegistry Mock
# ============================================================

@pytest.fixture
def tasks_mock():
    """TaskRegistry die keine echten Tasks startet."""
    mock = MagicMock()

    def _create_task(coro, *, name, replace=False):
        coro.close()
        return MagicMock(name=name)

    mock.create_task = MagicMock(side_effect=_create_task)
    mock.cancel = MagicMock(return_value=True)
    return mock
