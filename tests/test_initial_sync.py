"""
Tests fuer den Initial State Sync.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from vacation_mode.ha_client import DeviceUnavailable
from vacation_mode.history_store import HistoryStore
from vacation_mode.initial_sync import find_state_at, run_initial_sync, sync_device
from vacation_mode.models import Event, ReplayMode, SyncOutcome, TrackingKey

TZ = ZoneInfo("Europe/Berlin")
KEY = TrackingKey("light.wohnzimmer")
OTHER = TrackingKey("switch.stehlampe")
NOW = datetime(2026, 10, 19, 20, 0, tzinfo=TZ)  # Montag 20:00
LAST_MONDAY = NOW - timedelta(days=7)


def _at(base, hour, minute, value):
    return Event.from_datetime(base.replace(hour=hour, minute=minute), value)


def _ms(when):
    return int(when.timestamp() * 1000)


async def _store_with(*items):
    store = HistoryStore()
    for key, events in items:
        await store.merge_events(key, events, now_ms=_ms(NOW))
    return store


class TestFindStateAt:

    def test_last_event_before_target(self):
        history = [_at(LAST_MONDAY, 19, 30, True), _at(LAST_MONDAY, 23, 15, False)]
        assert find_state_at(history, _ms(LAST_MONDAY)) is history[0]

    def test_event_exactly_at_target(self):
        history = [_at(LAST_MONDAY, 20, 0, True)]
        assert find_state_at(history, _ms(LAST_MONDAY)) is history[0]

    def test_all_events_after_target(self):
        history = [_at(LAST_MONDAY, 21, 0, True)]
        assert find_state_at(history, _ms(LAST_MONDAY)) is None


class TestSyncDevice:

    @pytest.mark.asyncio
    async def test_no_history(self, ha_mock):
        result = await sync_device(KEY, [], ha_mock, _ms(LAST_MONDAY))
        assert result.outcome is SyncOutcome.NO_HISTORY
        ha_mock.read_value.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_historical_state(self, ha_mock):
        history = [_at(LAST_MONDAY, 21, 0, True)]
        result = await sync_device(KEY, history, ha_mock, _ms(LAST_MONDAY))
        assert result.outcome is SyncOutcome.NO_HISTORICAL_STATE

    @pytest.mark.asyncio
    async def test_already_correct(self, ha_mock):
        ha_mock.read_value.return_value = True
        history = [_at(LAST_MONDAY, 19, 30, True)]
        result = await sync_device(KEY, history, ha_mock, _ms(LAST_MONDAY))
        assert result.outcome is SyncOutcome.ALREADY_CORRECT
        ha_mock.write_value.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_error(self, ha_mock):
        ha_mock.read_value.side_effect = DeviceUnavailable("offline")
        history = [_at(LAST_MONDAY, 19, 30, True)]
        result = await sync_device(KEY, history, ha_mock, _ms(LAST_MONDAY))
        assert result.outcome is SyncOutcome.ERROR
        assert "offline" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_write_error(self, ha_mock):
        ha_mock.write_value.side_effect = RuntimeError("boom")
        history = [_at(LAST_MONDAY, 19, 30, True)]
        result = await sync_device(KEY, history, ha_mock, _ms(LAST_MONDAY))
        assert result.outcome is SyncOutcome.ERROR


class TestRunInitialSync:

    @pytest.mark.asyncio
    async def test_corrects_to_state_one_week_ago(self, ha_mock):
        store = await _store_with(
            (KEY, [_at(LAST_MONDAY, 19, 30, True), _at(LAST_MONDAY, 23, 15, False)]),
        )
        ha_mock.read_value.return_value = False

        results = await run_initial_sync([KEY], store, ha_mock, ReplayMode.NORMAL, NOW)

        assert results[KEY].outcome is SyncOutcome.SYNCED
        assert results[KEY].target_value is True
        ha_mock.write_value.assert_awaited_once_with(KEY, True)

    @pytest.mark.asyncio
    async def test_test_mode_looks_one_hour_back(self, ha_mock):
        store = await _store_with(
            (KEY, [_at(NOW, 18, 50, True), _at(NOW, 19, 10, False)]),
        )
        ha_mock.read_value.return_value = True

        results = await run_initial_sync([KEY], store, ha_mock, ReplayMode.TEST, NOW)

        # Ziel 19:00 → letztes Event davor ist 18:50 an
        assert results[KEY].outcome is SyncOutcome.ALREADY_CORRECT

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_other_keys(self, ha_mock):
        store = await _store_with(
            (KEY, [_at(LAST_MONDAY, 19, 30, True)]),
            (OTHER, [_at(LAST_MONDAY, 19, 0, True)]),
        )

        async def _read(key):
            if key == KEY:
                raise DeviceUnavailable("offline")
            return False

        ha_mock.read_value.side_effect = _read
        results = await run_initial_sync([KEY, OTHER], store, ha_mock, ReplayMode.NORMAL, NOW)

        assert results[KEY].outcome is SyncOutcome.ERROR
        assert results[OTHER].outcome is SyncOutcome.SYNCED
        ha_mock.write_value.assert_awaited_once_with(OTHER, True)

    @pytest.mark.asyncio
    async def test_keys_without_history(self, ha_mock):
        store = HistoryStore()
        results = await run_initial_sync([KEY], store, ha_mock, ReplayMode.NORMAL, NOW)
        assert results[KEY].outcome is SyncOutcome.NO_HISTORY
