"""
Tests fuer den VacationModeManager (Commands, Persistenz, Neustart).
"""

import json
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from vacation_mode.constants import KEY_REPLAY_ARMED, KEY_TEST_MODE, KEY_TRACKED
from vacation_mode.ha_client import DeviceUnavailable
from vacation_mode.ha_events import SubscriptionError
from vacation_mode.history_store import HistoryStore
from vacation_mode.log_setup import get_recent_logs
from vacation_mode.manager import VacationModeManager
from vacation_mode.models import Event, SyncOutcome, TrackingKey
from vacation_mode.tracking import TrackingFailure

TZ = ZoneInfo("Europe/Berlin")
KEY = TrackingKey("light.wohnzimmer")
OTHER = TrackingKey("switch.stehlampe")
NOW = datetime(2026, 10, 19, 20, 0, tzinfo=TZ)  # Montag 20:00
LAST_MONDAY = NOW - timedelta(days=7)


def _at(base, hour, minute, value):
    return Event.from_datetime(base.replace(hour=hour, minute=minute), value)


def _ms(when):
    return int(when.timestamp() * 1000)


def _evening_history():
    return [_at(LAST_MONDAY, 19, 30, True), _at(LAST_MONDAY, 23, 15, False)]


@pytest.fixture
def manager(ha_mock, listener_mock, redis_mock):
    return VacationModeManager(
        ha_mock, listener_mock, redis_mock,
        clock=lambda: NOW,
        poll_interval=5,
        subscribe_timeout=0,
        restart_sync_delay=0,
    )


async def _tracked_with_history(manager, key=KEY, events=None):
    await manager.track(key)
    await manager.history.merge_events(key, events or _evening_history(), now_ms=_ms(NOW))


# ============================================================
# Aufzeichnung
# ============================================================

class TestRecordEvent:

    @pytest.mark.asyncio
    async def test_repeated_value_recorded_once(self, manager):
        assert await manager.record_event(KEY, True)
        assert not await manager.record_event(KEY, True)
        assert manager.history.count(KEY) == 1

    @pytest.mark.asyncio
    async def test_event_uses_clock(self, manager):
        await manager.record_event(KEY, True)
        event = manager.history.get(KEY)[0]
        assert event.day_of_week == 0
        assert event.hour_of_day == 20
        assert event.timestamp_ms == _ms(NOW)

    @pytest.mark.asyncio
    async def test_push_transition_is_recorded(self, manager, listener_mock):
        await manager.track(KEY)
        callback = listener_mock.subscribe.call_args.args[1]
        await callback(True)
        await callback(False)
        assert [e.value for e in manager.history.get(KEY)] == [True, False]


# ============================================================
# Replay an/aus
# ============================================================

class TestReplayToggle:

    @pytest.mark.asyncio
    async def test_enable_syncs_and_arms(self, manager, ha_mock, redis_mock):
        await _tracked_with_history(manager)
        ha_mock.read_value.return_value = False

        result = await manager.enable_replay()

        assert result["armed"] == 1
        assert manager.replay_active
        assert redis_mock._store[KEY_REPLAY_ARMED] == "1"
        # Initial-Sync: vor einer Woche um 20:00 war das Licht an
        ha_mock.write_value.assert_awaited_once_with(KEY, True)
        assert manager.last_sync[KEY].outcome is SyncOutcome.SYNCED
        # Naechstes Event: 23:15 aus
        scheduled = manager.scheduler.scheduled(KEY)
        assert scheduled.event.value is False
        assert scheduled.delay_minutes == 195
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_enable_twice_is_noop(self, manager, ha_mock):
        await _tracked_with_history(manager)
        await manager.enable_replay()
        result = await manager.enable_replay()
        assert "armed" not in result
        ha_mock.write_value.assert_awaited_once()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_disable_cancels_timers(self, manager, redis_mock):
        await _tracked_with_history(manager)
        await manager.enable_replay()

        result = await manager.disable_replay()

        assert result["cancelled"] == 1
        assert not manager.replay_active
        assert manager.scheduler.timer_count == 0
        assert redis_mock._store[KEY_REPLAY_ARMED] == "0"

    @pytest.mark.asyncio
    async def test_test_mode_rearms(self, manager, redis_mock):
        await _tracked_with_history(manager)
        await manager.enable_replay()

        result = await manager.set_test_mode(True)

        assert manager.test_mode
        assert result["armed"] == 1
        assert redis_mock._store[KEY_TEST_MODE] == "1"
        # Minute 15 (aus) liegt naeher als Minute 30 (an)
        assert manager.scheduler.scheduled(KEY).delay_minutes == 15
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_test_mode_without_replay(self, manager):
        result = await manager.set_test_mode(True)
        assert result["armed"] == 0
        assert manager.scheduler.timer_count == 0

    @pytest.mark.asyncio
    async def test_works_without_redis(self, ha_mock, listener_mock):
        manager = VacationModeManager(
            ha_mock, listener_mock, None, clock=lambda: NOW, subscribe_timeout=0,
        )
        await _tracked_with_history(manager)
        result = await manager.enable_replay()
        assert result["armed"] == 1
        await manager.shutdown()


# ============================================================
# Tracking-Commands
# ============================================================

class TestTrackCommands:

    @pytest.mark.asyncio
    async def test_track_persists_list(self, manager, redis_mock):
        await manager.track("light.wohnzimmer")
        await manager.track(OTHER)
        assert json.loads(redis_mock._store[KEY_TRACKED]) == [str(KEY), str(OTHER)]

    @pytest.mark.asyncio
    async def test_track_failure_propagates(self, manager, listener_mock, ha_mock, redis_mock):
        listener_mock.subscribe.side_effect = SubscriptionError("nicht verbunden")
        ha_mock.read_value.side_effect = DeviceUnavailable("unavailable")
        with pytest.raises(TrackingFailure):
            await manager.track(KEY)
        assert KEY_TRACKED not in redis_mock._store

    @pytest.mark.asyncio
    async def test_track_arms_when_active(self, manager):
        await _tracked_with_history(manager)
        await manager.enable_replay()
        await manager.history.merge_events(OTHER, _evening_history(), now_ms=_ms(NOW))

        await manager.track(OTHER)

        assert manager.scheduler.scheduled(OTHER) is not None
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_untrack_cancels_timer_keeps_history(self, manager, redis_mock):
        await _tracked_with_history(manager)
        await manager.enable_replay()

        assert await manager.untrack(KEY)

        assert manager.scheduler.scheduled(KEY) is None
        assert manager.history.has_history(KEY)
        assert json.loads(redis_mock._store[KEY_TRACKED]) == []

    @pytest.mark.asyncio
    async def test_untrack_with_clear_history(self, manager):
        await _tracked_with_history(manager)
        await manager.untrack(KEY, clear_history=True)
        assert not manager.history.has_history(KEY)


# ============================================================
# History-Commands
# ============================================================

class TestHistoryCommands:

    @pytest.mark.asyncio
    async def test_import_caps_to_newest_points(self, manager):
        start = NOW - timedelta(hours=2)
        points = [
            {"timestamp": _ms(start + timedelta(minutes=i)), "value": i % 2 == 0}
            for i in range(60)
        ]
        added = await manager.import_history(KEY, points)
        assert added == 50
        assert manager.history.get(KEY)[0].timestamp_ms == points[10]["timestamp"]

    @pytest.mark.asyncio
    async def test_import_skips_invalid_points(self, manager):
        points = [
            {"timestamp": _ms(NOW - timedelta(hours=1)), "value": True},
            {"timestamp": _ms(NOW - timedelta(minutes=30)), "value": "off"},
            {"value": False},
            {"timestamp_ms": _ms(NOW - timedelta(minutes=10)), "value": False},
        ]
        assert await manager.import_history(KEY, points) == 2

    @pytest.mark.asyncio
    async def test_import_from_ha(self, manager, ha_mock):
        ha_mock.get_history_points.return_value = [
            {"timestamp_ms": _ms(NOW - timedelta(days=2)), "value": True},
            {"timestamp_ms": _ms(NOW - timedelta(days=1)), "value": False},
        ]
        assert await manager.import_from_ha(KEY) == 2
        since = ha_mock.get_history_points.call_args.args[1]
        assert since == NOW - timedelta(days=8)

    @pytest.mark.asyncio
    async def test_generate_test_data_normal(self, manager):
        added = await manager.generate_test_data(KEY)
        events = manager.history.get(KEY)
        assert added == 14
        assert all(e.timestamp_ms < _ms(NOW) for e in events)
        assert {e.hour_of_day for e in events if e.value} <= {18, 19}
        assert {e.hour_of_day for e in events if not e.value} <= {22, 23}

    @pytest.mark.asyncio
    async def test_generate_test_data_test_mode(self, manager):
        await manager.set_test_mode(True)
        added = await manager.generate_test_data(KEY)
        events = manager.history.get(KEY)
        assert added == 6
        assert all(_ms(NOW - timedelta(hours=1)) <= e.timestamp_ms < _ms(NOW) for e in events)

    @pytest.mark.asyncio
    async def test_list_events_newest_first(self, manager):
        await _tracked_with_history(manager)
        await manager.history.merge_events(OTHER, [_at(LAST_MONDAY, 21, 0, True)], now_ms=_ms(NOW))

        events = manager.list_events()

        assert [e["timestamp"] for e in events] == sorted((e["timestamp"] for e in events), reverse=True)
        assert events[0]["device_name"] == "light.wohnzimmer"
        assert events[1]["key"] == str(OTHER)

    @pytest.mark.asyncio
    async def test_clear_history_cancels_timers(self, manager):
        await _tracked_with_history(manager)
        await manager.enable_replay()

        assert await manager.clear_history() == 1

        assert manager.history.keys() == []
        assert manager.scheduler.timer_count == 0


# ============================================================
# Start / Neustart
# ============================================================

class TestInitialize:

    @pytest.mark.asyncio
    async def test_first_start_uses_configured_devices(self, manager, redis_mock):
        await manager.initialize(["light.wohnzimmer", "switch.stehlampe:onoff", ""])
        assert manager.tracker.tracked_keys == [KEY, OTHER]
        assert json.loads(redis_mock._store[KEY_TRACKED]) == [str(KEY), str(OTHER)]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_saved_list_wins_over_config(self, manager, redis_mock):
        redis_mock._store[KEY_TRACKED] = json.dumps([])
        await manager.initialize(["light.wohnzimmer"])
        assert manager.tracker.tracked_keys == []
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_restores_armed_replay(self, manager, redis_mock, ha_mock):
        await HistoryStore(redis_mock).merge_events(KEY, _evening_history(), now_ms=_ms(NOW))
        redis_mock._store[KEY_TRACKED] = json.dumps([str(KEY)])
        redis_mock._store[KEY_REPLAY_ARMED] = "1"
        ha_mock.read_value.return_value = False

        await manager.initialize()
        restart = manager.tasks._tasks.get("restart_sync")
        assert restart is not None
        await restart

        assert manager.replay_active
        assert manager.history.count(KEY) == 2
        ha_mock.write_value.assert_awaited_once_with(KEY, True)
        assert manager.scheduler.scheduled(KEY) is not None
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_restore_ignores_history_older_than_retention(self, manager, redis_mock, ha_mock):
        stale = NOW - timedelta(days=20)
        events = [_at(stale, 19, 30, True), _at(stale, 23, 15, False)]
        await HistoryStore(redis_mock).merge_events(KEY, events, now_ms=_ms(stale))
        redis_mock._store[KEY_TRACKED] = json.dumps([str(KEY)])
        redis_mock._store[KEY_REPLAY_ARMED] = "1"

        await manager.initialize()
        await manager.tasks._tasks["restart_sync"]

        assert manager.history.count(KEY) == 0
        assert manager.scheduler.scheduled(KEY) is None
        ha_mock.write_value.assert_not_awaited()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_restores_test_mode(self, manager, redis_mock):
        redis_mock._store[KEY_TEST_MODE] = "1"
        await manager.initialize()
        assert manager.test_mode
        assert not manager.replay_active
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_device_does_not_block_others(self, manager, redis_mock, listener_mock, ha_mock):
        redis_mock._store[KEY_TRACKED] = json.dumps([str(KEY), str(OTHER)])

        async def _subscribe(key, callback, timeout=0.0):
            if key == KEY:
                raise SubscriptionError("nicht verbunden")
            return "handle-2"

        listener_mock.subscribe.side_effect = _subscribe
        ha_mock.read_value.side_effect = DeviceUnavailable("unavailable")

        await manager.initialize()

        assert manager.tracker.tracked_keys == [OTHER]
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_status(self, manager):
        await _tracked_with_history(manager)
        await manager.enable_replay()
        status = manager.status()
        assert status["replay_active"] is True
        assert status["devices"][0]["events"] == 2
        assert status["devices"][0]["next_replay"]["value"] is False
        assert status["last_sync"] == {str(KEY): "synced"}
        await manager.shutdown()

    def test_recent_logs_come_from_ring_buffer(self, manager):
        assert manager.recent_logs() == get_recent_logs()
