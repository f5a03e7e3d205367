"""End-to-end tests for the audio scheduling service with fake outputs and clocks."""

from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from reveille import audio as reveille_audio
from reveille.scheduling.alarm_bridge import LocalAlarmBridge
from reveille.scheduling.models import LocalBluetooth, LocalDefault, ScheduleRecord
from reveille.scheduling.schedule_store import ScheduleStore, ScheduleValidationError
from reveille.scheduling.service import AudioScheduleService

pytestmark = pytest.mark.anyio

NEW_YORK = ZoneInfo("America/New_York")


@pytest.fixture
def events():
    return []


@pytest.fixture
def states():
    return []


@pytest.fixture
def bridge(wall_clock):
    return LocalAlarmBridge(now=wall_clock)


@pytest.fixture
async def service(registry, kv_store, fake_resolver, wall_clock, fake_clock, bridge, events, states):
    store = ScheduleStore(kv_store, now=wall_clock)
    store.load()
    service = AudioScheduleService(
        registry=registry,
        store=store,
        resolver=fake_resolver,
        bridge=bridge,
        zone=NEW_YORK,
        position_interval=60.0,
        clock=fake_clock,
        now=wall_clock,
        on_state_changed=states.append,
        on_playback_event=events.append,
    )
    yield service
    await service.stop()


@pytest.fixture
def alarm(registry, media_storage, make_asset):
    media_storage.ensure_root()
    (media_storage.root / "alarm.mp3").write_bytes(b"ID3")
    return registry.add(make_asset("Alarm.mp3", duration=180.0))


class TestScheduledPlayback:
    async def test_one_shot_plays_once_then_finishes(self, service, alarm, wall_clock, events):
        fire_at = wall_clock() + timedelta(hours=1)
        record = await service.schedule(alarm.asset_id, fire_at, fade_enabled=False)
        assert service.time_until_play(record.record_id) == pytest.approx(3600)
        assert service.scheduled_assets() == [alarm]
        assert service.ready_assets() == []

        wall_clock.advance(3600 - 30)
        fired = await service.scheduler.check_due()
        assert [item.record_id for item in fired] == [record.record_id]
        assert service.store.get(record.record_id).active is False
        assert service.engine.state == "playing"
        assert service.engine.position() == 0.0
        assert service.engine.session.asset == alarm
        assert service.engine.session.volume == 1.0

        assert await service.scheduler.check_due() == []

        wall_clock.advance(185)
        await service.engine.refresh()
        assert service.engine.state == "idle"
        assert [event["reason"] for event in events] == [None, "finished"]
        assert service.ready_assets() == [alarm]

    async def test_weekday_schedule_on_friday_moves_to_monday(self, service, alarm, wall_clock):
        friday = datetime(2026, 3, 6, 7, 15, tzinfo=NEW_YORK)
        record = await service.schedule(alarm.asset_id, friday, recurrence="Weekdays", fade_enabled=False)

        wall_clock.advance((friday - wall_clock()).total_seconds())
        await service.scheduler.check_due()

        stored = service.store.get(record.record_id)
        assert stored.active is True
        upcoming = stored.fire_dt().astimezone(NEW_YORK)
        assert (upcoming.weekday(), upcoming.day, upcoming.hour, upcoming.minute) == (0, 9, 7, 15)
        assert service.engine.state == "playing"

    async def test_fire_uses_stored_target_and_fade(self, service, alarm, wall_clock, fake_resolver):
        fire_at = wall_clock() + timedelta(minutes=10)
        await service.schedule(alarm.asset_id, fire_at, target=LocalBluetooth(), fade_seconds=3.0)
        wall_clock.advance(600)
        await service.scheduler.check_due()
        assert fake_resolver.resolved_targets == [LocalBluetooth()]
        session = service.engine.session
        assert session.fade_enabled is True
        assert session.fade_seconds == 3.0

    async def test_missing_asset_at_fire_time_is_skipped(self, service, wall_clock, caplog):
        service.store.create(
            ScheduleRecord(
                record_id="orphan",
                asset_id="deleted-asset",
                fire_at=(wall_clock() + timedelta(minutes=1)).isoformat(),
                target=LocalDefault(),
            )
        )
        wall_clock.advance(60)
        await service.scheduler.check_due()
        assert service.engine.state == "idle"
        assert "references missing asset" in caplog.text

    async def test_alarm_bridge_is_armed_and_disarmed(self, service, alarm, wall_clock, bridge):
        record = await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=2))
        assert bridge.armed == [record.record_id]
        await service.cancel(record.record_id)
        assert bridge.armed == []

    async def test_alarm_payload_names_asset_and_target(self, service, alarm, wall_clock, remote_target):
        record = await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=2), target=remote_target)
        assert service.alarm_payload(record) == {
            "record_id": record.record_id,
            "asset_id": alarm.asset_id,
            "asset_name": "Alarm.mp3",
            "target": "Kitchen Speaker",
        }


class TestScheduleManagement:
    async def test_validation_errors(self, service, alarm, wall_clock):
        with pytest.raises(ScheduleValidationError, match="Unknown asset"):
            await service.schedule("missing", wall_clock() + timedelta(hours=1))
        with pytest.raises(ScheduleValidationError, match="past"):
            await service.schedule(alarm.asset_id, wall_clock() - timedelta(minutes=1))
        with pytest.raises(ScheduleValidationError, match="recurrence"):
            await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=1), recurrence="monthly")
        with pytest.raises(ScheduleValidationError, match="Fade"):
            await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=1), fade_seconds=20)
        assert service.list_schedules() == []

    async def test_reschedule_keeps_unspecified_fields(self, service, alarm, wall_clock, remote_target):
        fire_at = wall_clock() + timedelta(hours=1)
        record = await service.schedule(
            alarm.asset_id, fire_at, target=remote_target, recurrence="daily", fade_seconds=8
        )
        updated = await service.reschedule(record.record_id, fade_seconds=12)
        assert updated.fade_seconds == 12
        assert updated.fire_dt() == fire_at
        assert updated.target == remote_target
        assert updated.recurrence == "daily"

    async def test_cancel_then_reschedule_reactivates(self, service, alarm, wall_clock):
        record = await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=1), fade_seconds=9)
        assert await service.cancel(record.record_id) is True
        assert service.time_until_play(record.record_id) is None
        assert service.list_schedules("active") == []

        with pytest.raises(ScheduleValidationError, match="fire time"):
            await service.reschedule(record.record_id)

        revived = await service.reschedule(record.record_id, fire_at=wall_clock() + timedelta(hours=3))
        assert revived.active is True
        assert revived.target == LocalDefault()
        assert revived.fade_seconds == 9

    async def test_cancel_unknown(self, service):
        assert await service.cancel("nope") is False
        with pytest.raises(ScheduleValidationError):
            await service.reschedule("nope", fade_seconds=3)

    async def test_delete_asset_stops_playback_and_removes_schedules(self, service, alarm, wall_clock, bridge):
        await service.schedule(alarm.asset_id, wall_clock() + timedelta(hours=1))
        await service.play(alarm.asset_id)
        assert service.engine.state == "playing"

        assert await service.delete_asset(alarm.asset_id) is True
        assert service.engine.state == "idle"
        assert service.list_schedules("all") == []
        assert service.list_assets() == []
        assert bridge.armed == []
        assert await service.delete_asset(alarm.asset_id) is False

    async def test_state_callback_receives_snapshots(self, service, alarm, wall_clock, states):
        await service.schedule(alarm.asset_id, wall_clock() + timedelta(minutes=30), label="Wake up")
        snapshot = states[-1]
        assert snapshot["assets"][0]["scheduled"] is True
        assert snapshot["assets"][0]["ready"] is True
        assert snapshot["schedules"][0]["label"] == "Wake up"
        assert snapshot["schedules"][0]["time_until_fire"] == "30:00"
        assert snapshot["storage"]["asset_count"] == 1
        assert snapshot["playback"] == {"state": "idle", "session": None}


class TestManualPlayback:
    async def test_play_defaults_to_no_fade(self, service, alarm, fake_resolver):
        session = await service.play(alarm.asset_id)
        assert session is not None
        assert session.fade_enabled is False
        assert fake_resolver.resolved_targets == [LocalDefault()]

    async def test_transport_controls(self, service, alarm, fake_clock):
        await service.play(alarm.asset_id)
        fake_clock.advance(20)
        assert await service.pause() is True
        assert await service.seek(90) == 90
        assert await service.resume() is True
        assert service.engine.position() == pytest.approx(90)
        assert await service.stop_playback() is True
        assert service.engine.state == "idle"

    async def test_play_unknown_asset(self, service):
        assert await service.play("missing") is None

    async def test_list_output_targets(self, service, fake_resolver, remote_target, monkeypatch):
        monkeypatch.setattr(reveille_audio, "find_bluetooth_sink", lambda: "bluez_output.speaker")
        fake_resolver.directory.list_reachable.return_value = [remote_target]
        assert await service.list_output_targets() == [LocalDefault(), LocalBluetooth(), remote_target]

    async def test_list_output_targets_without_bluetooth(self, service, monkeypatch):
        monkeypatch.setattr(reveille_audio, "find_bluetooth_sink", lambda: None)
        assert await service.list_output_targets() == [LocalDefault()]


class TestLifecycle:
    async def test_start_arms_persisted_records(self, kv_store, registry, fake_resolver, wall_clock, fake_clock):
        seed = ScheduleStore(kv_store, now=wall_clock)
        seed.load()
        seed.create(
            ScheduleRecord(
                record_id="persisted",
                asset_id="asset-1",
                fire_at=(wall_clock() + timedelta(hours=4)).isoformat(),
                target=LocalDefault(),
            )
        )
        bridge = LocalAlarmBridge(now=wall_clock)
        service = AudioScheduleService(
            registry=registry,
            store=ScheduleStore(kv_store, now=wall_clock),
            resolver=fake_resolver,
            bridge=bridge,
            zone=NEW_YORK,
            clock=fake_clock,
            now=wall_clock,
        )
        await service.start()
        try:
            assert bridge.armed == ["persisted"]
            assert service.scheduler.running
        finally:
            await service.stop()
        assert not service.scheduler.running
