"""Audio scheduling service: media catalog, schedules, the poll loop, and playback."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any
from uuid import uuid4

from reveille import audio as reveille_audio
from reveille.blob_store import JsonDirectoryStore, KeyValueStore
from reveille.datetime_utils import local_now, serialize_dt
from reveille.media_library import ManagedAssetStorage, MediaAsset, MediaRegistry

from .alarm_bridge import AlarmBridge, LocalAlarmBridge
from .config import ReveilleConfig
from .home_assistant import HomeAssistantClient
from .models import (
    DEFAULT_FADE_SECONDS,
    LocalBluetooth,
    LocalDefault,
    OutputTarget,
    ScheduleRecord,
    normalize_recurrence,
)
from .outputs import OutputResolver, RemoteOutputDirectory
from .playback import PlaybackEngine, PlaybackEventCallback, PlaybackSession
from .schedule_store import ListFilter, ScheduleStore, ScheduleValidationError
from .scheduler import PollScheduler

StateCallback = Callable[[dict[str, Any]], None]

LOGGER = logging.getLogger("reveille.service")


class AudioScheduleService:
    """Public entry point for hosts (daemon, UI) driving scheduled audio."""

    def __init__(
        self,
        *,
        registry: MediaRegistry,
        store: ScheduleStore,
        resolver: OutputResolver,
        bridge: AlarmBridge | None = None,
        zone: tzinfo | None = None,
        poll_interval: float = 30.0,
        fire_tolerance: float = 60.0,
        position_interval: float = 0.1,
        fade_steps: int = 50,
        fade_floor: float = 0.1,
        clock: Callable[[], float] | None = None,
        now: Callable[[], datetime] | None = None,
        on_state_changed: StateCallback | None = None,
        on_playback_event: PlaybackEventCallback | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self._resolver = resolver
        self._bridge = bridge
        self._now = now or local_now
        self._state_cb = on_state_changed
        self._event_cb = on_playback_event
        self._lock = asyncio.Lock()
        self._started = False
        self.engine = PlaybackEngine(
            resolver,
            position_interval=position_interval,
            fade_steps=fade_steps,
            fade_floor=fade_floor,
            clock=clock,
            on_event=self._handle_playback_event,
        )
        self.scheduler = PollScheduler(
            store,
            self._fire_record,
            bridge=bridge,
            alarm_payload=self.alarm_payload,
            interval=poll_interval,
            tolerance=fire_tolerance,
            zone=zone,
            now=now,
        )
        if bridge is not None:
            bridge.set_fire_callback(self.handle_alarm_fire)

    @classmethod
    def from_config(
        cls,
        config: ReveilleConfig,
        *,
        kv_store: KeyValueStore | None = None,
        ha_client: HomeAssistantClient | None = None,
        bridge: AlarmBridge | None = None,
        on_state_changed: StateCallback | None = None,
        on_playback_event: PlaybackEventCallback | None = None,
    ) -> AudioScheduleService:
        kv = kv_store or JsonDirectoryStore(config.store_dir)
        storage = ManagedAssetStorage(config.media_dir)
        directory = RemoteOutputDirectory(ha_client, timeout=config.playback.remote_timeout)
        return cls(
            registry=MediaRegistry(kv_store=kv, storage=storage),
            store=ScheduleStore(kv),
            resolver=OutputResolver(directory, media_base_url=config.playback.media_base_url),
            bridge=bridge or LocalAlarmBridge(),
            zone=config.timezone,
            poll_interval=config.poll_interval,
            fire_tolerance=config.fire_tolerance,
            position_interval=config.playback.position_interval,
            fade_steps=config.playback.fade_steps,
            fade_floor=config.playback.fade_floor,
            on_state_changed=on_state_changed,
            on_playback_event=on_playback_event,
        )

    async def start(self) -> None:
        if self._started:
            return
        self.registry.storage.ensure_root()
        self.registry.load()
        records = self.store.load()
        if self._bridge is not None:
            await self._bridge.start()
        for record in records:
            if record.active:
                await self.scheduler.arm(record)
        await self.scheduler.start()
        self._started = True
        LOGGER.info("[service] Started with %d assets and %d schedules", len(self.registry.list_assets()), len(records))
        await self._publish_state()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.engine.shutdown()
        if self._bridge is not None:
            await self._bridge.close()
        self._started = False

    # Media catalog

    async def import_asset(self, source: Path, *, name: str | None = None) -> MediaAsset | None:
        asset = await self.registry.import_asset(source, name=name)
        if asset:
            await self._publish_state()
        return asset

    async def delete_asset(self, asset_id: str) -> bool:
        async with self._lock:
            if self.registry.get(asset_id) is None:
                return False
            session = self.engine.session
            if session is not None and session.asset.asset_id == asset_id:
                await self.engine.stop()
            for record in self.store.remove_for_asset(asset_id):
                await self.scheduler.disarm(record.record_id)
            self.registry.delete(asset_id)
        LOGGER.info("[service] Deleted asset %s", asset_id)
        await self._publish_state()
        return True

    def list_assets(self) -> list[MediaAsset]:
        return self.registry.list_assets()

    def _scheduled_asset_ids(self) -> set[str]:
        return {record.asset_id for record in self.store.list("active")}

    def ready_assets(self) -> list[MediaAsset]:
        """Assets whose file is present and that have no active schedule."""
        scheduled = self._scheduled_asset_ids()
        return [
            asset
            for asset in self.registry.list_assets()
            if asset.asset_id not in scheduled and self.registry.is_ready_to_play(asset)
        ]

    def scheduled_assets(self) -> list[MediaAsset]:
        scheduled = self._scheduled_asset_ids()
        return [asset for asset in self.registry.list_assets() if asset.asset_id in scheduled]

    def storage_summary(self) -> dict[str, Any]:
        return {
            "total_bytes": self.registry.total_bytes(),
            "formatted": self.registry.formatted_total_storage(),
            "asset_count": len(self.registry.list_assets()),
        }

    # Schedules

    async def schedule(
        self,
        asset_id: str,
        fire_at: datetime,
        *,
        target: OutputTarget | None = None,
        recurrence: str = "none",
        fade_enabled: bool = True,
        fade_seconds: float = DEFAULT_FADE_SECONDS,
        label: str | None = None,
    ) -> ScheduleRecord:
        if self.registry.get(asset_id) is None:
            raise ScheduleValidationError(f"Unknown asset {asset_id}")
        try:
            rule = normalize_recurrence(recurrence)
        except ValueError as exc:
            raise ScheduleValidationError(str(exc)) from exc
        record = ScheduleRecord(
            record_id=uuid4().hex,
            asset_id=asset_id,
            fire_at=serialize_dt(fire_at),
            target=target or LocalDefault(),
            recurrence=rule,
            fade_enabled=fade_enabled,
            fade_seconds=float(fade_seconds),
            label=label,
        )
        async with self._lock:
            created = self.store.create(record)
            await self.scheduler.arm(created)
        self.scheduler.request_check()
        await self._publish_state()
        return created

    async def reschedule(
        self,
        record_id: str,
        *,
        fire_at: datetime | None = None,
        target: OutputTarget | None = None,
        recurrence: str | None = None,
        fade_enabled: bool | None = None,
        fade_seconds: float | None = None,
        label: str | None = None,
    ) -> ScheduleRecord:
        """Edit a record; unspecified fields keep their stored values."""
        existing = self.store.get(record_id)
        if existing is None:
            raise ScheduleValidationError(f"Unknown schedule {record_id}")
        changes: dict[str, Any] = {}
        if fire_at is not None:
            changes["fire_at"] = serialize_dt(fire_at)
        if target is not None:
            changes["target"] = target
        if recurrence is not None:
            try:
                changes["recurrence"] = normalize_recurrence(recurrence)
            except ValueError as exc:
                raise ScheduleValidationError(str(exc)) from exc
        if fade_enabled is not None:
            changes["fade_enabled"] = fade_enabled
        if fade_seconds is not None:
            changes["fade_seconds"] = float(fade_seconds)
        if label is not None:
            changes["label"] = label
        updated = replace(existing, **changes)
        if updated.target is None:
            updated.target = LocalDefault()
        async with self._lock:
            saved = self.store.update(updated)
            await self.scheduler.disarm(record_id)
            await self.scheduler.arm(saved)
        self.scheduler.request_check()
        await self._publish_state()
        return saved

    async def cancel(self, record_id: str) -> bool:
        async with self._lock:
            record = self.store.cancel(record_id)
            if record is None:
                return False
            await self.scheduler.disarm(record_id)
        await self._publish_state()
        return True

    def list_schedules(self, which: ListFilter = "all") -> list[ScheduleRecord]:
        return self.store.list(which)

    def time_until_play(self, record_id: str) -> float | None:
        record = self.store.get(record_id)
        if record is None or not record.active:
            return None
        return record.time_until_fire(self._now())

    # Playback

    async def play(
        self,
        asset_id: str,
        *,
        target: OutputTarget | None = None,
        fade_enabled: bool = False,
        fade_seconds: float = DEFAULT_FADE_SECONDS,
    ) -> PlaybackSession | None:
        asset = self.registry.get(asset_id)
        if asset is None:
            LOGGER.warning("[service] Cannot play unknown asset %s", asset_id)
            return None
        return await self.engine.start(
            asset,
            self.registry.path_for(asset),
            target or LocalDefault(),
            fade_enabled=fade_enabled,
            fade_seconds=fade_seconds,
        )

    async def pause(self) -> bool:
        return await self.engine.pause()

    async def resume(self) -> bool:
        return await self.engine.resume()

    async def stop_playback(self) -> bool:
        return await self.engine.stop()

    async def seek(self, position: float) -> float | None:
        return await self.engine.seek(position)

    async def list_output_targets(self) -> list[OutputTarget]:
        targets: list[OutputTarget] = [LocalDefault()]
        if await asyncio.to_thread(reveille_audio.find_bluetooth_sink):
            targets.append(LocalBluetooth())
        targets.extend(await self._resolver.directory.list_reachable())
        return targets

    # Alarm bridge

    def alarm_payload(self, record: ScheduleRecord) -> dict[str, Any]:
        asset = self.registry.get(record.asset_id)
        return {
            "record_id": record.record_id,
            "asset_id": record.asset_id,
            "asset_name": asset.name if asset else None,
            "target": record.target.display_name if record.target else None,
        }

    async def handle_alarm_fire(self, payload: dict[str, Any]) -> None:
        LOGGER.info("[service] Alarm delivered for %s", payload.get("record_id"))
        self.scheduler.request_check()

    async def _fire_record(self, record: ScheduleRecord) -> None:
        asset = self.registry.get(record.asset_id)
        if asset is None:
            LOGGER.warning("[service] Schedule %s references missing asset %s", record.record_id, record.asset_id)
            return
        await self.engine.start(
            asset,
            self.registry.path_for(asset),
            record.target or LocalDefault(),
            fade_enabled=record.fade_enabled,
            fade_seconds=record.fade_seconds,
        )
        await self._publish_state()

    def _handle_playback_event(self, event: dict[str, Any]) -> None:
        if not self._event_cb:
            return
        try:
            self._event_cb(event)
        except Exception:
            LOGGER.exception("[service] Playback event callback failed")

    def snapshot(self) -> dict[str, Any]:
        now = self._now()
        scheduled = self._scheduled_asset_ids()
        assets = []
        for asset in self.registry.list_assets():
            entry = asset.to_public_dict()
            entry["ready"] = self.registry.is_ready_to_play(asset)
            entry["scheduled"] = asset.asset_id in scheduled
            assets.append(entry)
        schedules = [record.to_public_dict(now) for record in self.store.list("all")]
        return {
            "assets": assets,
            "schedules": schedules,
            "storage": self.storage_summary(),
            "playback": self.engine.snapshot(),
            "updated_at": serialize_dt(now),
        }

    async def _publish_state(self) -> None:
        if not self._state_cb:
            return
        try:
            self._state_cb(self.snapshot())
        except Exception:
            LOGGER.exception("[service] State callback failed")
