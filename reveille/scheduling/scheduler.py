"""
Poll-driven firing of schedule records

The scheduler wakes every ``interval`` seconds (and immediately whenever a
check is requested) and fires any active record whose fire time lies within
``tolerance`` seconds of now. Before playback starts the record is updated:

- one-shot records are deactivated
- recurring records are advanced to their next occurrence and re-armed

so a second check right after a fire never plays the same occurrence twice.
Records that are overdue by more than the tolerance (for example after the
host slept through them) are not played; one-shot records are marked missed
and recurring records roll forward to the first occurrence after now.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from typing import Any

from .alarm_bridge import AlarmBridge
from .models import ScheduleRecord
from .recurrence import next_occurrence, next_occurrence_after
from .schedule_store import ScheduleStore

FireCallback = Callable[[ScheduleRecord], Awaitable[None]]
PayloadBuilder = Callable[[ScheduleRecord], dict[str, Any]]

LOGGER = logging.getLogger("reveille.scheduler")


def _now() -> datetime:
    return datetime.now().astimezone()


class PollScheduler:
    def __init__(
        self,
        store: ScheduleStore,
        on_fire: FireCallback,
        *,
        bridge: AlarmBridge | None = None,
        alarm_payload: PayloadBuilder | None = None,
        interval: float = 30.0,
        tolerance: float = 60.0,
        zone: tzinfo | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._on_fire = on_fire
        self._bridge = bridge
        self._alarm_payload = alarm_payload
        self._interval = interval
        self._tolerance = tolerance
        self._zone = zone
        self._now_fn = now
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _current_time(self) -> datetime:
        return self._now_fn() if self._now_fn else _now()

    async def start(self) -> None:
        if self.running:
            return
        self._wake.set()
        self._task = asyncio.create_task(self._run())
        LOGGER.info("[scheduler] Polling every %.0fs (tolerance %.0fs)", self._interval, self._tolerance)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def request_check(self) -> None:
        """Ask for a check as soon as the current one (if any) finishes."""
        self._wake.set()

    async def _run(self) -> None:
        while True:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval)
            self._wake.clear()
            try:
                await self.check_due()
            except Exception:
                LOGGER.exception("[scheduler] Schedule check failed")

    async def check_due(self) -> list[ScheduleRecord]:
        """Fire every due record; returns the records that were fired."""
        async with self._lock:
            now = self._current_time()
            fired: list[ScheduleRecord] = []
            for candidate in self._store.list("active"):
                # Re-read: an earlier iteration awaited, so the record may have changed.
                record = self._store.get(candidate.record_id)
                if record is None or not record.active:
                    continue
                fire = record.fire_dt()
                if fire is None:
                    continue
                delta = (fire - now).total_seconds()
                if delta > self._tolerance:
                    continue
                if delta < -self._tolerance:
                    await self._handle_missed(record, fire, now)
                    continue
                await self._consume(record, fire)
                fired.append(record)
            started: list[ScheduleRecord] = []
            for record in fired:
                # A cancel may land while an earlier record in this batch is starting.
                current = self._store.get(record.record_id)
                if current is None or (current.target is None and not current.active):
                    LOGGER.info("[scheduler] %s was cancelled before it fired; skipping", record.record_id)
                    continue
                LOGGER.info("[scheduler] Firing %s (asset %s)", record.record_id, record.asset_id)
                started.append(record)
                try:
                    await self._on_fire(record)
                except Exception:
                    LOGGER.exception("[scheduler] Playback for %s failed to start", record.record_id)
            return started

    async def _consume(self, record: ScheduleRecord, fire: datetime) -> None:
        upcoming = next_occurrence(fire, record.recurrence, zone=self._zone)
        if upcoming is None:
            self._store.deactivate(record.record_id)
            await self.disarm(record.record_id)
            return
        advanced = self._store.advance(record.record_id, upcoming)
        await self.disarm(record.record_id)
        if advanced:
            await self.arm(advanced)
            LOGGER.debug("[scheduler] %s next fires at %s", record.record_id, advanced.fire_at)

    async def _handle_missed(self, record: ScheduleRecord, fire: datetime, now: datetime) -> None:
        if record.recurrence == "none":
            self._store.deactivate(record.record_id)
            await self.disarm(record.record_id)
            LOGGER.warning("[scheduler] Missed one-time schedule %s (was due %s)", record.record_id, record.fire_at)
            return
        upcoming = next_occurrence_after(fire, record.recurrence, now, zone=self._zone)
        if upcoming is None:
            self._store.deactivate(record.record_id)
            await self.disarm(record.record_id)
            return
        advanced = self._store.advance(record.record_id, upcoming)
        await self.disarm(record.record_id)
        LOGGER.warning(
            "[scheduler] Missed %s occurrence of %s at %s; rolled forward to %s",
            record.recurrence,
            record.record_id,
            record.fire_at,
            advanced.fire_at if advanced else None,
        )
        if advanced:
            await self.arm(advanced)

    async def arm(self, record: ScheduleRecord) -> None:
        fire = record.fire_dt()
        if self._bridge is None or fire is None or not record.active:
            return
        payload = self._alarm_payload(record) if self._alarm_payload else {"record_id": record.record_id}
        try:
            await self._bridge.arm(record.record_id, fire, payload)
        except Exception:
            LOGGER.warning("[scheduler] Failed to arm alarm for %s", record.record_id, exc_info=True)

    async def disarm(self, record_id: str) -> None:
        if self._bridge is None:
            return
        try:
            await self._bridge.disarm(record_id)
        except Exception:
            LOGGER.warning("[scheduler] Failed to disarm alarm for %s", record_id, exc_info=True)
