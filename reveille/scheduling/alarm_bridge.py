"""
Best-effort wake-up hints for scheduled records

An alarm bridge is told about every armed schedule so something outside the
poll loop can nudge the scheduler when a record comes due:

- LocalAlarmBridge: asyncio timers inside the running process
- MqttAlarmBridge: retained MQTT arm messages that an external host (phone,
  Home Assistant automation) turns into a notification and publishes back on
  the fire topic

Bridges never decide whether a record plays; the scheduler's own check does.
Arming failures are logged and ignored.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from reveille.datetime_utils import local_now, serialize_dt

from .mqtt import ReveilleMqtt

FireCallback = Callable[[dict[str, Any]], Awaitable[None]]

LOGGER = logging.getLogger("reveille.alarm_bridge")


class AlarmBridge(Protocol):
    def set_fire_callback(self, callback: FireCallback | None) -> None: ...

    async def start(self) -> None: ...

    async def arm(self, record_id: str, fire_at: datetime, payload: dict[str, Any]) -> None: ...

    async def disarm(self, record_id: str) -> None: ...

    async def close(self) -> None: ...


class LocalAlarmBridge:
    """In-process timers; lost when the process exits, which the poll loop tolerates."""

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        self._now = now or local_now
        self._on_fire: FireCallback | None = None
        self._timers: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    def set_fire_callback(self, callback: FireCallback | None) -> None:
        self._on_fire = callback

    @property
    def armed(self) -> list[str]:
        return sorted(self._timers)

    async def start(self) -> None:
        return None

    async def arm(self, record_id: str, fire_at: datetime, payload: dict[str, Any]) -> None:
        await self.disarm(record_id)
        delay = max(0.0, (fire_at - self._now()).total_seconds())
        task = asyncio.create_task(self._wait_and_fire(record_id, delay, dict(payload)))
        self._timers[record_id] = task
        self._track(task)
        LOGGER.debug("[alarm] Armed %s in %.0fs", record_id, delay)

    async def disarm(self, record_id: str) -> None:
        task = self._timers.pop(record_id, None)
        if task and task is not asyncio.current_task():
            task.cancel()

    async def close(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._timers.clear()

    async def _wait_and_fire(self, record_id: str, delay: float, payload: dict[str, Any]) -> None:
        await asyncio.sleep(delay)
        self._timers.pop(record_id, None)
        callback = self._on_fire
        if callback is None:
            return
        try:
            await callback(payload)
        except Exception:
            LOGGER.exception("[alarm] Fire callback failed for %s", record_id)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)

        def _cleanup(_task: asyncio.Task) -> None:
            self._tasks.discard(_task)

        task.add_done_callback(_cleanup)


class MqttAlarmBridge:
    """Publishes retained arm messages under ``<base>/alarms/<record_id>``."""

    def __init__(self, mqtt: ReveilleMqtt, topic_base: str) -> None:
        self._mqtt = mqtt
        self._topic_base = topic_base.rstrip("/")
        self._on_fire: FireCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def fire_topic(self) -> str:
        return f"{self._topic_base}/alarms/fire"

    def arm_topic(self, record_id: str) -> str:
        return f"{self._topic_base}/alarms/{record_id}"

    def set_fire_callback(self, callback: FireCallback | None) -> None:
        self._on_fire = callback

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            self._mqtt.subscribe(self.fire_topic, self._handle_fire_message)
        except RuntimeError as exc:
            LOGGER.warning("[alarm] Fire topic unavailable: %s", exc)

    async def arm(self, record_id: str, fire_at: datetime, payload: dict[str, Any]) -> None:
        message = {**payload, "record_id": record_id, "fire_at": serialize_dt(fire_at)}
        if not self._mqtt.publish(self.arm_topic(record_id), json.dumps(message), retain=True, qos=1):
            LOGGER.warning("[alarm] Failed to arm %s over MQTT", record_id)

    async def disarm(self, record_id: str) -> None:
        # An empty retained payload clears the broker's copy.
        if not self._mqtt.publish(self.arm_topic(record_id), "", retain=True, qos=1):
            LOGGER.debug("[alarm] Failed to disarm %s over MQTT", record_id)

    async def close(self) -> None:
        self._loop = None

    def _handle_fire_message(self, payload: str) -> None:
        loop = self._loop
        callback = self._on_fire
        if loop is None or callback is None:
            return
        try:
            data = json.loads(payload) if payload.strip() else {}
        except json.JSONDecodeError:
            LOGGER.debug("[alarm] Ignoring malformed fire payload: %s", payload)
            return
        if not isinstance(data, dict):
            return
        future = asyncio.run_coroutine_threadsafe(callback(data), loop)
        future.add_done_callback(_log_fire_failure)


def _log_fire_failure(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("[alarm] Fire callback failed", exc_info=exc)
