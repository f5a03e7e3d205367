#!/usr/bin/env python3
"""Reveille scheduled-audio daemon."""

from __future__ import annotations

import argparse
import asyncio
import concurrent.futures
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Any

from reveille.datetime_utils import deserialize_dt
from reveille.scheduling.alarm_bridge import AlarmBridge, LocalAlarmBridge, MqttAlarmBridge
from reveille.scheduling.config import ReveilleConfig
from reveille.scheduling.home_assistant import HomeAssistantAuthError, HomeAssistantClient, HomeAssistantError
from reveille.scheduling.models import OutputTarget, target_from_dict, target_to_dict
from reveille.scheduling.mqtt import ReveilleMqtt
from reveille.scheduling.schedule_store import ScheduleValidationError
from reveille.scheduling.service import AudioScheduleService

LOGGER = logging.getLogger("reveille-daemon")


def _log_command_failure(future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Command handling failed", exc_info=exc)


class ReveilleDaemon:
    def __init__(self, config: ReveilleConfig) -> None:
        self.config = config
        self.mqtt = ReveilleMqtt(config.mqtt)
        base = config.mqtt.topic_base
        self._state_topic = f"{base}/state"
        self._event_topic = f"{base}/playback/event"
        self._command_topic = f"{base}/command"
        self._targets_topic = f"{base}/targets"
        self._loop: asyncio.AbstractEventLoop | None = None
        self.ha_client: HomeAssistantClient | None = None
        if config.home_assistant.enabled:
            try:
                self.ha_client = HomeAssistantClient(config.home_assistant)
            except ValueError as exc:
                LOGGER.warning("Home Assistant disabled: %s", exc)
        bridge: AlarmBridge
        if config.alarm_bridge == "mqtt":
            bridge = MqttAlarmBridge(self.mqtt, base)
        else:
            bridge = LocalAlarmBridge()
        self.service = AudioScheduleService.from_config(
            config,
            ha_client=self.ha_client,
            bridge=bridge,
            on_state_changed=self._handle_state_changed,
            on_playback_event=self._handle_playback_event,
        )

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.mqtt.connect()
        if self.mqtt.is_connected() or self.config.mqtt.host:
            try:
                self.mqtt.subscribe(self._command_topic, self._handle_command_message)
            except RuntimeError:
                LOGGER.warning("MQTT unavailable; command topic disabled")
        await self._check_home_assistant()
        await self.service.start()
        LOGGER.info("Reveille running (data dir %s, bridge %s)", self.config.data_dir, self.config.alarm_bridge)

    async def _check_home_assistant(self) -> None:
        """Log a rejected token at startup instead of at the first remote playback."""
        if not self.ha_client:
            return
        try:
            await self.ha_client.get_info()
        except HomeAssistantAuthError:
            LOGGER.error("Home Assistant rejected the access token; remote outputs will fall back to local")
        except HomeAssistantError as exc:
            LOGGER.warning("Home Assistant not reachable yet: %s", exc)
        else:
            LOGGER.info("Home Assistant reachable at %s", self.config.home_assistant.base_url)

    async def shutdown(self) -> None:
        await self.service.stop()
        if self.ha_client:
            await self.ha_client.close()
        self.mqtt.disconnect()

    def _publish(self, topic: str, payload: dict[str, Any] | list[Any], *, retain: bool = False) -> None:
        try:
            message = json.dumps(payload)
        except TypeError:
            LOGGER.debug("Unable to serialize payload for %s: %s", topic, payload)
            return
        self.mqtt.publish(topic, message, retain=retain)

    def _handle_state_changed(self, snapshot: dict[str, Any]) -> None:
        self._publish(self._state_topic, snapshot, retain=True)

    def _handle_playback_event(self, event: dict[str, Any]) -> None:
        self._publish(self._event_topic, event)

    def _handle_command_message(self, payload: str) -> None:
        if not self._loop:
            return
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            LOGGER.debug("Ignoring malformed command: %s", payload)
            return
        future = asyncio.run_coroutine_threadsafe(self._process_command(data), self._loop)
        future.add_done_callback(_log_command_failure)

    @staticmethod
    def _target_from_payload(payload: dict[str, Any]) -> OutputTarget | None:
        raw = payload.get("target")
        return target_from_dict(raw) if isinstance(raw, dict) else None

    async def _process_command(self, payload: dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            return
        action = str(payload.get("action") or "").lower()
        if not action:
            return
        service = self.service
        try:
            if action == "import":
                source = payload.get("path")
                if not source:
                    raise ValueError("path is required to import audio")
                await service.import_asset(Path(str(source)).expanduser(), name=payload.get("name"))
            elif action == "delete_asset":
                await service.delete_asset(str(payload.get("asset_id") or ""))
            elif action == "schedule":
                fire_at = deserialize_dt(payload.get("fire_at"))
                if fire_at is None:
                    raise ValueError("fire_at must be an ISO-8601 timestamp")
                await service.schedule(
                    str(payload.get("asset_id") or ""),
                    fire_at,
                    target=self._target_from_payload(payload),
                    recurrence=str(payload.get("recurrence") or "none"),
                    fade_enabled=bool(payload.get("fade_enabled", True)),
                    fade_seconds=float(payload.get("fade_seconds") or 5.0),
                    label=payload.get("label"),
                )
            elif action == "reschedule":
                await service.reschedule(
                    str(payload.get("record_id") or ""),
                    fire_at=deserialize_dt(payload.get("fire_at")),
                    target=self._target_from_payload(payload),
                    recurrence=payload.get("recurrence"),
                    fade_enabled=payload.get("fade_enabled"),
                    fade_seconds=payload.get("fade_seconds"),
                    label=payload.get("label"),
                )
            elif action == "cancel":
                await service.cancel(str(payload.get("record_id") or ""))
            elif action == "play":
                await service.play(
                    str(payload.get("asset_id") or ""),
                    target=self._target_from_payload(payload),
                    fade_enabled=bool(payload.get("fade_enabled", False)),
                )
            elif action == "pause":
                await service.pause()
            elif action == "resume":
                await service.resume()
            elif action == "stop":
                await service.stop_playback()
            elif action == "seek":
                await service.seek(float(payload.get("position") or 0.0))
            elif action == "list_targets":
                targets = await service.list_output_targets()
                self._publish(self._targets_topic, [target_to_dict(target) for target in targets])
            else:
                LOGGER.debug("Unknown command action: %s", action)
        except ScheduleValidationError as exc:
            LOGGER.warning("Rejected %s command: %s", action, exc)
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Invalid %s command: %s", action, exc)


async def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = ReveilleConfig.from_env()
    daemon = ReveilleDaemon(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _handle_signal(signum: int) -> None:
        LOGGER.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    run_task = asyncio.create_task(daemon.run())
    await stop_event.wait()
    await daemon.shutdown()
    run_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await run_task


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
