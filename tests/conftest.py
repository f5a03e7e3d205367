"""Shared test fixtures and configuration for the Reveille test suite.

This module provides reusable fixtures for common test scenarios including:
- Home Assistant client mocking
- MQTT client mocking
- Fake playback outputs and a controllable monotonic clock
- In-memory stores and media registries
"""

from __future__ import annotations

import logging
import wave
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock
from zoneinfo import ZoneInfo

import httpx
import paho.mqtt.client as mqtt
import pytest
from reveille.blob_store import MemoryKeyValueStore
from reveille.media_library import ManagedAssetStorage, MediaAsset, MediaRegistry
from reveille.scheduling.config import HomeAssistantConfig, MqttConfig
from reveille.scheduling.models import RemoteAccessory

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


@pytest.fixture
def mock_logger():
    return Mock(spec=logging.Logger)


# ============================================================================
# Time Fixtures
# ============================================================================


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeWallClock:
    """Wall-clock ``now`` callable that moves together with a FakeClock."""

    def __init__(self, start: datetime, clock: FakeClock | None = None) -> None:
        self.current = start
        self.clock = clock

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def wall_clock(fake_clock):
    start = datetime(2026, 3, 4, 7, 0, tzinfo=ZoneInfo("America/New_York"))
    return FakeWallClock(start, fake_clock)


# ============================================================================
# Playback Fixtures
# ============================================================================


class FakeOutput:
    """Records every command the playback engine sends."""

    def __init__(
        self,
        name: str = "This device",
        *,
        is_remote: bool = False,
        fail_start: Exception | None = None,
    ) -> None:
        self.name = name
        self.is_remote = is_remote
        self.fail_start = fail_start
        self.status = "running"
        self.volumes: list[float] = []
        self.calls: list[tuple[Any, ...]] = []
        self.stopped = False

    async def start(self, offset: float = 0.0, *, volume: float = 1.0) -> None:
        self.calls.append(("start", offset))
        if self.fail_start is not None:
            raise self.fail_start
        self.volumes.append(volume)

    async def pause(self) -> None:
        self.calls.append(("pause",))

    async def resume(self) -> None:
        self.calls.append(("resume",))

    async def seek(self, position: float) -> None:
        self.calls.append(("seek", position))

    async def set_volume(self, level: float) -> None:
        self.volumes.append(level)

    async def poll(self) -> str:
        return self.status

    async def stop(self) -> None:
        self.stopped = True
        self.calls.append(("stop",))


class FakeResolver:
    """Hands out queued FakeOutputs (or fresh ones) in place of real outputs."""

    def __init__(self) -> None:
        self.queue: list[FakeOutput] = []
        self.outputs: list[FakeOutput] = []
        self.resolved_targets: list[Any] = []
        self.directory = Mock()
        self.directory.list_reachable = AsyncMock(return_value=[])

    async def resolve(self, target: Any, asset: MediaAsset, path: Path) -> FakeOutput:
        self.resolved_targets.append(target)
        output = self.queue.pop(0) if self.queue else FakeOutput()
        self.outputs.append(output)
        return output

    def local_output(self, target: Any, path: Path) -> FakeOutput:
        output = FakeOutput("This device")
        self.outputs.append(output)
        return output


@pytest.fixture
def fake_resolver():
    return FakeResolver()


@pytest.fixture
def make_output():
    def _create(**kwargs: Any) -> FakeOutput:
        return FakeOutput(**kwargs)

    return _create


@pytest.fixture
def make_asset():
    """Factory for MediaAsset values that are not backed by a file."""

    def _create(name: str = "Alarm.mp3", duration: float = 180.0, **overrides: Any) -> MediaAsset:
        data = {
            "asset_id": overrides.pop("asset_id", name.lower().replace(".", "-")),
            "name": name,
            "storage_ref": overrides.pop("storage_ref", "alarm.mp3"),
            "duration": duration,
            "byte_size": overrides.pop("byte_size", 2_880_000),
            "created_at": overrides.pop("created_at", "2026-03-01T08:00:00-05:00"),
        }
        data.update(overrides)
        return MediaAsset(**data)

    return _create


@pytest.fixture
def remote_target():
    return RemoteAccessory(remote_kind="home_automation", handle="media_player.kitchen", name="Kitchen Speaker")


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def media_storage(tmp_path):
    return ManagedAssetStorage(tmp_path / "media")


@pytest.fixture
def registry(kv_store, media_storage):
    return MediaRegistry(kv_store=kv_store, storage=media_storage)


@pytest.fixture
def make_wav(tmp_path):
    """Write a silent mono 8 kHz WAV of the requested length and return its path."""

    def _create(name: str = "tone.wav", seconds: float = 2.0, rate: int = 8000) -> Path:
        path = tmp_path / name
        with wave.open(str(path), "wb") as wav_file:
            wav_file.setnchannels(1)
            wav_file.setsampwidth(2)
            wav_file.setframerate(rate)
            wav_file.writeframes(b"\x00\x00" * int(seconds * rate))
        return path

    return _create


# ============================================================================
# Home Assistant Fixtures
# ============================================================================


@pytest.fixture
def ha_config():
    """Create a basic Home Assistant configuration for testing."""
    return HomeAssistantConfig(
        base_url="http://homeassistant.local:8123",
        token="test_token_123",
        verify_ssl=True,
    )


@pytest.fixture
def mock_ha_client():
    """AsyncMock standing in for HomeAssistantClient."""
    client = AsyncMock()
    client.get_state = AsyncMock(return_value={"entity_id": "media_player.kitchen", "state": "idle"})
    client.list_entities = AsyncMock(return_value=[])
    client.play_media = AsyncMock()
    client.media_command = AsyncMock()
    return client


@pytest.fixture
def mock_ha_response():
    """Create a factory for mock Home Assistant API responses."""

    def _create_response(
        status_code: int = 200,
        json_data: dict[str, Any] | list[Any] | None = None,
        text: str = "",
        content_type: str = "application/json",
    ) -> Mock:
        response = Mock(spec=httpx.Response)
        response.status_code = status_code
        response.json = Mock(return_value=json_data if json_data is not None else {})
        response.text = text
        response.headers = {"content-type": content_type}
        return response

    return _create_response


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        topic_base="reveille/test-device",
        username=None,
        password=None,
        tls_enabled=False,
        ca_cert=None,
        cert=None,
        key=None,
    )


@pytest.fixture
def mock_mqtt_client():
    """Create a mock paho MQTT client."""
    client = Mock(spec=mqtt.Client)
    message_info = Mock(spec=mqtt.MQTTMessageInfo)
    message_info.rc = mqtt.MQTT_ERR_SUCCESS
    message_info.mid = 1
    client.publish = Mock(return_value=message_info)
    client.subscribe = Mock(return_value=(mqtt.MQTT_ERR_SUCCESS, 1))
    client.message_callback_add = Mock()
    client.loop_start = Mock()
    client.loop_stop = Mock()
    client.is_connected = Mock(return_value=True)
    return client
