"""Configuration helpers for the Reveille scheduling daemon."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Literal

from reveille.datetime_utils import detect_timezone
from reveille.utils import parse_bool, parse_float, parse_int

AlarmBridgeKind = Literal["local", "mqtt"]

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_FIRE_TOLERANCE_SECONDS = 60.0
DEFAULT_POSITION_INTERVAL_SECONDS = 0.1
DEFAULT_FADE_STEPS = 50
DEFAULT_FADE_FLOOR = 0.1
DEFAULT_REMOTE_TIMEOUT_SECONDS = 3.0


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class HomeAssistantConfig:
    base_url: str | None
    token: str | None
    verify_ssl: bool

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.token)


@dataclass(frozen=True)
class PlaybackConfig:
    position_interval: float
    fade_steps: int
    fade_floor: float
    remote_timeout: float
    media_base_url: str | None


@dataclass(frozen=True)
class ReveilleConfig:
    hostname: str
    data_dir: Path
    poll_interval: float
    fire_tolerance: float
    timezone: tzinfo
    alarm_bridge: AlarmBridgeKind
    playback: PlaybackConfig
    mqtt: MqttConfig
    home_assistant: HomeAssistantConfig

    @property
    def media_dir(self) -> Path:
        return self.data_dir / "media"

    @property
    def store_dir(self) -> Path:
        return self.data_dir / "store"

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> ReveilleConfig:
        source = env if env is not None else os.environ
        hostname = source.get("REVEILLE_HOSTNAME") or socket.gethostname()

        data_dir_value = _strip_or_none(source.get("REVEILLE_DATA_DIR"))
        data_dir = Path(data_dir_value).expanduser() if data_dir_value else Path.home() / ".local/share/reveille"

        poll_interval = max(1.0, parse_float(source.get("REVEILLE_POLL_INTERVAL_SECONDS"), DEFAULT_POLL_INTERVAL_SECONDS))
        fire_tolerance = max(
            1.0, parse_float(source.get("REVEILLE_FIRE_TOLERANCE_SECONDS"), DEFAULT_FIRE_TOLERANCE_SECONDS)
        )

        media_base_url = _strip_or_none(source.get("REVEILLE_MEDIA_BASE_URL"))
        if media_base_url:
            media_base_url = media_base_url.rstrip("/")
        playback = PlaybackConfig(
            position_interval=max(
                0.01, parse_float(source.get("REVEILLE_POSITION_INTERVAL_SECONDS"), DEFAULT_POSITION_INTERVAL_SECONDS)
            ),
            fade_steps=max(1, parse_int(source.get("REVEILLE_FADE_STEPS"), DEFAULT_FADE_STEPS)),
            fade_floor=min(1.0, max(0.0, parse_float(source.get("REVEILLE_FADE_FLOOR"), DEFAULT_FADE_FLOOR))),
            remote_timeout=max(
                0.1, parse_float(source.get("REVEILLE_REMOTE_TIMEOUT_SECONDS"), DEFAULT_REMOTE_TIMEOUT_SECONDS)
            ),
            media_base_url=media_base_url,
        )

        topic_base = source.get("REVEILLE_TOPIC_BASE") or f"reveille/{hostname}"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        ha_base_url = source.get("HOME_ASSISTANT_BASE_URL")
        if ha_base_url:
            ha_base_url = ha_base_url.rstrip("/")
        home_assistant = HomeAssistantConfig(
            base_url=ha_base_url or None,
            token=source.get("HOME_ASSISTANT_TOKEN") or source.get("HOME_ASSISTANT_LONG_LIVED_TOKEN"),
            verify_ssl=parse_bool(source.get("HOME_ASSISTANT_VERIFY_SSL"), True),
        )

        bridge_value = (source.get("REVEILLE_ALARM_BRIDGE") or "").strip().lower()
        alarm_bridge: AlarmBridgeKind
        if bridge_value in {"local", "mqtt"}:
            alarm_bridge = bridge_value  # type: ignore[assignment]
        else:
            alarm_bridge = "mqtt" if mqtt.host else "local"

        timezone = detect_timezone(source.get("REVEILLE_TIMEZONE"), source.get("TZ"))

        return ReveilleConfig(
            hostname=hostname,
            data_dir=data_dir,
            poll_interval=poll_interval,
            fire_tolerance=fire_tolerance,
            timezone=timezone,
            alarm_bridge=alarm_bridge,
            playback=playback,
            mqtt=mqtt,
            home_assistant=home_assistant,
        )
