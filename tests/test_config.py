"""Tests for reveille.scheduling.config: environment parsing."""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from reveille.scheduling.config import (
    DEFAULT_FADE_FLOOR,
    DEFAULT_FADE_STEPS,
    DEFAULT_FIRE_TOLERANCE_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    ReveilleConfig,
    _strip_or_none,
)

_BASE_ENV: dict[str, str] = {
    "REVEILLE_HOSTNAME": "bedroom-pi",
    "REVEILLE_TIMEZONE": "America/New_York",
}


def _from_env(overrides: dict[str, str] | None = None) -> ReveilleConfig:
    env = dict(_BASE_ENV)
    if overrides:
        env.update(overrides)
    return ReveilleConfig.from_env(env)


# ===================================================================
# _strip_or_none
# ===================================================================


@pytest.mark.parametrize(("value", "expected"), [(None, None), ("", None), ("   ", None), (" x ", "x")])
def test_strip_or_none(value, expected):
    assert _strip_or_none(value) == expected


# ===================================================================
# ReveilleConfig.from_env
# ===================================================================


class TestDefaults:
    def test_scheduler_defaults(self):
        config = _from_env()
        assert config.hostname == "bedroom-pi"
        assert config.poll_interval == DEFAULT_POLL_INTERVAL_SECONDS
        assert config.fire_tolerance == DEFAULT_FIRE_TOLERANCE_SECONDS
        assert config.timezone == ZoneInfo("America/New_York")
        assert config.alarm_bridge == "local"

    def test_playback_defaults(self):
        playback = _from_env().playback
        assert playback.fade_steps == DEFAULT_FADE_STEPS
        assert playback.fade_floor == DEFAULT_FADE_FLOOR
        assert playback.position_interval == pytest.approx(0.1)
        assert playback.media_base_url is None

    def test_data_dirs(self):
        config = _from_env({"REVEILLE_DATA_DIR": "/var/lib/reveille"})
        assert config.data_dir == Path("/var/lib/reveille")
        assert config.media_dir == Path("/var/lib/reveille/media")
        assert config.store_dir == Path("/var/lib/reveille/store")

    def test_topic_base_defaults_to_hostname(self):
        assert _from_env().mqtt.topic_base == "reveille/bedroom-pi"

    def test_home_assistant_disabled_without_token(self):
        assert _from_env({"HOME_ASSISTANT_BASE_URL": "http://ha.local:8123"}).home_assistant.enabled is False


class TestOverrides:
    def test_scheduler_values(self):
        config = _from_env({"REVEILLE_POLL_INTERVAL_SECONDS": "10", "REVEILLE_FIRE_TOLERANCE_SECONDS": "90"})
        assert config.poll_interval == 10.0
        assert config.fire_tolerance == 90.0

    def test_invalid_numbers_fall_back(self):
        config = _from_env({"REVEILLE_POLL_INTERVAL_SECONDS": "soon", "REVEILLE_FADE_STEPS": "many"})
        assert config.poll_interval == DEFAULT_POLL_INTERVAL_SECONDS
        assert config.playback.fade_steps == DEFAULT_FADE_STEPS

    def test_values_are_clamped(self):
        config = _from_env(
            {"REVEILLE_POLL_INTERVAL_SECONDS": "0", "REVEILLE_FADE_FLOOR": "1.7", "REVEILLE_FADE_STEPS": "-3"}
        )
        assert config.poll_interval == 1.0
        assert config.playback.fade_floor == 1.0
        assert config.playback.fade_steps == 1

    def test_media_base_url_trailing_slash(self):
        config = _from_env({"REVEILLE_MEDIA_BASE_URL": "http://pi.local:8080/media/"})
        assert config.playback.media_base_url == "http://pi.local:8080/media"

    def test_mqtt_settings_select_mqtt_bridge(self):
        config = _from_env(
            {
                "MQTT_HOST": "broker.local",
                "MQTT_PORT": "8883",
                "MQTT_USER": "alarm",
                "MQTT_PASS": "secret",
                "MQTT_TLS_ENABLED": "true",
                "REVEILLE_TOPIC_BASE": "home/bedroom/",
            }
        )
        assert config.mqtt.host == "broker.local"
        assert config.mqtt.port == 8883
        assert config.mqtt.username == "alarm"
        assert config.mqtt.password == "secret"
        assert config.mqtt.tls_enabled is True
        assert config.mqtt.topic_base == "home/bedroom"
        assert config.alarm_bridge == "mqtt"

    def test_explicit_bridge_wins(self):
        config = _from_env({"MQTT_HOST": "broker.local", "REVEILLE_ALARM_BRIDGE": "LOCAL"})
        assert config.alarm_bridge == "local"

    def test_home_assistant_settings(self):
        config = _from_env(
            {
                "HOME_ASSISTANT_BASE_URL": "https://ha.local:8123/",
                "HOME_ASSISTANT_TOKEN": "abc",
                "HOME_ASSISTANT_VERIFY_SSL": "false",
            }
        )
        assert config.home_assistant.base_url == "https://ha.local:8123"
        assert config.home_assistant.enabled is True
        assert config.home_assistant.verify_ssl is False

    def test_timezone_from_tz_variable(self):
        env = {"REVEILLE_HOSTNAME": "pi", "TZ": "Europe/London"}
        assert ReveilleConfig.from_env(env).timezone == ZoneInfo("Europe/London")
