"""Audio control utilities for local playback (PipeWire/PulseAudio via pactl)."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import subprocess  # nosec B404 - subprocess used for pactl interactions
from pathlib import Path

_LOGGER = logging.getLogger("reveille.audio")
_PLAYER_CANDIDATES = ("pw-play", "paplay", "aplay")
_VOLUME_RE = re.compile(r"(\d+)%")
MIN_RESTORE_VOLUME = 20


def _runtime_env() -> dict[str, str]:
    env = os.environ.copy()
    env.setdefault("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
    return env


def _run_pactl(args: list[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        result = subprocess.run(  # nosec B603 B607 - hardcoded command array
            ["pactl", *args],
            capture_output=True,
            text=True,
            check=True,
            env=_runtime_env(),
            timeout=5,
        )
        return result
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError) as exc:
        _LOGGER.debug("[audio] pactl %s failed: %s", " ".join(args), exc)
        return None


def list_sinks() -> list[str]:
    """Return sink names known to the sound server (monitors excluded)."""
    result = _run_pactl(["list", "sinks", "short"])
    if not result:
        return []
    sinks: list[str] = []
    for line in result.stdout.split("\n"):
        parts = line.split()
        if len(parts) > 1 and not parts[1].endswith(".monitor"):
            sinks.append(parts[1])
    return sinks


def find_audio_sink() -> str | None:
    """Find the audio sink to use for volume control.

    Prefers the default sink, falls back to any available sink.

    Returns:
        The sink name (e.g., "alsa_output.platform-bcm2835_audio.stereo-fallback") or None if not found.
    """
    result = _run_pactl(["get-default-sink"])
    if result:
        default_sink = result.stdout.strip()
        if default_sink:
            _LOGGER.debug("[audio] Detected default sink: %s", default_sink)
            return default_sink

    for sink_name in list_sinks():
        _LOGGER.debug("[audio] Using fallback sink: %s", sink_name)
        return sink_name
    _LOGGER.warning("[audio] No audio sinks detected (XDG_RUNTIME_DIR=%s)", _runtime_env().get("XDG_RUNTIME_DIR"))
    return None


def find_bluetooth_sink() -> str | None:
    """Return the first Bluetooth (bluez) sink, if one is connected."""
    for sink_name in list_sinks():
        if sink_name.startswith("bluez_output") or sink_name.startswith("bluez_sink"):
            return sink_name
    return None


def get_current_volume(sink: str | None = None) -> int | None:
    """Get current volume percentage from audio sink.

    Args:
        sink: Optional sink name. If None, will find the default sink.

    Returns:
        Volume percentage (0-100) or None if unavailable.
    """
    if sink is None:
        sink = find_audio_sink()
    if not sink:
        return None
    # Output format: "Volume: front-left: 32768 /  50% / -18.06 dB,   front-right: 32768 /  50% / -18.06 dB"
    result = _run_pactl(["get-sink-volume", sink])
    if not result:
        return None
    match = _VOLUME_RE.search(result.stdout)
    if match:
        return int(match.group(1))
    return None


def set_volume(percent: int, sink: str | None = None, *, allow_zero: bool = False) -> bool:
    """Set audio volume using pactl.

    Args:
        percent: Volume percentage (0-100), will be clamped to valid range.
        sink: Optional sink name. If None, will find the default sink.
        allow_zero: When True, allows setting volume to 0%. Default False to prevent accidental muting.

    Returns:
        True if successful, False otherwise.
    """
    if sink is None:
        sink = find_audio_sink()
    if not sink:
        return False

    percent = max(0, min(100, percent))
    if not allow_zero and percent == 0:
        _LOGGER.warning("[audio] Prevented setting volume to 0%% (use allow_zero=True to override)")
        percent = MIN_RESTORE_VOLUME

    result = _run_pactl(["set-sink-volume", sink, f"{percent}%"])
    if not result:
        return False
    if percent > 0:
        _run_pactl(["set-sink-mute", sink, "0"])
    return True


def find_player() -> str | None:
    """Return the first available command-line player."""
    for candidate in _PLAYER_CANDIDATES:
        if shutil.which(candidate):
            return candidate
    return None


async def spawn_player(sample_path: Path, *, sink: str | None = None) -> asyncio.subprocess.Process | None:
    """Start playing ``sample_path`` in a child process; None when no player is installed."""
    player = find_player()
    if not player:
        _LOGGER.debug("[audio] No audio player available")
        return None
    args = [player]
    if sink and player in {"pw-play", "paplay"}:
        args.append(f"--target={sink}" if player == "pw-play" else f"--device={sink}")
    args.append(str(sample_path))
    return await asyncio.create_subprocess_exec(  # nosec B603 - fixed argument list
        *args,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        env=_runtime_env(),
    )
