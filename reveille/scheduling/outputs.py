"""Output targets resolved at fire time: local sink playback or remote media players."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import signal
import tempfile
import time
import wave
from collections.abc import Callable
from pathlib import Path
from typing import Any

from reveille import audio as reveille_audio
from reveille.media_library import MediaAsset

from .home_assistant import HomeAssistantClient, HomeAssistantError
from .models import LocalBluetooth, LocalDefault, OutputTarget, RemoteAccessory, RemoteKind
from .playback import OutputStatus, PlaybackDecodeError, PlaybackError, PlaybackOutput

LOGGER = logging.getLogger("reveille.outputs")

UNREACHABLE_STATES = {"unavailable", "unknown"}
REMOTE_FINISHED_STATES = {"idle", "off", "standby"}
REMOTE_POLL_INTERVAL = 2.0
REMOTE_POLL_GRACE = 5.0


def _write_wav_tail(source: Path, offset: float) -> Path:
    """Copy ``source`` from ``offset`` seconds onward into a temporary WAV file."""
    with wave.open(str(source), "rb") as reader:
        params = reader.getparams()
        start_frame = min(params.nframes, int(offset * params.framerate))
        reader.setpos(start_frame)
        frames = reader.readframes(params.nframes - start_frame)
    handle = tempfile.NamedTemporaryFile(prefix="reveille-seek-", suffix=".wav", delete=False)  # noqa: SIM115
    handle.close()
    with wave.open(handle.name, "wb") as writer:
        writer.setparams(params)
        writer.writeframes(frames)
    return Path(handle.name)


class LocalOutput:
    """Plays through a command-line player on the default (or Bluetooth) sink."""

    is_remote = False

    def __init__(self, path: Path, *, bluetooth: bool = False) -> None:
        self.path = path
        self.bluetooth = bluetooth
        self.name = "Bluetooth Speaker" if bluetooth else "This device"
        self._process: asyncio.subprocess.Process | None = None
        self._sink: str | None = None
        self._orig_volume: int | None = None
        self._temp_path: Path | None = None
        self._paused = False
        self._started = False
        self._restarting = False

    async def start(self, offset: float = 0.0, *, volume: float = 1.0) -> None:
        if not self.path.is_file():
            raise PlaybackDecodeError(f"Audio file is missing: {self.path}")
        self._sink = await asyncio.to_thread(self._pick_sink)
        if self._sink:
            current = await asyncio.to_thread(reveille_audio.get_current_volume, self._sink)
            # Never remember 0 as the original level
            self._orig_volume = current if current and current > 0 else reveille_audio.MIN_RESTORE_VOLUME
        await self.set_volume(volume)
        try:
            await self._spawn(offset)
        except PlaybackError:
            await self._restore_volume()
            raise
        self._started = True

    def _pick_sink(self) -> str | None:
        if self.bluetooth:
            sink = reveille_audio.find_bluetooth_sink()
            if sink:
                return sink
            LOGGER.info("[output] No Bluetooth sink connected; using default sink")
        return reveille_audio.find_audio_sink()

    async def _spawn(self, offset: float) -> None:
        source = self.path
        if offset > 0 and self.path.suffix.lower() == ".wav":
            try:
                source = await asyncio.to_thread(_write_wav_tail, self.path, offset)
            except (OSError, wave.Error) as exc:
                raise PlaybackDecodeError(f"Cannot read {self.path.name}: {exc}") from exc
            self._discard_temp()
            self._temp_path = source
        try:
            process = await reveille_audio.spawn_player(source, sink=self._sink)
        except OSError as exc:
            raise PlaybackDecodeError(f"Failed to launch player: {exc}") from exc
        if process is None:
            raise PlaybackDecodeError("No audio player available")
        self._process = process
        self._paused = False

    async def pause(self) -> None:
        self._signal(signal.SIGSTOP)
        self._paused = True

    async def resume(self) -> None:
        self._signal(signal.SIGCONT)
        self._paused = False

    async def seek(self, position: float) -> None:
        if self.path.suffix.lower() != ".wav":
            # Players started from a file cannot be repositioned; only the clock moves.
            return
        was_paused = self._paused
        # poll() reports running while the player is swapped out.
        self._restarting = True
        try:
            await self._kill_process()
            await self._spawn(position)
        finally:
            self._restarting = False
        if was_paused:
            await self.pause()

    async def set_volume(self, level: float) -> None:
        if not self._sink:
            return
        base = self._orig_volume or 100
        percent = max(1, round(base * max(0.0, min(1.0, level))))
        await asyncio.to_thread(reveille_audio.set_volume, percent, self._sink)

    async def poll(self) -> OutputStatus:
        if self._restarting:
            return "running"
        process = self._process
        if process is None:
            return "error" if self._started else "running"
        if process.returncode is None:
            return "running"
        return "finished" if process.returncode == 0 else "error"

    async def stop(self) -> None:
        await self._kill_process()
        self._discard_temp()
        await self._restore_volume()

    async def _restore_volume(self) -> None:
        if self._sink and self._orig_volume is not None:
            # Never restore to 0%
            restore = max(reveille_audio.MIN_RESTORE_VOLUME, self._orig_volume)
            await asyncio.to_thread(reveille_audio.set_volume, restore, self._sink)

    def _signal(self, signum: int) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(signum)

    async def _kill_process(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            if self._paused:
                process.send_signal(signal.SIGCONT)
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    def _discard_temp(self) -> None:
        if self._temp_path is None:
            return
        with contextlib.suppress(OSError):
            self._temp_path.unlink()
        self._temp_path = None


class RemoteOutput:
    """Drives a Home Assistant media_player entity (HA-native or cast)."""

    is_remote = True

    def __init__(
        self,
        client: HomeAssistantClient,
        target: RemoteAccessory,
        content_id: str,
        content_type: str,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self.target = target
        self.name = target.display_name
        self.content_id = content_id
        self.content_type = content_type
        self._clock = clock or time.monotonic
        self._started_at: float | None = None
        self._last_poll = 0.0

    async def start(self, offset: float = 0.0, *, volume: float = 1.0) -> None:
        try:
            await self._client.play_media(self.target.handle, self.content_id, self.content_type)
        except HomeAssistantError as exc:
            raise PlaybackError(f"Remote playback on {self.name} failed: {exc}") from exc
        self._started_at = self._clock()
        try:
            await self.set_volume(volume)
            if offset > 0:
                await self.seek(offset)
        except PlaybackError:
            LOGGER.debug("[output] %s ignored volume/seek after start", self.name, exc_info=True)

    async def pause(self) -> None:
        await self._command("media_pause")

    async def resume(self) -> None:
        await self._command("media_play")

    async def seek(self, position: float) -> None:
        await self._command("media_seek", seek_position=position)

    async def set_volume(self, level: float) -> None:
        await self._command("volume_set", volume_level=round(max(0.0, min(1.0, level)), 3))

    async def poll(self) -> OutputStatus:
        now = self._clock()
        if self._started_at is None or now - self._started_at < REMOTE_POLL_GRACE:
            return "running"
        if now - self._last_poll < REMOTE_POLL_INTERVAL:
            return "running"
        self._last_poll = now
        try:
            state = await self._client.get_state(self.target.handle)
        except HomeAssistantError as exc:
            raise PlaybackError(str(exc)) from exc
        value = str(state.get("state") or "").lower()
        if value in REMOTE_FINISHED_STATES:
            return "finished"
        if value in UNREACHABLE_STATES:
            return "error"
        return "running"

    async def stop(self) -> None:
        await self._command("media_stop")

    async def _command(self, service: str, **extra: Any) -> None:
        try:
            await self._client.media_command(self.target.handle, service, **extra)
        except HomeAssistantError as exc:
            raise PlaybackError(f"{service} on {self.name} failed: {exc}") from exc


def _guess_remote_kind(state: dict[str, Any]) -> RemoteKind:
    attributes = state.get("attributes") or {}
    if "app_id" in attributes or "app_name" in attributes:
        return "cast"
    return "home_automation"


class RemoteOutputDirectory:
    """Lists Home Assistant media_player entities that can take a media URL."""

    def __init__(self, client: HomeAssistantClient | None, *, timeout: float = 3.0) -> None:
        self._client = client
        self._timeout = timeout

    @property
    def client(self) -> HomeAssistantClient | None:
        return self._client

    async def list_reachable(self) -> list[RemoteAccessory]:
        if self._client is None:
            return []
        try:
            states = await asyncio.wait_for(self._client.list_entities("media_player"), timeout=self._timeout)
        except (HomeAssistantError, TimeoutError) as exc:
            LOGGER.info("[output] Remote discovery failed: %s", exc)
            return []
        accessories: list[RemoteAccessory] = []
        for state in states:
            entity_id = str(state.get("entity_id") or "")
            if not entity_id or str(state.get("state") or "").lower() in UNREACHABLE_STATES:
                continue
            attributes = state.get("attributes") or {}
            name = str(attributes.get("friendly_name") or entity_id)
            accessories.append(RemoteAccessory(remote_kind=_guess_remote_kind(state), handle=entity_id, name=name))
        accessories.sort(key=lambda accessory: accessory.name.lower())
        return accessories

    async def is_reachable(self, handle: str) -> bool:
        if self._client is None:
            return False
        try:
            state = await asyncio.wait_for(self._client.get_state(handle), timeout=self._timeout)
        except (HomeAssistantError, TimeoutError) as exc:
            LOGGER.debug("[output] %s is not reachable: %s", handle, exc)
            return False
        return str(state.get("state") or "").lower() not in UNREACHABLE_STATES


class OutputResolver:
    """Turns a stored target intent into a live output when a schedule fires."""

    def __init__(self, directory: RemoteOutputDirectory, *, media_base_url: str | None = None) -> None:
        self._directory = directory
        self._media_base_url = media_base_url.rstrip("/") if media_base_url else None

    @property
    def directory(self) -> RemoteOutputDirectory:
        return self._directory

    def media_url(self, asset: MediaAsset) -> str | None:
        if not self._media_base_url:
            return None
        return f"{self._media_base_url}/{asset.storage_ref}"

    def local_output(self, target: OutputTarget | None, path: Path) -> PlaybackOutput:
        return LocalOutput(path, bluetooth=isinstance(target, LocalBluetooth))

    async def resolve(self, target: OutputTarget | None, asset: MediaAsset, path: Path) -> PlaybackOutput:
        if isinstance(target, RemoteAccessory):
            remote = await self._resolve_remote(target, asset)
            if remote is not None:
                return remote
        return self.local_output(target or LocalDefault(), path)

    async def _resolve_remote(self, target: RemoteAccessory, asset: MediaAsset) -> PlaybackOutput | None:
        client = self._directory.client
        url = self.media_url(asset)
        if client is None or url is None:
            LOGGER.debug("[output] Remote playback unavailable for %s; using local output", target.display_name)
            return None
        if not await self._directory.is_reachable(target.handle):
            LOGGER.info("[output] %s is not reachable; using local output", target.display_name)
            return None
        if target.remote_kind == "cast":
            content_type = mimetypes.guess_type(asset.storage_ref)[0] or "audio/mpeg"
        else:
            content_type = "music"
        return RemoteOutput(client, target, url, content_type)
