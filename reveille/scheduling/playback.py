"""Playback engine: one session at a time, position sampling, and volume fades."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal, Protocol
from uuid import uuid4

from reveille.datetime_utils import format_clock
from reveille.media_library import MediaAsset

from .models import OutputTarget

if TYPE_CHECKING:
    from .outputs import OutputResolver

EnginePhase = Literal["idle", "resolving", "playing", "paused"]
SessionPhase = Literal["playing", "paused", "stopped"]
OutputStatus = Literal["running", "finished", "error"]
StopReason = Literal["finished", "decode_error", "stopped", "replaced"]

PlaybackEventCallback = Callable[[dict[str, Any]], None]

LOGGER = logging.getLogger("reveille.playback")


class PlaybackError(RuntimeError):
    """An output could not carry out a playback command."""


class PlaybackDecodeError(PlaybackError):
    """The asset cannot be played at all (missing file, no decoder, player crashed)."""


class PlaybackOutput(Protocol):
    """Where the audio actually comes out; implemented by local and remote outputs."""

    name: str
    is_remote: bool

    async def start(self, offset: float = 0.0, *, volume: float = 1.0) -> None: ...

    async def pause(self) -> None: ...

    async def resume(self) -> None: ...

    async def seek(self, position: float) -> None: ...

    async def set_volume(self, level: float) -> None: ...

    async def poll(self) -> OutputStatus: ...

    async def stop(self) -> None: ...


def fade_levels(floor: float, steps: int) -> list[float]:
    """Linear ramp from ``floor`` to full volume; the last level is exactly 1.0."""
    if steps <= 1:
        return [1.0]
    span = 1.0 - floor
    levels = [floor + span * index / (steps - 1) for index in range(steps)]
    levels[-1] = 1.0
    return levels


@dataclass(eq=False)
class PlaybackSession:
    asset: MediaAsset
    target: OutputTarget
    output: PlaybackOutput
    duration: float
    fade_enabled: bool
    fade_seconds: float
    session_id: str = field(default_factory=lambda: uuid4().hex)
    phase: SessionPhase = "playing"
    volume: float = 1.0
    _offset: float = 0.0
    _anchor: float | None = None
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    @property
    def is_playing(self) -> bool:
        return self.phase == "playing"

    def position(self, now: float) -> float:
        position = self._offset
        if self.phase == "playing" and self._anchor is not None:
            position += now - self._anchor
        if self.duration > 0:
            position = min(position, self.duration)
        return max(0.0, position)

    def _reanchor(self, position: float, now: float | None) -> None:
        self._offset = position
        self._anchor = now

    def to_public_dict(self, now: float) -> dict[str, Any]:
        position = self.position(now)
        return {
            "session_id": self.session_id,
            "asset_id": self.asset.asset_id,
            "asset_name": self.asset.name,
            "output": self.output.name,
            "phase": self.phase,
            "position": round(position, 2),
            "duration": self.duration,
            "position_label": format_clock(position),
            "duration_label": format_clock(self.duration),
            "volume": round(self.volume, 3),
        }


class PlaybackEngine:
    """Owns at most one playback session; starting a new one tears down the old one first."""

    def __init__(
        self,
        resolver: OutputResolver,
        *,
        position_interval: float = 0.1,
        fade_steps: int = 50,
        fade_floor: float = 0.1,
        clock: Callable[[], float] | None = None,
        on_event: PlaybackEventCallback | None = None,
    ) -> None:
        self._resolver = resolver
        self._position_interval = position_interval
        self._fade_steps = fade_steps
        self._fade_floor = fade_floor
        self._clock = clock or time.monotonic
        self._event_cb = on_event
        self._lock = asyncio.Lock()
        self._session: PlaybackSession | None = None
        self._resolving = False

    @property
    def session(self) -> PlaybackSession | None:
        return self._session

    @property
    def state(self) -> EnginePhase:
        if self._resolving:
            return "resolving"
        if self._session is None:
            return "idle"
        return "paused" if self._session.phase == "paused" else "playing"

    def position(self) -> float | None:
        session = self._session
        return session.position(self._clock()) if session else None

    def snapshot(self) -> dict[str, Any]:
        session = self._session
        return {
            "state": self.state,
            "session": session.to_public_dict(self._clock()) if session else None,
        }

    async def start(
        self,
        asset: MediaAsset,
        path: Path,
        target: OutputTarget,
        *,
        fade_enabled: bool = True,
        fade_seconds: float = 5.0,
    ) -> PlaybackSession | None:
        """Start ``asset`` on ``target``; returns None when the asset cannot be played."""
        async with self._lock:
            await self._teardown("replaced")
            self._resolving = True
            try:
                output = await self._open_output(asset, path, target, fade_enabled)
            finally:
                self._resolving = False
            if output is None:
                self._emit({"state": "idle", "reason": "decode_error", "asset_id": asset.asset_id, "session": None})
                return None
            session = PlaybackSession(
                asset=asset,
                target=target,
                output=output,
                duration=max(0.0, asset.duration),
                fade_enabled=fade_enabled,
                fade_seconds=fade_seconds,
                volume=self._fade_floor if fade_enabled else 1.0,
            )
            session._reanchor(0.0, self._clock())
            self._session = session
            self._bind(session, self._sample_loop(session))
            if fade_enabled:
                self._bind(session, self._fade_loop(session))
            LOGGER.info("[playback] Playing %s on %s", asset.name, output.name)
            self._emit({"state": "playing", "reason": None, "session": session.to_public_dict(self._clock())})
            return session

    async def _open_output(
        self, asset: MediaAsset, path: Path, target: OutputTarget, fade_enabled: bool
    ) -> PlaybackOutput | None:
        initial_volume = self._fade_floor if fade_enabled else 1.0
        output = await self._resolver.resolve(target, asset, path)
        try:
            await output.start(0.0, volume=initial_volume)
            return output
        except PlaybackDecodeError as exc:
            LOGGER.warning("[playback] Cannot play %s: %s", asset.name, exc)
            return None
        except PlaybackError as exc:
            if not output.is_remote:
                LOGGER.warning("[playback] Local output failed for %s: %s", asset.name, exc)
                return None
            LOGGER.info("[playback] Remote output %s failed (%s); falling back to local", output.name, exc)
        fallback = self._resolver.local_output(target, path)
        try:
            await fallback.start(0.0, volume=initial_volume)
        except PlaybackError as exc:
            LOGGER.warning("[playback] Cannot play %s: %s", asset.name, exc)
            return None
        return fallback

    async def stop(self) -> bool:
        async with self._lock:
            if self._session is None:
                return False
            await self._teardown("stopped")
            return True

    async def pause(self) -> bool:
        async with self._lock:
            session = self._session
            if session is None or session.phase != "playing":
                return False
            now = self._clock()
            position = session.position(now)
            try:
                await session.output.pause()
            except PlaybackError as exc:
                LOGGER.warning("[playback] Pause failed on %s: %s", session.output.name, exc)
                return False
            session.phase = "paused"
            session._reanchor(position, None)
            self._emit({"state": "paused", "reason": None, "session": session.to_public_dict(now)})
            return True

    async def resume(self) -> bool:
        async with self._lock:
            session = self._session
            if session is None or session.phase != "paused":
                return False
            try:
                await session.output.resume()
            except PlaybackError as exc:
                LOGGER.warning("[playback] Resume failed on %s: %s", session.output.name, exc)
                return False
            now = self._clock()
            session.phase = "playing"
            session._reanchor(session._offset, now)
            self._emit({"state": "playing", "reason": None, "session": session.to_public_dict(now)})
            return True

    async def seek(self, position: float) -> float | None:
        """Move the playhead; clamped to the asset duration. None when nothing is playing."""
        async with self._lock:
            session = self._session
            if session is None or session.phase not in ("playing", "paused"):
                return None
            clamped = max(0.0, float(position))
            if session.duration > 0:
                clamped = min(clamped, session.duration)
            try:
                await session.output.seek(clamped)
            except PlaybackError as exc:
                LOGGER.warning("[playback] Seek failed on %s: %s", session.output.name, exc)
                return None
            session._reanchor(clamped, self._clock() if session.phase == "playing" else None)
            return clamped

    async def refresh(self) -> None:
        """Run one position/status sample immediately."""
        session = self._session
        if session is not None:
            await self._sample(session)

    async def shutdown(self) -> None:
        async with self._lock:
            await self._teardown("stopped")

    def _bind(self, session: PlaybackSession, coro: Any) -> None:
        task = asyncio.create_task(coro)
        session._tasks.add(task)
        task.add_done_callback(session._tasks.discard)

    async def _sample_loop(self, session: PlaybackSession) -> None:
        while True:
            await asyncio.sleep(self._position_interval)
            if await self._sample(session):
                return

    async def _sample(self, session: PlaybackSession) -> bool:
        """Return True once the session is over."""
        if session is not self._session or session.phase == "stopped":
            return True
        if session.phase == "paused":
            return False
        try:
            status = await session.output.poll()
        except PlaybackError:
            LOGGER.debug("[playback] Status poll failed on %s", session.output.name, exc_info=True)
            status = "running"
        if status == "error":
            LOGGER.warning("[playback] Output reported an error while playing %s", session.asset.name)
            await self._end(session, "decode_error")
            return True
        finished = status == "finished"
        if not finished and session.duration > 0:
            finished = session.position(self._clock()) >= session.duration
        if finished:
            await self._end(session, "finished")
            return True
        return False

    async def _fade_loop(self, session: PlaybackSession) -> None:
        levels = fade_levels(self._fade_floor, self._fade_steps)
        interval = max(0.0, session.fade_seconds) / max(1, len(levels) - 1)
        for index, level in enumerate(levels):
            while session.phase == "paused":
                await asyncio.sleep(interval or self._position_interval)
            if session.phase == "stopped":
                return
            session.volume = level
            try:
                await session.output.set_volume(level)
            except PlaybackError:
                LOGGER.debug("[playback] Volume step failed on %s", session.output.name, exc_info=True)
            if index < len(levels) - 1:
                await asyncio.sleep(interval)

    async def _end(self, session: PlaybackSession, reason: StopReason) -> None:
        async with self._lock:
            if session is self._session:
                await self._teardown(reason)

    async def _teardown(self, reason: StopReason) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        position = session.position(self._clock())
        session.phase = "stopped"
        session._reanchor(position, None)
        current = asyncio.current_task()
        pending = [task for task in session._tasks if task is not current]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        try:
            await session.output.stop()
        except PlaybackError:
            LOGGER.debug("[playback] Output stop failed on %s", session.output.name, exc_info=True)
        LOGGER.info("[playback] Session for %s ended (%s)", session.asset.name, reason)
        self._emit({"state": "idle", "reason": reason, "session": session.to_public_dict(self._clock())})

    def _emit(self, event: dict[str, Any]) -> None:
        if not self._event_cb:
            return
        try:
            self._event_cb(event)
        except Exception:
            LOGGER.exception("[playback] Playback event callback failed")
