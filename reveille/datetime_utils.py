"""Shared datetime helpers: serialization, time zones, and countdown formatting."""

from __future__ import annotations

from datetime import UTC, datetime, tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def local_now() -> datetime:
    """Get current datetime in local timezone."""
    return datetime.now().astimezone()


def serialize_dt(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.astimezone()
    return value.isoformat()


def deserialize_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def resolve_timezone(zone_name: str | None) -> tzinfo | None:
    """Return a ZoneInfo for the given name, or None when unset/unknown."""
    if not zone_name:
        return None
    try:
        return ZoneInfo(zone_name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


def format_clock(seconds: float) -> str:
    """Format a duration as MM:SS (minutes may exceed 59)."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


def format_countdown(seconds: float) -> str | None:
    """Format time remaining as H:MM:SS or MM:SS; None once the moment has passed."""
    if seconds <= 0:
        return None
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def detect_timezone(explicit: str | None = None, tz_env: str | None = None) -> tzinfo:
    """Pick the calendar zone for recurrence: explicit name, $TZ, /etc/timezone, then local offset."""
    candidates = [explicit, tz_env, "/etc/timezone"]
    for candidate in candidates:
        if not candidate:
            continue
        name = candidate
        candidate_path = Path(candidate)
        try:
            if candidate_path.is_file():
                name = candidate_path.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        zone = resolve_timezone(name)
        if zone is not None:
            return zone
    return datetime.now().astimezone().tzinfo or UTC
