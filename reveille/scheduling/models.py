"""Schedule records, output targets, and recurrence rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from reveille.datetime_utils import deserialize_dt, format_countdown, local_now, serialize_dt

RecurrenceRule = Literal["none", "daily", "weekdays"]
RemoteKind = Literal["home_automation", "cast"]

RECURRENCE_RULES: tuple[RecurrenceRule, ...] = ("none", "daily", "weekdays")
RECURRENCE_LABELS: dict[str, str] = {
    "none": "Once",
    "daily": "Every Day",
    "weekdays": "Weekdays Only",
}

DEFAULT_FADE_SECONDS = 5.0
MIN_FADE_SECONDS = 1.0
MAX_FADE_SECONDS = 15.0


def normalize_recurrence(value: str | None) -> RecurrenceRule:
    lowered = (value or "none").strip().lower().replace("-", "_").replace(" ", "_")
    if lowered in {"daily", "every_day", "everyday"}:
        return "daily"
    if lowered in {"weekdays", "weekday"}:
        return "weekdays"
    if lowered in {"none", "once", "single", ""}:
        return "none"
    raise ValueError(f"Unknown recurrence rule: {value!r}")


@dataclass(frozen=True)
class LocalDefault:
    kind: Literal["local_default"] = "local_default"

    @property
    def display_name(self) -> str:
        return "This device"


@dataclass(frozen=True)
class LocalBluetooth:
    kind: Literal["local_bluetooth"] = "local_bluetooth"

    @property
    def display_name(self) -> str:
        return "Bluetooth Speaker"


@dataclass(frozen=True)
class RemoteAccessory:
    """Intent to play on a remote device; the handle is resolved only at fire time."""

    remote_kind: RemoteKind
    handle: str
    name: str
    kind: Literal["remote"] = "remote"

    @property
    def display_name(self) -> str:
        return self.name or self.handle


OutputTarget = LocalDefault | LocalBluetooth | RemoteAccessory


def target_to_dict(target: OutputTarget | None) -> dict[str, Any] | None:
    if target is None:
        return None
    if isinstance(target, RemoteAccessory):
        return {
            "kind": "remote",
            "remote_kind": target.remote_kind,
            "handle": target.handle,
            "name": target.name,
        }
    return {"kind": target.kind}


def target_from_dict(payload: dict[str, Any] | None) -> OutputTarget | None:
    if not isinstance(payload, dict):
        return None
    kind = payload.get("kind")
    if kind == "local_default":
        return LocalDefault()
    if kind == "local_bluetooth":
        return LocalBluetooth()
    if kind == "remote":
        handle = str(payload.get("handle") or "")
        if not handle:
            return None
        remote_kind = payload.get("remote_kind")
        if remote_kind not in {"home_automation", "cast"}:
            remote_kind = "home_automation"
        return RemoteAccessory(remote_kind=remote_kind, handle=handle, name=str(payload.get("name") or handle))
    return None


@dataclass
class ScheduleRecord:
    record_id: str
    asset_id: str
    fire_at: str | None
    target: OutputTarget | None
    recurrence: RecurrenceRule = "none"
    fade_enabled: bool = True
    fade_seconds: float = DEFAULT_FADE_SECONDS
    active: bool = True
    created_at: str = field(default_factory=lambda: serialize_dt(local_now()))
    label: str | None = None

    def fire_dt(self) -> datetime | None:
        return deserialize_dt(self.fire_at)

    def set_fire(self, dt: datetime | None) -> None:
        self.fire_at = serialize_dt(dt) if dt else None

    def time_until_fire(self, now: datetime | None = None) -> float | None:
        fire = self.fire_dt()
        if fire is None:
            return None
        return (fire - (now or local_now())).total_seconds()

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "asset_id": self.asset_id,
            "fire_at": self.fire_at,
            "target": target_to_dict(self.target),
            "recurrence": self.recurrence,
            "fade_enabled": self.fade_enabled,
            "fade_seconds": self.fade_seconds,
            "active": self.active,
            "created_at": self.created_at,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ScheduleRecord:
        fade_seconds = float(payload.get("fade_seconds") or DEFAULT_FADE_SECONDS)
        return cls(
            record_id=str(payload["record_id"]),
            asset_id=str(payload["asset_id"]),
            fire_at=payload.get("fire_at"),
            target=target_from_dict(payload.get("target")),
            recurrence=normalize_recurrence(payload.get("recurrence")),
            fade_enabled=bool(payload.get("fade_enabled", True)),
            fade_seconds=max(MIN_FADE_SECONDS, min(MAX_FADE_SECONDS, fade_seconds)),
            active=bool(payload.get("active", False)),
            created_at=payload.get("created_at") or serialize_dt(local_now()),
            label=payload.get("label"),
        )

    def to_public_dict(self, now: datetime | None = None) -> dict[str, Any]:
        data = self.to_json_dict()
        remaining = self.time_until_fire(now)
        data["recurrence_label"] = RECURRENCE_LABELS.get(self.recurrence, self.recurrence)
        data["target_name"] = self.target.display_name if self.target else None
        data["time_until_fire"] = format_countdown(remaining) if remaining is not None else None
        return data
