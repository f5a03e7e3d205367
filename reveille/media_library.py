"""Media catalog: imported audio assets and the managed directory holding them."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess  # nosec B404 - subprocess used for ffprobe
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from reveille.blob_store import BackedUpBlob, KeyValueStore
from reveille.datetime_utils import format_clock, local_now, serialize_dt
from reveille.utils import format_byte_size

LOGGER = logging.getLogger("reveille.media_library")

_DEFAULT_MEDIA_DIR = Path.home() / ".local" / "share" / "reveille" / "audio"
_PROBE_TIMEOUT_SECONDS = 5.0

MEDIA_KEY = "media_assets"


@dataclass(frozen=True)
class MediaAsset:
    asset_id: str
    name: str
    storage_ref: str
    duration: float
    byte_size: int
    created_at: str

    @property
    def formatted_duration(self) -> str:
        return format_clock(self.duration)

    @property
    def formatted_size(self) -> str:
        return format_byte_size(self.byte_size)

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "name": self.name,
            "storage_ref": self.storage_ref,
            "duration": self.duration,
            "byte_size": self.byte_size,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MediaAsset:
        return cls(
            asset_id=str(payload["asset_id"]),
            name=str(payload.get("name") or payload["asset_id"]),
            storage_ref=str(payload["storage_ref"]),
            duration=max(0.0, float(payload.get("duration") or 0.0)),
            byte_size=max(0, int(payload.get("byte_size") or 0)),
            created_at=payload.get("created_at") or serialize_dt(local_now()),
        )

    def to_public_dict(self) -> dict[str, Any]:
        data = self.to_json_dict()
        data["formatted_duration"] = self.formatted_duration
        data["formatted_size"] = self.formatted_size
        return data


class ManagedAssetStorage:
    """Copies source files into a private directory and answers questions about them."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or _DEFAULT_MEDIA_DIR

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, storage_ref: str) -> Path:
        candidate = (self.root / storage_ref).resolve()
        if candidate.parent != self.root.resolve():
            raise ValueError(f"Storage reference escapes managed storage: {storage_ref!r}")
        return candidate

    def exists(self, storage_ref: str) -> bool:
        try:
            return self.path_for(storage_ref).is_file()
        except ValueError:
            return False

    def copy_into_managed_storage(self, source: Path) -> tuple[str, int]:
        """Copy ``source`` under a fresh unique name; return (storage_ref, byte_size)."""
        byte_size = source.stat().st_size
        self.ensure_root()
        suffix = source.suffix.lower() or ".mp3"
        storage_ref = f"{uuid4().hex}{suffix}"
        shutil.copyfile(source, self.root / storage_ref)
        return storage_ref, byte_size

    def probe_duration(self, storage_ref: str) -> float | None:
        """Best-effort duration in seconds; None when unknown."""
        path = self.path_for(storage_ref)
        if path.suffix.lower() == ".wav":
            try:
                with wave.open(str(path), "rb") as wav_file:
                    rate = wav_file.getframerate()
                    if rate > 0:
                        return wav_file.getnframes() / float(rate)
            except (wave.Error, EOFError, OSError) as exc:
                LOGGER.debug("[media] WAV probe failed for %s: %s", path, exc)
        return _ffprobe_duration(path)

    def delete(self, storage_ref: str) -> None:
        try:
            self.path_for(storage_ref).unlink(missing_ok=True)
        except (OSError, ValueError) as exc:
            LOGGER.warning("[media] Unable to delete %s: %s", storage_ref, exc)


def _ffprobe_duration(path: Path) -> float | None:
    ffprobe = shutil.which("ffprobe")
    if not ffprobe:
        return None
    try:
        result = subprocess.run(  # nosec B603 - fixed argument list
            [ffprobe, "-v", "quiet", "-print_format", "json", "-show_format", str(path)],
            capture_output=True,
            text=True,
            check=True,
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
        data = json.loads(result.stdout or "{}")
        duration = float(data.get("format", {}).get("duration"))
    except (subprocess.SubprocessError, OSError, ValueError, TypeError) as exc:
        LOGGER.debug("[media] ffprobe failed for %s: %s", path, exc)
        return None
    return duration if duration >= 0 else None


class MediaRegistry:
    """Owns the asset catalog; the only component persisting asset records."""

    def __init__(self, *, kv_store: KeyValueStore, storage: ManagedAssetStorage) -> None:
        self.storage = storage
        self._blob: BackedUpBlob[MediaAsset] = BackedUpBlob(
            kv_store,
            MEDIA_KEY,
            encode_item=MediaAsset.to_json_dict,
            decode_item=MediaAsset.from_dict,
        )
        self._assets: dict[str, MediaAsset] = {}

    def load(self) -> None:
        self._assets = {asset.asset_id: asset for asset in self._blob.load()}

    def _persist(self, previous: list[MediaAsset]) -> None:
        self._blob.save(list(self._assets.values()), previous=previous)

    def add(self, asset: MediaAsset) -> MediaAsset:
        previous = list(self._assets.values())
        self._assets[asset.asset_id] = asset
        self._persist(previous)
        return asset

    async def import_asset(self, source: Path, *, name: str | None = None) -> MediaAsset | None:
        """Copy a file into managed storage and register it. Returns None on failure."""
        LOGGER.info("[media] Importing %s", source)
        try:
            storage_ref, byte_size = await asyncio.to_thread(self.storage.copy_into_managed_storage, source)
        except OSError as exc:
            LOGGER.warning("[media] Failed to import %s: %s", source, exc)
            return None
        duration = await asyncio.to_thread(self.storage.probe_duration, storage_ref)
        if duration is None:
            LOGGER.info("[media] Duration unknown for %s; importing with 0", source.name)
        asset = MediaAsset(
            asset_id=uuid4().hex,
            name=name or source.stem,
            storage_ref=storage_ref,
            duration=duration or 0.0,
            byte_size=byte_size,
            created_at=serialize_dt(local_now()),
        )
        return self.add(asset)

    def get(self, asset_id: str) -> MediaAsset | None:
        return self._assets.get(asset_id)

    def list_assets(self) -> list[MediaAsset]:
        return sorted(self._assets.values(), key=lambda asset: asset.created_at)

    def path_for(self, asset: MediaAsset) -> Path:
        return self.storage.path_for(asset.storage_ref)

    def is_ready_to_play(self, asset: MediaAsset) -> bool:
        return self.storage.exists(asset.storage_ref)

    def delete(self, asset_id: str) -> MediaAsset | None:
        asset = self._assets.get(asset_id)
        if asset is None:
            return None
        previous = list(self._assets.values())
        self.storage.delete(asset.storage_ref)
        del self._assets[asset_id]
        self._persist(previous)
        return asset

    def total_bytes(self) -> int:
        return sum(asset.byte_size for asset in self._assets.values())

    def formatted_total_storage(self) -> str:
        return format_byte_size(self.total_bytes())
