"""Key-value blob storage with a shadow backup copy.

Catalogs (media assets, schedule records) are persisted as JSON arrays under a
primary key and a backup key. Every save writes the backup with the previous
state first, then the primary with the new state, then the backup again with
the new state, so an interrupted save always leaves at least one decodable
copy behind. Loading prefers the primary copy, falls back to the backup (and
immediately heals the primary from it), and finally falls back to an empty
catalog. Persistence errors are logged and never raised to callers.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

LOGGER = logging.getLogger("reveille.blob_store")

T = TypeVar("T")

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def set(self, key: str, value: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process store; handy for tests and ephemeral runs."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self.data: dict[str, bytes] = dict(initial or {})

    def get(self, key: str) -> bytes | None:
        return self.data.get(key)

    def set(self, key: str, value: bytes) -> None:
        self.data[key] = bytes(value)

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonDirectoryStore:
    """One file per key inside a directory, written atomically via tmp + replace."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def set(self, key: str, value: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(value)
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)


class BackedUpBlob(Generic[T]):
    """A JSON array of items persisted under a primary key plus a backup key."""

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        *,
        encode_item: Callable[[T], dict[str, Any]],
        decode_item: Callable[[dict[str, Any]], T],
        backup_key: str | None = None,
    ) -> None:
        self._store = store
        self.key = key
        self.backup_key = backup_key or f"{key}.backup"
        self._encode_item = encode_item
        self._decode_item = decode_item

    def _encode(self, items: list[T]) -> bytes:
        payload = [self._encode_item(item) for item in items]
        return json.dumps(payload, indent=2).encode("utf-8")

    def _decode(self, raw: bytes) -> list[T]:
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, list):
            raise ValueError("Expected a JSON array")
        return [self._decode_item(entry) for entry in data]

    def _read(self, key: str) -> list[T] | None:
        try:
            raw = self._store.get(key)
        except OSError as exc:
            LOGGER.warning("[storage] Failed to read %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return self._decode(raw)
        except (ValueError, KeyError, TypeError, UnicodeDecodeError) as exc:
            LOGGER.warning("[storage] Unable to decode %s: %s", key, exc)
            return None

    def _write(self, key: str, encoded: bytes) -> bool:
        try:
            self._store.set(key, encoded)
            return True
        except OSError as exc:
            LOGGER.warning("[storage] Failed to write %s: %s", key, exc)
            return False

    def load(self) -> list[T]:
        items = self._read(self.key)
        if items is not None:
            LOGGER.debug("[storage] Loaded %d items from %s", len(items), self.key)
            return items
        items = self._read(self.backup_key)
        if items is not None:
            LOGGER.warning("[storage] Loaded %d items from backup %s; restoring primary", len(items), self.backup_key)
            self._write(self.key, self._encode(items))
            return items
        LOGGER.info("[storage] No saved data under %s; starting empty", self.key)
        return []

    def save(self, items: list[T], *, previous: list[T] | None = None) -> bool:
        """Persist ``items``; ``previous`` is written to the backup first when given."""
        try:
            encoded = self._encode(items)
            encoded_previous = self._encode(previous) if previous is not None else None
        except (TypeError, ValueError) as exc:
            LOGGER.warning("[storage] Failed to encode %s: %s", self.key, exc)
            return False
        if encoded_previous is not None:
            self._write(self.backup_key, encoded_previous)
        ok = self._write(self.key, encoded)
        self._write(self.backup_key, encoded)
        return ok
