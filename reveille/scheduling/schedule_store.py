"""Persisted schedule records with soft-delete cancellation."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from reveille.blob_store import BackedUpBlob, KeyValueStore
from reveille.datetime_utils import local_now

from .models import MAX_FADE_SECONDS, MIN_FADE_SECONDS, RECURRENCE_RULES, ScheduleRecord

LOGGER = logging.getLogger("reveille.schedule_store")

SCHEDULES_KEY = "schedules"

ListFilter = Literal["active", "all"]


class ScheduleValidationError(ValueError):
    """Raised when a schedule request is rejected before touching the store."""


class ScheduleStore:
    """Owns schedule records; every mutation is persisted before returning."""

    def __init__(self, kv_store: KeyValueStore, *, now: Callable[[], datetime] | None = None) -> None:
        self._blob: BackedUpBlob[ScheduleRecord] = BackedUpBlob(
            kv_store,
            SCHEDULES_KEY,
            encode_item=ScheduleRecord.to_json_dict,
            decode_item=ScheduleRecord.from_dict,
        )
        self._records: dict[str, ScheduleRecord] = {}
        self._now = now or local_now

    def load(self) -> list[ScheduleRecord]:
        self._records = {record.record_id: record for record in self._blob.load()}
        return self.list("all")

    def _snapshot(self) -> list[ScheduleRecord]:
        return [copy.copy(record) for record in self._records.values()]

    def _persist(self, previous: list[ScheduleRecord]) -> None:
        self._blob.save(list(self._records.values()), previous=previous)

    def validate(self, record: ScheduleRecord) -> None:
        fire = record.fire_dt()
        if fire is None:
            raise ScheduleValidationError("A fire time is required")
        if fire <= self._now():
            raise ScheduleValidationError("Cannot schedule audio in the past")
        if record.recurrence not in RECURRENCE_RULES:
            raise ScheduleValidationError(f"Unknown recurrence rule: {record.recurrence!r}")
        if not MIN_FADE_SECONDS <= record.fade_seconds <= MAX_FADE_SECONDS:
            raise ScheduleValidationError(
                f"Fade duration must be between {MIN_FADE_SECONDS:g} and {MAX_FADE_SECONDS:g} seconds"
            )

    def create(self, record: ScheduleRecord) -> ScheduleRecord:
        self.validate(record)
        if record.record_id in self._records:
            raise ScheduleValidationError(f"Schedule {record.record_id} already exists")
        previous = self._snapshot()
        record.active = True
        self._records[record.record_id] = copy.copy(record)
        self._persist(previous)
        LOGGER.info("[schedule] Created %s for asset %s at %s", record.record_id, record.asset_id, record.fire_at)
        return copy.copy(record)

    def update(self, record: ScheduleRecord) -> ScheduleRecord:
        if record.record_id not in self._records:
            raise ScheduleValidationError(f"Unknown schedule {record.record_id}")
        self.validate(record)
        previous = self._snapshot()
        record.active = True
        self._records[record.record_id] = copy.copy(record)
        self._persist(previous)
        LOGGER.info("[schedule] Updated %s to fire at %s", record.record_id, record.fire_at)
        return copy.copy(record)

    def cancel(self, record_id: str) -> ScheduleRecord | None:
        """Clear fire time, target, and active flag but keep fade/recurrence preferences."""
        record = self._records.get(record_id)
        if record is None:
            return None
        previous = self._snapshot()
        record.fire_at = None
        record.target = None
        record.active = False
        self._persist(previous)
        LOGGER.info("[schedule] Cancelled %s", record_id)
        return copy.copy(record)

    def deactivate(self, record_id: str) -> ScheduleRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        previous = self._snapshot()
        record.active = False
        record.fire_at = None
        self._persist(previous)
        return copy.copy(record)

    def advance(self, record_id: str, next_fire: datetime) -> ScheduleRecord | None:
        record = self._records.get(record_id)
        if record is None:
            return None
        previous = self._snapshot()
        record.set_fire(next_fire)
        self._persist(previous)
        return copy.copy(record)

    def remove_for_asset(self, asset_id: str) -> list[ScheduleRecord]:
        removed = [record for record in self._records.values() if record.asset_id == asset_id]
        if not removed:
            return []
        previous = self._snapshot()
        for record in removed:
            del self._records[record.record_id]
        self._persist(previous)
        return removed

    def get(self, record_id: str) -> ScheduleRecord | None:
        record = self._records.get(record_id)
        return copy.copy(record) if record else None

    def list(self, which: ListFilter = "all") -> list[ScheduleRecord]:
        records = [copy.copy(record) for record in self._records.values()]
        if which == "active":
            records = [record for record in records if record.active and record.fire_at]
        records.sort(key=_fire_sort_key)
        return records


def _fire_sort_key(record: ScheduleRecord) -> float:
    fire = record.fire_dt()
    return fire.timestamp() if fire else float("inf")
