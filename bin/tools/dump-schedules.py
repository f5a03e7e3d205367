#!/usr/bin/env python3
"""Print the persisted media catalog and schedules from a Reveille data directory."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from reveille.blob_store import JsonDirectoryStore
from reveille.media_library import ManagedAssetStorage, MediaRegistry
from reveille.scheduling.config import ReveilleConfig
from reveille.scheduling.schedule_store import ScheduleStore


def _resolve_data_dir(explicit: str | None) -> Path:
    if explicit:
        return Path(explicit).expanduser().resolve()
    return ReveilleConfig.from_env().data_dir


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Dump Reveille assets and schedules")
    parser.add_argument("--data-dir", help="Reveille data directory (defaults to REVEILLE_DATA_DIR)")
    parser.add_argument("--active", action="store_true", help="Only list active schedules")
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of a table")
    args = parser.parse_args(argv)

    data_dir = _resolve_data_dir(args.data_dir)
    if not data_dir.exists():
        print(f"Error: {data_dir} not found", file=sys.stderr)
        return 1

    kv_store = JsonDirectoryStore(data_dir / "store")
    registry = MediaRegistry(kv_store=kv_store, storage=ManagedAssetStorage(data_dir / "media"))
    registry.load()
    store = ScheduleStore(kv_store)
    store.load()
    records = store.list("active" if args.active else "all")

    if args.json:
        payload = {
            "assets": [asset.to_public_dict() for asset in registry.list_assets()],
            "schedules": [record.to_public_dict() for record in records],
            "total_storage": registry.formatted_total_storage(),
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"Assets ({registry.formatted_total_storage()}):")
    for asset in registry.list_assets():
        ready = "ready" if registry.is_ready_to_play(asset) else "missing"
        print(f"  {asset.asset_id}  {asset.name:<30} {asset.formatted_duration:>6}  {asset.formatted_size:>9}  {ready}")
    print("Schedules:")
    for record in records:
        data = record.to_public_dict()
        asset = registry.get(record.asset_id)
        state = "active" if record.active else "inactive"
        print(
            f"  {record.record_id}  {asset.name if asset else record.asset_id:<30} "
            f"{record.fire_at or '-':<32} {data['recurrence_label']:<14} {data['target_name'] or '-':<20} {state}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
