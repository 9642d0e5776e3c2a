"""Versioned JSON file holding the local progress cache.

Layout history:
    (unversioned)  {"<entity_id>": {"completed": bool, "completedAt": str, "updatedAt": str}, ...}
    1              {"version": 1, "records": [{"entity_id", "completed", "completed_at", "updated_at"}]}
    2              {"version": 2, "owner_id", "last_synced_at", "linked_owner_id", "records": [ProgressRecord]}
    3              version 2 plus "collection": {"<resource_id>": owned quantity}

Older layouts are upgraded in memory before use; anything unreadable loads as the
empty default because the remote store is the eventual source of truth.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from questline.domain.models.progress import (
    ProgressRecord,
    SyncState,
    format_timestamp,
    parse_timestamp,
    utc_now,
)


CURRENT_LAYOUT_VERSION = 3

logger = logging.getLogger(__name__)


@dataclass
class LocalProgressState:
    owner_id: str
    records: list[ProgressRecord] = field(default_factory=list)
    last_synced_at: datetime | None = None
    linked_owner_id: str | None = None
    owned: dict[str, int] = field(default_factory=dict)


def _is_legacy_map(payload: dict[str, Any]) -> bool:
    if not payload:
        return False
    return all(isinstance(value, dict) and "completed" in value for value in payload.values())


def _legacy_map_to_v1(payload: dict[str, Any]) -> dict[str, Any]:
    fallback_stamp = format_timestamp(utc_now())
    records = []
    for entity_id, entry in payload.items():
        completed = entry.get("completed") is True
        updated_at = entry.get("updatedAt") or entry.get("completedAt") or fallback_stamp
        records.append(
            {
                "entity_id": str(entity_id),
                "completed": completed,
                "completed_at": (entry.get("completedAt") or updated_at) if completed else None,
                "updated_at": updated_at,
            }
        )
    return {"version": 1, "records": records}


def _v1_to_v2(payload: dict[str, Any], owner_id: str) -> dict[str, Any]:
    records = []
    for raw in payload.get("records") or []:
        if not isinstance(raw, dict):
            continue
        upgraded = dict(raw)
        upgraded.setdefault("owner_id", owner_id)
        upgraded["sync_state"] = SyncState.PENDING.value
        records.append(upgraded)
    return {
        "version": 2,
        "owner_id": payload.get("owner_id") or owner_id,
        "last_synced_at": None,
        "linked_owner_id": None,
        "records": records,
    }


def _v2_to_v3(payload: dict[str, Any], owner_id: str) -> dict[str, Any]:
    upgraded = dict(payload)
    upgraded["version"] = 3
    upgraded.setdefault("collection", {})
    return upgraded


_MIGRATIONS: dict[int, Callable[[dict[str, Any], str], dict[str, Any]]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def migrate_payload(payload: Any, *, owner_id: str) -> dict[str, Any] | None:
    """Upgrade a decoded payload to the current layout, or None when unrecognised."""
    if not isinstance(payload, dict):
        return None

    if "version" not in payload:
        if not _is_legacy_map(payload):
            return None
        payload = _legacy_map_to_v1(payload)

    try:
        version = int(payload.get("version"))
    except (TypeError, ValueError):
        return None

    while version < CURRENT_LAYOUT_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            return None
        payload = step(payload, owner_id)
        version = int(payload["version"])

    if version != CURRENT_LAYOUT_VERSION:
        logger.warning("Local progress layout is newer than supported", extra={"version": version})
        return None
    if not isinstance(payload.get("records"), list):
        return None
    return payload


def _read_collection(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    owned: dict[str, int] = {}
    for resource_id, quantity in raw.items():
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            logger.warning(
                "Skipping invalid collected quantity",
                extra={"resource_id": resource_id, "quantity": quantity},
            )
            continue
        owned[str(resource_id)] = quantity
    return owned


class LocalProgressFile:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self, *, owner_id: str) -> LocalProgressState:
        empty = LocalProgressState(owner_id=owner_id)
        if not self.path.exists():
            return empty
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Local progress unreadable; starting empty", extra={"path": str(self.path), "reason": str(exc)})
            return empty

        payload = migrate_payload(raw, owner_id=owner_id)
        if payload is None:
            logger.warning("Local progress payload unrecognised; starting empty", extra={"path": str(self.path)})
            return empty

        stored_owner = str(payload.get("owner_id") or owner_id)
        records: list[ProgressRecord] = []
        for raw_record in payload["records"]:
            if not isinstance(raw_record, dict):
                continue
            try:
                records.append(ProgressRecord.from_payload(raw_record, default_owner=stored_owner))
            except (TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping invalid local progress record",
                    extra={"entity_id": raw_record.get("entity_id"), "reason": str(exc)},
                )

        try:
            last_synced_at = parse_timestamp(payload.get("last_synced_at"))
        except (TypeError, ValueError):
            last_synced_at = None

        return LocalProgressState(
            owner_id=stored_owner,
            records=records,
            last_synced_at=last_synced_at,
            linked_owner_id=payload.get("linked_owner_id") or None,
            owned=_read_collection(payload.get("collection")),
        )

    def write(self, state: LocalProgressState) -> None:
        envelope = {
            "version": CURRENT_LAYOUT_VERSION,
            "owner_id": state.owner_id,
            "last_synced_at": format_timestamp(state.last_synced_at),
            "linked_owner_id": state.linked_owner_id,
            "collection": {resource_id: state.owned[resource_id] for resource_id in sorted(state.owned)},
            "records": [record.to_payload() for record in sorted(state.records, key=lambda r: r.entity_id)],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)
