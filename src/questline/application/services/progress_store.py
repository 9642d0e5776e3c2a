from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from questline.domain.models.progress import (
    ProgressRecord,
    ProgressSnapshot,
    SyncState,
    ensure_utc,
)
from questline.infrastructure.local_progress_file import LocalProgressFile, LocalProgressState


logger = logging.getLogger(__name__)

ANONYMOUS_OWNER = "local"


class ProgressStore:
    """Local progress cache for a single owner.

    Every applied write bumps ``version``; stale writes (updated_at not newer than
    the stored record) are accepted as no-ops so replays stay harmless.
    """

    def __init__(self, owner_id: str = ANONYMOUS_OWNER, local_file: LocalProgressFile | None = None) -> None:
        self._owner_id = owner_id
        self._local_file = local_file
        self._records: Dict[str, ProgressRecord] = {}
        self._version = 0
        self.last_synced_at: datetime | None = None
        self.linked_owner_id: str | None = None
        self._owned: Dict[str, int] = {}

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._records)

    def get(self, entity_id: str) -> Optional[ProgressRecord]:
        return self._records.get(entity_id)

    def upsert(self, record: ProgressRecord) -> Optional[ProgressRecord]:
        if record.owner_id != self._owner_id:
            raise ValueError(
                f"Record for owner {record.owner_id!r} cannot be stored for owner {self._owner_id!r}"
            )
        previous = self._records.get(record.entity_id)
        if previous is not None and previous.updated_at >= record.updated_at:
            logger.debug(
                "Ignoring stale or repeated progress write",
                extra={
                    "entity_id": record.entity_id,
                    "stored_updated_at": previous.updated_at.isoformat(),
                    "incoming_updated_at": record.updated_at.isoformat(),
                },
            )
            return previous
        self._records[record.entity_id] = record
        self._version += 1
        return previous

    def mark_sync_state(self, entity_id: str, updated_at: datetime, state: SyncState) -> bool:
        current = self._records.get(entity_id)
        if current is None or current.updated_at != ensure_utc(updated_at):
            return False
        if current.sync_state != state:
            self._records[entity_id] = current.with_sync_state(state)
        return True

    def all_records(self) -> tuple[ProgressRecord, ...]:
        return tuple(self._records.values())

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(version=self._version, records=self.all_records())

    def pending_records(self) -> list[ProgressRecord]:
        return [record for record in self._records.values() if record.sync_state != SyncState.SYNCED]

    def completed_count(self) -> int:
        return sum(1 for record in self._records.values() if record.completed)

    def owned_quantity(self, resource_id: str) -> int:
        return self._owned.get(resource_id, 0)

    def owned_quantities(self) -> Dict[str, int]:
        return dict(self._owned)

    def set_owned_quantity(self, resource_id: str, quantity: int) -> int:
        """Record how many of a resource the owner already holds; zero forgets it."""
        if not str(resource_id or "").strip():
            raise ValueError("Collected quantity requires a resource_id")
        quantity = max(0, int(quantity))
        if quantity:
            self._owned[resource_id] = quantity
        else:
            self._owned.pop(resource_id, None)
        return quantity

    def adopt_owner(self, owner_id: str) -> None:
        if owner_id == self._owner_id:
            return
        logger.info(
            "Re-keying local progress to a new owner",
            extra={"from_owner": self._owner_id, "to_owner": owner_id, "records": len(self._records)},
        )
        self._records = {
            entity_id: record.with_owner(owner_id).with_sync_state(SyncState.PENDING)
            for entity_id, record in self._records.items()
        }
        self._owner_id = owner_id
        self.linked_owner_id = None
        self.last_synced_at = None
        self._version += 1

    def reset(self) -> None:
        self._records = {}
        self._owned = {}
        self.last_synced_at = None
        self.linked_owner_id = None
        self._version += 1

    def load(self) -> None:
        if self._local_file is None:
            return
        state = self._local_file.read(owner_id=self._owner_id)
        if state.owner_id not in (self._owner_id, ANONYMOUS_OWNER):
            logger.info(
                "Local progress belongs to another owner; starting empty",
                extra={"stored_owner": state.owner_id, "owner": self._owner_id},
            )
            state = LocalProgressState(owner_id=self._owner_id)
        records: Dict[str, ProgressRecord] = {}
        for record in state.records:
            if record.owner_id != self._owner_id:
                record = record.with_owner(self._owner_id).with_sync_state(SyncState.PENDING)
            existing = records.get(record.entity_id)
            if existing is None or record.updated_at > existing.updated_at:
                records[record.entity_id] = record
        self._records = records
        same_owner = state.owner_id == self._owner_id
        self.last_synced_at = state.last_synced_at if same_owner else None
        self.linked_owner_id = state.linked_owner_id if same_owner else None
        self._owned = dict(state.owned)
        self._version += 1

    def persist(self) -> None:
        if self._local_file is None:
            return
        state = LocalProgressState(
            owner_id=self._owner_id,
            records=list(self._records.values()),
            last_synced_at=self.last_synced_at,
            linked_owner_id=self.linked_owner_id,
            owned=dict(self._owned),
        )
        try:
            self._local_file.write(state)
        except OSError:
            logger.exception("Failed to persist local progress", extra={"path": str(self._local_file.path)})
