from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class EntityKind(str, Enum):
    QUEST = "quest"
    UPGRADE_LEVEL = "upgrade_level"

    @classmethod
    def _missing_(cls, value: object) -> "EntityKind | None":
        # Content exports spell kinds in camelCase ("upgradeLevel") or kebab-case.
        if not isinstance(value, str):
            return None
        normalized = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", value.strip()).replace("-", "_").lower()
        for member in cls:
            if member.value == normalized:
                return member
        return None


class SyncState(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize to a fixed-width ISO-8601 form that sorts in time order."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"Timestamp {value!r} is out of range") from exc
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except OverflowError as exc:
        raise ValueError(f"Timestamp {value!r} is out of range") from exc


def infer_entity_kind(entity_id: str) -> EntityKind:
    # Station levels are keyed "<station>-<level>"; quest ids never end in "-<int>".
    head, sep, tail = str(entity_id).rpartition("-")
    if sep and head and tail.isdigit():
        return EntityKind.UPGRADE_LEVEL
    return EntityKind.QUEST


@dataclass(frozen=True)
class ProgressRecord:
    owner_id: str
    entity_id: str
    kind: EntityKind
    completed: bool
    completed_at: datetime | None
    updated_at: datetime
    sync_state: SyncState = SyncState.PENDING

    def __post_init__(self) -> None:
        if not str(self.entity_id or "").strip():
            raise ValueError("ProgressRecord requires an entity_id")
        if self.completed and self.completed_at is None:
            raise ValueError(f"Completed record {self.entity_id!r} requires completed_at")
        if not self.completed and self.completed_at is not None:
            raise ValueError(f"Incomplete record {self.entity_id!r} must not carry completed_at")
        object.__setattr__(self, "kind", EntityKind(self.kind))
        object.__setattr__(self, "sync_state", SyncState(self.sync_state))
        object.__setattr__(self, "updated_at", ensure_utc(self.updated_at))
        if self.completed_at is not None:
            object.__setattr__(self, "completed_at", ensure_utc(self.completed_at))

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner_id, self.entity_id)

    @classmethod
    def for_change(
        cls,
        *,
        owner_id: str,
        entity_id: str,
        completed: bool,
        at: datetime,
        kind: EntityKind | None = None,
    ) -> "ProgressRecord":
        stamp = ensure_utc(at)
        return cls(
            owner_id=owner_id,
            entity_id=entity_id,
            kind=kind or infer_entity_kind(entity_id),
            completed=bool(completed),
            completed_at=stamp if completed else None,
            updated_at=stamp,
            sync_state=SyncState.PENDING,
        )

    def with_sync_state(self, state: SyncState) -> "ProgressRecord":
        return replace(self, sync_state=SyncState(state))

    def with_owner(self, owner_id: str) -> "ProgressRecord":
        return replace(self, owner_id=owner_id)

    def same_content(self, other: "ProgressRecord") -> bool:
        """Equality ignoring sync bookkeeping."""
        return (
            self.key == other.key
            and self.kind == other.kind
            and self.completed == other.completed
            and self.completed_at == other.completed_at
            and self.updated_at == other.updated_at
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "entity_id": self.entity_id,
            "kind": self.kind.value,
            "completed": self.completed,
            "completed_at": format_timestamp(self.completed_at),
            "updated_at": format_timestamp(self.updated_at),
            "sync_state": self.sync_state.value,
        }

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        default_owner: str | None = None,
        sync_state: SyncState | None = None,
    ) -> "ProgressRecord":
        entity_id = str(payload.get("entity_id") or "").strip()
        owner_id = str(payload.get("owner_id") or default_owner or "").strip()
        if not owner_id:
            raise ValueError(f"Record {entity_id!r} has no owner_id")
        updated_at = parse_timestamp(payload.get("updated_at"))
        if updated_at is None:
            raise ValueError(f"Record {entity_id!r} has no updated_at")
        raw_kind = payload.get("kind")
        state = sync_state or SyncState(str(payload.get("sync_state") or SyncState.PENDING.value))
        return cls(
            owner_id=owner_id,
            entity_id=entity_id,
            kind=EntityKind(raw_kind) if raw_kind else infer_entity_kind(entity_id),
            completed=bool(payload.get("completed", False)),
            completed_at=parse_timestamp(payload.get("completed_at")),
            updated_at=updated_at,
            sync_state=state,
        )


def merge(local: ProgressRecord, remote: ProgressRecord) -> ProgressRecord:
    """Last-write-wins by updated_at; ties keep the local copy."""
    if remote.updated_at > local.updated_at:
        return remote
    return local


@dataclass(frozen=True)
class ProgressSnapshot:
    version: int
    records: tuple[ProgressRecord, ...] = ()
    completed_ids: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        completed = frozenset(record.entity_id for record in self.records if record.completed)
        object.__setattr__(self, "completed_ids", completed)

    def is_completed(self, entity_id: str) -> bool:
        return entity_id in self.completed_ids
