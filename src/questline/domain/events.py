from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ProgressChanged:
    entity_id: str
    completed: bool
    updated_at: datetime
    source: str
    store_version: int


@dataclass
class PriorityInvalidated:
    store_version: int
    entity_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass
class SyncStatusChanged:
    entity_id: str | None
    state: str
    pending_count: int
    error: str | None = None
