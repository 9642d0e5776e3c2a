from dataclasses import dataclass, field
from datetime import datetime
from typing import List


@dataclass
class PullSummary:
    fetched: int = 0
    applied: int = 0
    skipped: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class MigrationSummary:
    total: int = 0
    batches: int = 0
    sent: int = 0
    failed_batches: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_batches == 0 and not self.errors


@dataclass
class SyncStatusView:
    online: bool
    pending: int
    queued: int
    in_flight: int
    last_synced_at: datetime | None = None
    last_error: str | None = None

    @property
    def label(self) -> str:
        if not self.online:
            return "local only"
        if self.pending or self.queued or self.in_flight:
            return "sync pending"
        return "synced"


@dataclass
class PriorityRowView:
    entity_id: str
    name: str
    kind: str
    tier: str
    depth: int
    completed: bool
    drivers: List[str] = field(default_factory=list)
    cycle_detected: bool = False
