from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from questline.domain.errors import RemoteStoreError
from questline.domain.models.progress import ProgressRecord, SyncState
from questline.domain.repositories import RemoteProgressStore


class InMemoryRemoteProgressStore(RemoteProgressStore):
    """Remote stand-in keeping the newest record per (owner_id, entity_id).

    ``fail_next`` queues failures for the next calls, and ``calls`` records every
    attempted operation so sync behaviour can be asserted without a network.
    """

    def __init__(self, records: Sequence[ProgressRecord] = (), *, latency_seconds: float = 0.0) -> None:
        self._rows: Dict[Tuple[str, str], ProgressRecord] = {}
        self._failures: List[Tuple[Optional[str], Exception]] = []
        self.latency_seconds = latency_seconds
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.closed = False
        for record in records:
            self._store(record)

    def fail_next(self, count: int = 1, exc: Exception | None = None, *, operation: str | None = None) -> None:
        """Fail the next ``count`` calls, or only calls to ``operation`` when given."""
        for _ in range(max(0, int(count))):
            self._failures.append((operation, exc or RemoteStoreError("simulated network failure")))

    def get(self, owner_id: str, entity_id: str) -> Optional[ProgressRecord]:
        return self._rows.get((owner_id, entity_id))

    def all_records(self) -> List[ProgressRecord]:
        return sorted(self._rows.values(), key=lambda r: (r.owner_id, r.entity_id))

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    async def upsert(self, record: ProgressRecord) -> None:
        await self._before_call("upsert", (record.entity_id,))
        self._store(record)

    async def batch_upsert(self, records: Sequence[ProgressRecord]) -> int:
        await self._before_call("batch_upsert", tuple(r.entity_id for r in records))
        for record in records:
            self._store(record)
        return len(records)

    async def fetch_since(self, since: Optional[datetime]) -> List[ProgressRecord]:
        await self._before_call("fetch_since", ())
        rows = [row for row in self._rows.values() if since is None or row.updated_at > since]
        return sorted(rows, key=lambda r: (r.updated_at, r.entity_id))

    async def close(self) -> None:
        self.closed = True

    async def _before_call(self, operation: str, entity_ids: Tuple[str, ...]) -> None:
        self.calls.append((operation, entity_ids))
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)
        for index, (target, exc) in enumerate(self._failures):
            if target is None or target == operation:
                del self._failures[index]
                raise exc

    def _store(self, record: ProgressRecord) -> None:
        current = self._rows.get(record.key)
        if current is not None and current.updated_at >= record.updated_at:
            return
        self._rows[record.key] = record.with_sync_state(SyncState.SYNCED)
