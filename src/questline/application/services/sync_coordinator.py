from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from questline.application.dtos import MigrationSummary, PullSummary, SyncStatusView
from questline.application.services.event_bus import EventBus
from questline.application.services.progress_store import ANONYMOUS_OWNER, ProgressStore
from questline.domain.errors import RemoteStoreError
from questline.domain.events import ProgressChanged, SyncStatusChanged
from questline.domain.models.progress import (
    EntityKind,
    ProgressRecord,
    SyncState,
    ensure_utc,
    utc_now,
)
from questline.domain.repositories import RemoteProgressStore


logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 200


class SyncCoordinator:
    """Single ordered change path between the local store and a remote store.

    Local changes are applied synchronously and pushed in the background, one worker
    per entity. A newer change for the same entity replaces whatever is queued, so at
    most one outbound write per entity is in flight. Pulls merge remote records through
    the same upsert, which keeps the newer record and prefers the local copy on ties.
    """

    def __init__(
        self,
        store: ProgressStore,
        remote: RemoteProgressStore | None,
        event_bus: EventBus,
        *,
        owner_id: str | None = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
        batch_size: int = MAX_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._remote = remote
        self._event_bus = event_bus
        self._owner_id = owner_id or store.owner_id
        self._timeout = max(0.001, float(timeout_seconds))
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._max_backoff_seconds = max(self._backoff_seconds, float(max_backoff_seconds))
        self._batch_size = min(MAX_BATCH_SIZE, max(1, int(batch_size)))
        self._clock = clock
        self._sleep = sleep

        self._queued: Dict[str, ProgressRecord] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._in_flight: set[str] = set()
        self._periodic_task: Optional[asyncio.Task] = None
        self._pull_lock: Optional[asyncio.Lock] = None
        self._last_error: str | None = None

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def online(self) -> bool:
        return self._remote is not None

    # Intake -----------------------------------------------------------------

    def report_change(
        self,
        entity_id: str,
        completed: bool,
        at: datetime | None = None,
        kind: EntityKind | None = None,
    ) -> ProgressRecord:
        existing = self._store.get(entity_id)
        if at is None:
            stamp = self._clock()
            if existing is not None and stamp <= existing.updated_at:
                stamp = existing.updated_at + timedelta(microseconds=1)
        else:
            stamp = ensure_utc(at)

        record = ProgressRecord.for_change(
            owner_id=self._store.owner_id,
            entity_id=entity_id,
            completed=completed,
            at=stamp,
            kind=kind or (existing.kind if existing is not None else None),
        )
        if self._apply(record, source="local"):
            self._enqueue(record)
        else:
            logger.info(
                "Change older than stored progress was ignored",
                extra={"entity_id": entity_id, "reported_at": stamp.isoformat()},
            )
        return self._store.get(entity_id) or record

    def _apply(self, record: ProgressRecord, *, source: str, persist: bool = True) -> bool:
        before = self._store.version
        self._store.upsert(record)
        if self._store.version == before:
            return False
        if persist:
            self._store.persist()
        self._event_bus.publish(
            ProgressChanged(
                entity_id=record.entity_id,
                completed=record.completed,
                updated_at=record.updated_at,
                source=source,
                store_version=self._store.version,
            )
        )
        return True

    # Push path --------------------------------------------------------------

    def _can_push(self) -> bool:
        return self._remote is not None and self._store.owner_id == self._owner_id

    def _enqueue(self, record: ProgressRecord) -> None:
        if not self._can_push():
            return
        superseded = self._queued.get(record.entity_id)
        if superseded is not None:
            logger.debug("Coalescing queued push", extra={"entity_id": record.entity_id})
        self._queued[record.entity_id] = record
        self._ensure_worker(record.entity_id)

    def _ensure_worker(self, entity_id: str) -> None:
        if entity_id in self._workers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; flush() or the next connect() delivers it.
            return
        self._workers[entity_id] = loop.create_task(self._drain(entity_id), name=f"questline-push:{entity_id}")

    def _is_current(self, record: ProgressRecord) -> bool:
        current = self._store.get(record.entity_id)
        return current is not None and current.key == record.key and current.updated_at == record.updated_at

    def _backoff_delay(self, attempt: int) -> float:
        return min(self._backoff_seconds * (2 ** max(0, attempt - 1)), self._max_backoff_seconds)

    async def _drain(self, entity_id: str) -> None:
        record: ProgressRecord | None = None
        attempt = 0
        try:
            while True:
                newer = self._queued.pop(entity_id, None)
                if newer is not None:
                    record, attempt = newer, 0
                if record is None:
                    return
                if not self._is_current(record):
                    logger.debug("Dropping push overtaken by newer progress", extra={"entity_id": entity_id})
                    record = None
                    continue

                attempt += 1
                try:
                    await self._call_remote(
                        functools.partial(self._remote.upsert, record), "upsert", entity_ids=(entity_id,)
                    )
                except RemoteStoreError as exc:
                    self._record_failure(entity_id, exc, attempt=attempt)
                    if not exc.retryable or attempt >= self._max_attempts:
                        logger.warning(
                            "Push attempts exhausted; record stays pending",
                            extra={"entity_id": entity_id, "attempts": attempt},
                        )
                        record = None
                        continue
                    await self._sleep(self._backoff_delay(attempt))
                    continue

                self._mark(record, SyncState.SYNCED)
                record = None
        except Exception:
            logger.exception("Push worker failed unexpectedly", extra={"entity_id": entity_id})
            raise
        finally:
            self._workers.pop(entity_id, None)

    async def _call_remote(
        self,
        factory: Callable[[], Awaitable[Any]],
        operation: str,
        entity_ids: Iterable[str] = (),
    ) -> Any:
        entity_ids = set(entity_ids)
        if self._remote is None:
            raise RemoteStoreError("remote store not configured", retryable=False)
        if entity_ids:
            self._in_flight.update(entity_ids)
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteStoreError(f"{operation} timed out after {self._timeout:g}s") from exc
        except RemoteStoreError:
            raise
        except OSError as exc:
            raise RemoteStoreError(f"{operation} failed: {exc}") from exc
        finally:
            self._in_flight.difference_update(entity_ids)

    def _mark(self, record: ProgressRecord, state: SyncState) -> None:
        if not self._store.mark_sync_state(record.entity_id, record.updated_at, state):
            return
        self._store.persist()
        self._event_bus.publish(
            SyncStatusChanged(
                entity_id=record.entity_id,
                state=state.value,
                pending_count=len(self._store.pending_records()),
            )
        )

    def _record_failure(self, entity_id: str | None, exc: Exception, *, attempt: int = 0) -> None:
        self._last_error = str(exc) or type(exc).__name__
        logger.warning(
            "Remote sync call failed",
            extra={"entity_id": entity_id, "attempt": attempt, "reason": self._last_error},
        )
        self._event_bus.publish(
            SyncStatusChanged(
                entity_id=entity_id,
                state=SyncState.PENDING.value,
                pending_count=len(self._store.pending_records()),
                error=self._last_error,
            )
        )

    async def _with_retry(
        self,
        factory: Callable[[], Awaitable[Any]],
        operation: str,
        entity_ids: Iterable[str] = (),
    ) -> Any:
        entity_ids = tuple(entity_ids)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._call_remote(factory, operation, entity_ids)
            except RemoteStoreError as exc:
                self._record_failure(None, exc, attempt=attempt)
                if not exc.retryable or attempt >= self._max_attempts:
                    raise
                await self._sleep(self._backoff_delay(attempt))

    def resync_pending(self) -> int:
        """Queue every unsynced record that has no active push; returns how many were queued."""
        if not self._can_push():
            return 0
        queued = 0
        for record in self._store.pending_records():
            if record.entity_id in self._workers or record.entity_id in self._queued:
                continue
            self._enqueue(record)
            queued += 1
        return queued

    def discard_queued(self) -> int:
        """Drop queued pushes; running workers skip records the store no longer holds."""
        dropped = len(self._queued)
        self._queued.clear()
        return dropped

    async def flush(self) -> None:
        for entity_id in list(self._queued):
            self._ensure_worker(entity_id)
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    # Pull path --------------------------------------------------------------

    async def pull(self) -> PullSummary:
        if self._remote is None:
            return PullSummary(error="remote store not configured")
        if self._pull_lock is None:
            self._pull_lock = asyncio.Lock()
        async with self._pull_lock:
            return await self._pull_once()

    async def _pull_once(self) -> PullSummary:
        since = self._store.last_synced_at
        try:
            remote_records: List[ProgressRecord] = await self._call_remote(
                functools.partial(self._remote.fetch_since, since), "fetch_since"
            )
        except RemoteStoreError as exc:
            self._record_failure(None, exc)
            return PullSummary(error=self._last_error)

        summary = PullSummary(fetched=len(remote_records))
        newest = since
        for remote_record in remote_records:
            if remote_record.owner_id != self._store.owner_id:
                logger.warning(
                    "Skipping remote record for another owner",
                    extra={"entity_id": remote_record.entity_id, "owner_id": remote_record.owner_id},
                )
                summary.skipped += 1
                continue
            incoming = remote_record.with_sync_state(SyncState.SYNCED)
            if self._apply(incoming, source="remote", persist=False):
                self._queued.pop(incoming.entity_id, None)
                summary.applied += 1
            else:
                local = self._store.get(incoming.entity_id)
                if local is not None and local.sync_state != SyncState.SYNCED and local.same_content(incoming):
                    self._store.mark_sync_state(local.entity_id, local.updated_at, SyncState.SYNCED)
                    self._queued.pop(local.entity_id, None)
                summary.skipped += 1
            if newest is None or incoming.updated_at > newest:
                newest = incoming.updated_at

        self._store.last_synced_at = newest
        self._store.persist()
        logger.info(
            "Pulled remote progress",
            extra={"fetched": summary.fetched, "applied": summary.applied, "skipped": summary.skipped},
        )
        return summary

    # Bulk migration ---------------------------------------------------------

    async def migrate_all(self, *, pull_first: bool = True) -> MigrationSummary:
        """Send every local record in bounded batches.

        Remote rows are pulled first so a record the remote already holds in a newer
        version is replaced locally before the batches go out. Without a successful
        pull nothing is sent.
        """
        if not self._can_push():
            return MigrationSummary(
                total=len(self._store), errors=["remote store not configured or owner not linked"]
            )
        if pull_first:
            pulled = await self.pull()
            if not pulled.ok:
                logger.warning("Migration skipped; remote progress could not be read", extra={"reason": pulled.error})
                return MigrationSummary(total=len(self._store), errors=[f"pull before migration failed: {pulled.error}"])

        records = sorted(self._store.all_records(), key=lambda r: r.entity_id)
        summary = MigrationSummary(total=len(records))

        for start in range(0, len(records), self._batch_size):
            batch = records[start:start + self._batch_size]
            summary.batches += 1
            try:
                await self._with_retry(
                    functools.partial(self._remote.batch_upsert, batch),
                    "batch_upsert",
                    entity_ids=[record.entity_id for record in batch],
                )
            except RemoteStoreError as exc:
                summary.failed_batches += 1
                summary.errors.append(str(exc))
                continue
            summary.sent += len(batch)
            for record in batch:
                if self._store.mark_sync_state(record.entity_id, record.updated_at, SyncState.SYNCED):
                    queued = self._queued.get(record.entity_id)
                    if queued is not None and queued.updated_at == record.updated_at:
                        self._queued.pop(record.entity_id, None)

        if summary.ok:
            self._store.linked_owner_id = self._owner_id
        self._store.persist()
        self._event_bus.publish(
            SyncStatusChanged(
                entity_id=None,
                state="migrated" if summary.ok else SyncState.PENDING.value,
                pending_count=len(self._store.pending_records()),
                error=summary.errors[-1] if summary.errors else None,
            )
        )
        logger.info(
            "Migrated local progress",
            extra={"total": summary.total, "batches": summary.batches, "failed_batches": summary.failed_batches},
        )
        return summary

    # Session lifecycle ------------------------------------------------------

    def link_owner(self) -> None:
        """Re-key the local store to this coordinator's owner before first contact."""
        if self._store.owner_id == self._owner_id:
            return
        if self._store.owner_id != ANONYMOUS_OWNER:
            logger.info(
                "Discarding cached progress of a different owner",
                extra={"cached_owner": self._store.owner_id, "owner": self._owner_id},
            )
            self._store.reset()
        self._store.adopt_owner(self._owner_id)
        self._queued.clear()
        self._store.persist()

    async def connect(self) -> PullSummary:
        if self._remote is None:
            return PullSummary(error="remote store not configured")
        self.link_owner()
        summary = await self.pull()
        if summary.ok and self._store.linked_owner_id != self._owner_id:
            await self.migrate_all(pull_first=False)
        self.resync_pending()
        return summary

    def start_periodic_pull(self, interval_seconds: float) -> asyncio.Task:
        if self._periodic_task is not None and not self._periodic_task.done():
            return self._periodic_task
        loop = asyncio.get_running_loop()
        self._periodic_task = loop.create_task(
            self._periodic_pull(max(1.0, float(interval_seconds))), name="questline-periodic-pull"
        )
        return self._periodic_task

    async def _periodic_pull(self, interval_seconds: float) -> None:
        while True:
            await self._sleep(interval_seconds)
            try:
                await self.pull()
                self.resync_pending()
            except Exception:
                logger.exception("Scheduled pull failed; retrying on the next interval")

    async def close(self) -> None:
        tasks = list(self._workers.values())
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
            self._periodic_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._store.persist()

    def sync_status(self) -> SyncStatusView:
        return SyncStatusView(
            online=self.online,
            pending=len(self._store.pending_records()),
            queued=len(self._queued),
            in_flight=len(self._in_flight),
            last_synced_at=self._store.last_synced_at,
            last_error=self._last_error,
        )
