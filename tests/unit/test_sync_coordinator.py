import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import unittest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from questline.application.services.event_bus import EventBus
from questline.application.services.progress_store import ProgressStore
from questline.application.services.sync_coordinator import SyncCoordinator
from questline.domain.errors import RemoteValidationError
from questline.domain.events import ProgressChanged, SyncStatusChanged
from questline.domain.models.progress import ProgressRecord, SyncState
from questline.infrastructure.inmemory.inmemory_remote_store import InMemoryRemoteProgressStore


T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class _RecordedSleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _OverwritingRemote(InMemoryRemoteProgressStore):
    """Replaces rows on every upsert, like a PostgREST merge-duplicates upsert."""

    def _store(self, record: ProgressRecord) -> None:
        self._rows[record.key] = record.with_sync_state(SyncState.SYNCED)


class _ScheduledSleeps:
    """Lets ``ticks`` scheduled waits pass, then parks the caller until cancelled."""

    def __init__(self, ticks: int) -> None:
        self.delays: list[float] = []
        self.ticks = ticks
        self.exhausted = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) > self.ticks:
            self.exhausted.set()
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class _GatedRemote(InMemoryRemoteProgressStore):
    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    async def upsert(self, record: ProgressRecord) -> None:
        self.started.set()
        await self.gate.wait()
        await super().upsert(record)


def _at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


class SyncCoordinatorPushTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = ProgressStore("u1")
        self.bus = EventBus()
        self.remote = InMemoryRemoteProgressStore()
        self.sleeps = _RecordedSleeps()

    def _coordinator(self, remote=None, **kwargs) -> SyncCoordinator:
        kwargs.setdefault("sleep", self.sleeps)
        return SyncCoordinator(self.store, remote or self.remote, self.bus, owner_id="u1", **kwargs)

    async def test_change_is_applied_locally_before_push(self) -> None:
        coordinator = self._coordinator()
        record = coordinator.report_change("q1", True, at=T0)

        self.assertTrue(self.store.get("q1").completed)
        self.assertEqual(SyncState.PENDING, record.sync_state)
        self.assertIsNone(self.remote.get("u1", "q1"))

        await coordinator.flush()
        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)
        self.assertTrue(self.remote.get("u1", "q1").completed)

    async def test_push_fails_twice_then_succeeds(self) -> None:
        self.remote.fail_next(2)
        coordinator = self._coordinator(max_attempts=5, backoff_seconds=0.5)

        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()

        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)
        self.assertEqual(1, len(self.remote.all_records()))
        self.assertEqual(3, self.remote.call_count("upsert"))
        self.assertEqual([0.5, 1.0], self.sleeps.delays)

    async def test_backoff_is_capped(self) -> None:
        self.remote.fail_next(4)
        coordinator = self._coordinator(max_attempts=5, backoff_seconds=1.0, max_backoff_seconds=3.0)

        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()

        self.assertEqual([1.0, 2.0, 3.0, 3.0], self.sleeps.delays)

    async def test_exhausted_push_leaves_record_pending(self) -> None:
        self.remote.fail_next(10)
        statuses: list[SyncStatusChanged] = []
        self.bus.subscribe(SyncStatusChanged, statuses.append)
        coordinator = self._coordinator(max_attempts=3)

        with self.assertLogs("questline.application.services.sync_coordinator", level="WARNING"):
            coordinator.report_change("q1", True, at=T0)
            await coordinator.flush()

        self.assertEqual(SyncState.PENDING, self.store.get("q1").sync_state)
        self.assertEqual(3, self.remote.call_count("upsert"))
        self.assertEqual(3, len(statuses))
        self.assertTrue(all(status.error for status in statuses))
        status = coordinator.sync_status()
        self.assertEqual(1, status.pending)
        self.assertEqual("sync pending", status.label)
        self.assertIn("simulated", status.last_error)

    async def test_validation_failure_is_not_retried(self) -> None:
        self.remote.fail_next(1, RemoteValidationError("bad row"))
        coordinator = self._coordinator(max_attempts=5)

        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()

        self.assertEqual(1, self.remote.call_count("upsert"))
        self.assertEqual(SyncState.PENDING, self.store.get("q1").sync_state)

    async def test_resync_retries_pending_records(self) -> None:
        self.remote.fail_next(2)
        coordinator = self._coordinator(max_attempts=1)
        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()
        self.assertEqual(SyncState.PENDING, self.store.get("q1").sync_state)

        self.assertEqual(1, coordinator.resync_pending())
        await coordinator.flush()
        # second queued failure is consumed here
        self.assertEqual(SyncState.PENDING, self.store.get("q1").sync_state)

        coordinator.resync_pending()
        await coordinator.flush()
        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)

    async def test_timeout_counts_as_failure(self) -> None:
        slow = InMemoryRemoteProgressStore(latency_seconds=1.0)
        coordinator = self._coordinator(remote=slow, timeout_seconds=0.01, max_attempts=1)

        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()

        self.assertEqual(SyncState.PENDING, self.store.get("q1").sync_state)
        self.assertIsNone(slow.get("u1", "q1"))
        self.assertIn("timed out", coordinator.sync_status().last_error)

    async def test_rapid_changes_coalesce_into_newest_push(self) -> None:
        coordinator = self._coordinator()

        coordinator.report_change("q1", True, at=_at(1))
        coordinator.report_change("q1", False, at=_at(2))
        coordinator.report_change("q1", True, at=_at(3))
        await coordinator.flush()

        self.assertEqual(1, self.remote.call_count("upsert"))
        self.assertEqual(_at(3), self.remote.get("u1", "q1").updated_at)
        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)

    async def test_change_during_in_flight_push_is_sent_after_it(self) -> None:
        remote = _GatedRemote()
        coordinator = self._coordinator(remote=remote)

        coordinator.report_change("q1", True, at=_at(1))
        await remote.started.wait()
        self.assertEqual(1, coordinator.sync_status().in_flight)

        coordinator.report_change("q1", False, at=_at(2))
        coordinator.report_change("q1", True, at=_at(3))
        remote.gate.set()
        await coordinator.flush()

        self.assertEqual(2, remote.call_count("upsert"))
        self.assertEqual(_at(3), remote.get("u1", "q1").updated_at)
        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)
        self.assertEqual(0, coordinator.sync_status().in_flight)

    async def test_stale_change_is_ignored(self) -> None:
        events: list[ProgressChanged] = []
        self.bus.subscribe(ProgressChanged, events.append)
        coordinator = self._coordinator()

        coordinator.report_change("q1", True, at=_at(10))
        result = coordinator.report_change("q1", False, at=_at(5))
        await coordinator.flush()

        self.assertTrue(result.completed)
        self.assertEqual(1, len(events))
        self.assertEqual("local", events[0].source)
        self.assertEqual(1, self.remote.call_count("upsert"))

    async def test_clock_stamps_never_go_backwards(self) -> None:
        coordinator = self._coordinator(clock=lambda: T0)

        first = coordinator.report_change("q1", True)
        second = coordinator.report_change("q1", False)

        self.assertGreater(second.updated_at, first.updated_at)
        self.assertFalse(self.store.get("q1").completed)
        await coordinator.flush()

    async def test_local_only_mode_keeps_changes_pending(self) -> None:
        coordinator = SyncCoordinator(self.store, None, self.bus)

        coordinator.report_change("q1", True, at=T0)
        await coordinator.flush()
        summary = await coordinator.pull()

        self.assertTrue(self.store.get("q1").completed)
        self.assertFalse(summary.ok)
        status = coordinator.sync_status()
        self.assertFalse(status.online)
        self.assertEqual("local only", status.label)


class SyncCoordinatorPullTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = ProgressStore("u1")
        self.bus = EventBus()
        self.remote = InMemoryRemoteProgressStore()
        self.coordinator = SyncCoordinator(self.store, self.remote, self.bus, owner_id="u1", sleep=_RecordedSleeps())

    def _remote_record(self, entity_id: str, completed: bool, seconds: int, owner: str = "u1") -> ProgressRecord:
        return ProgressRecord.for_change(owner_id=owner, entity_id=entity_id, completed=completed, at=_at(seconds))

    async def test_pull_merges_newer_remote_records(self) -> None:
        events: list[ProgressChanged] = []
        self.bus.subscribe(ProgressChanged, events.append)
        await self.remote.batch_upsert([self._remote_record("q1", True, 5), self._remote_record("q2", False, 7)])

        summary = await self.coordinator.pull()

        self.assertTrue(summary.ok)
        self.assertEqual(2, summary.fetched)
        self.assertEqual(2, summary.applied)
        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)
        self.assertEqual(_at(7), self.store.last_synced_at)
        self.assertEqual({"remote"}, {event.source for event in events})

    async def test_pull_never_overwrites_newer_pending_record(self) -> None:
        local = self._remote_record("q1", False, 10)
        self.store.upsert(local)
        await self.remote.upsert(self._remote_record("q1", True, 5))

        summary = await self.coordinator.pull()

        self.assertEqual(1, summary.skipped)
        current = self.store.get("q1")
        self.assertFalse(current.completed)
        self.assertEqual(SyncState.PENDING, current.sync_state)

    async def test_pull_marks_identical_pending_record_synced(self) -> None:
        record = self._remote_record("q1", True, 5)
        self.store.upsert(record)
        await self.remote.upsert(record)

        await self.coordinator.pull()

        self.assertEqual(SyncState.SYNCED, self.store.get("q1").sync_state)

    async def test_pull_uses_last_synced_watermark(self) -> None:
        await self.remote.upsert(self._remote_record("q1", True, 5))
        await self.coordinator.pull()
        await self.remote.upsert(self._remote_record("q2", True, 9))

        summary = await self.coordinator.pull()

        self.assertEqual(1, summary.fetched)
        self.assertEqual(_at(9), self.store.last_synced_at)

    async def test_pull_skips_other_owners(self) -> None:
        await self.remote.upsert(self._remote_record("q1", True, 5, owner="someone-else"))
        with self.assertLogs("questline.application.services.sync_coordinator", level="WARNING"):
            summary = await self.coordinator.pull()
        self.assertEqual(1, summary.skipped)
        self.assertIsNone(self.store.get("q1"))

    async def test_failed_pull_leaves_local_state_untouched(self) -> None:
        self.store.upsert(self._remote_record("q1", True, 1))
        self.store.last_synced_at = _at(1)
        version = self.store.version
        self.remote.fail_next(1)

        summary = await self.coordinator.pull()

        self.assertFalse(summary.ok)
        self.assertEqual(version, self.store.version)
        self.assertEqual(_at(1), self.store.last_synced_at)


class SyncCoordinatorMigrationTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = ProgressStore("u1")
        self.bus = EventBus()
        self.remote = InMemoryRemoteProgressStore()
        for index in range(450):
            self.store.upsert(
                ProgressRecord.for_change(owner_id="u1", entity_id=f"q{index:03d}", completed=index % 3 == 0, at=_at(index))
            )

    def _coordinator(self, **kwargs) -> SyncCoordinator:
        kwargs.setdefault("sleep", _RecordedSleeps())
        return SyncCoordinator(self.store, self.remote, self.bus, owner_id="u1", **kwargs)

    async def test_migration_sends_bounded_batches(self) -> None:
        summary = await self._coordinator(batch_size=1000).migrate_all()

        self.assertTrue(summary.ok)
        self.assertEqual(450, summary.total)
        self.assertEqual(3, summary.batches)
        self.assertEqual(450, len(self.remote.all_records()))
        self.assertEqual([200, 200, 50], [len(ids) for name, ids in self.remote.calls if name == "batch_upsert"])
        self.assertEqual([], self.store.pending_records())
        self.assertEqual("u1", self.store.linked_owner_id)

    async def test_migration_is_idempotent(self) -> None:
        coordinator = self._coordinator()
        await coordinator.migrate_all()
        first = self.remote.all_records()
        await coordinator.migrate_all()
        self.assertEqual(first, self.remote.all_records())

    async def test_failed_batch_does_not_stop_later_batches(self) -> None:
        self.remote.fail_next(2, operation="batch_upsert")
        summary = await self._coordinator(max_attempts=2).migrate_all()

        self.assertFalse(summary.ok)
        self.assertEqual(1, summary.failed_batches)
        self.assertEqual(250, summary.sent)
        self.assertEqual(200, len(self.store.pending_records()))
        self.assertIsNone(self.store.linked_owner_id)

    async def test_migration_pulls_newer_remote_rows_before_sending(self) -> None:
        store = ProgressStore("u1")
        store.upsert(ProgressRecord.for_change(owner_id="u1", entity_id="q1", completed=False, at=_at(1)))
        remote = _OverwritingRemote([ProgressRecord.for_change(owner_id="u1", entity_id="q1", completed=True, at=_at(5))])
        coordinator = SyncCoordinator(store, remote, self.bus, owner_id="u1", sleep=_RecordedSleeps())

        summary = await coordinator.migrate_all()

        self.assertTrue(summary.ok)
        self.assertEqual(_at(5), remote.get("u1", "q1").updated_at)
        self.assertTrue(remote.get("u1", "q1").completed)
        local = store.get("q1")
        self.assertEqual(_at(5), local.updated_at)
        self.assertTrue(local.completed)
        self.assertEqual(SyncState.SYNCED, local.sync_state)
        self.assertEqual(["fetch_since", "batch_upsert"], [name for name, _ in remote.calls])

    async def test_failed_pull_cancels_migration(self) -> None:
        self.remote.fail_next(1, operation="fetch_since")
        summary = await self._coordinator().migrate_all()

        self.assertFalse(summary.ok)
        self.assertEqual(0, summary.batches)
        self.assertEqual(0, self.remote.call_count("batch_upsert"))
        self.assertEqual(450, len(self.store.pending_records()))
        self.assertIsNone(self.store.linked_owner_id)


class SyncCoordinatorConnectTests(unittest.IsolatedAsyncioTestCase):
    async def test_connect_adopts_anonymous_progress_and_migrates(self) -> None:
        store = ProgressStore("local")
        store.upsert(ProgressRecord.for_change(owner_id="local", entity_id="q1", completed=True, at=T0))
        remote = InMemoryRemoteProgressStore(
            [ProgressRecord.for_change(owner_id="u1", entity_id="q2", completed=True, at=_at(3))]
        )
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1", sleep=_RecordedSleeps())

        summary = await coordinator.connect()
        await coordinator.flush()

        self.assertTrue(summary.ok)
        self.assertEqual("u1", store.owner_id)
        self.assertEqual("u1", store.linked_owner_id)
        self.assertTrue(store.get("q2").completed)
        self.assertIsNotNone(remote.get("u1", "q1"))
        self.assertEqual([], store.pending_records())
        self.assertEqual("synced", coordinator.sync_status().label)

    async def test_connect_discards_cache_of_another_owner(self) -> None:
        store = ProgressStore("u2")
        store.upsert(ProgressRecord.for_change(owner_id="u2", entity_id="q1", completed=True, at=T0))
        remote = InMemoryRemoteProgressStore()
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1", sleep=_RecordedSleeps())

        await coordinator.connect()

        self.assertEqual("u1", store.owner_id)
        self.assertIsNone(store.get("q1"))
        self.assertEqual([], remote.all_records())

    async def test_connect_skips_migration_when_pull_fails(self) -> None:
        store = ProgressStore("u1")
        store.upsert(ProgressRecord.for_change(owner_id="u1", entity_id="q1", completed=True, at=T0))
        remote = InMemoryRemoteProgressStore()
        remote.fail_next(1, operation="fetch_since")
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1", sleep=_RecordedSleeps())

        summary = await coordinator.connect()
        await coordinator.flush()

        self.assertFalse(summary.ok)
        self.assertEqual(0, remote.call_count("batch_upsert"))
        self.assertIsNone(store.linked_owner_id)

    async def test_periodic_pull_merges_remote_and_resyncs_pending(self) -> None:
        store = ProgressStore("u1")
        store.upsert(ProgressRecord.for_change(owner_id="u1", entity_id="q1", completed=True, at=T0))
        remote = InMemoryRemoteProgressStore(
            [ProgressRecord.for_change(owner_id="u1", entity_id="q2", completed=True, at=_at(3))]
        )
        sleeps = _ScheduledSleeps(ticks=2)
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1", sleep=sleeps)

        task = coordinator.start_periodic_pull(5)
        self.assertIs(task, coordinator.start_periodic_pull(5))
        await asyncio.wait_for(sleeps.exhausted.wait(), timeout=2)
        await coordinator.flush()

        self.assertEqual([5.0, 5.0, 5.0], sleeps.delays)
        self.assertEqual(2, remote.call_count("fetch_since"))
        self.assertTrue(store.get("q2").completed)
        self.assertIsNotNone(remote.get("u1", "q1"))
        self.assertEqual(SyncState.SYNCED, store.get("q1").sync_state)

        await coordinator.close()
        self.assertTrue(task.cancelled())

    async def test_periodic_pull_survives_unexpected_errors(self) -> None:
        store = ProgressStore("u1")
        remote = InMemoryRemoteProgressStore(
            [ProgressRecord.for_change(owner_id="u1", entity_id="q2", completed=True, at=_at(3))]
        )
        remote.fail_next(1, RuntimeError("decoder blew up"), operation="fetch_since")
        sleeps = _ScheduledSleeps(ticks=2)
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1", sleep=sleeps)

        with self.assertLogs("questline.application.services.sync_coordinator", level="ERROR"):
            coordinator.start_periodic_pull(5)
            await asyncio.wait_for(sleeps.exhausted.wait(), timeout=2)

        self.assertEqual(2, remote.call_count("fetch_since"))
        self.assertTrue(store.get("q2").completed)
        await coordinator.close()

    async def test_close_cancels_workers_and_keeps_records_pending(self) -> None:
        store = ProgressStore("u1")
        remote = _GatedRemote()
        coordinator = SyncCoordinator(store, remote, EventBus(), owner_id="u1")

        coordinator.report_change("q1", True, at=T0)
        await remote.started.wait()
        await coordinator.close()

        self.assertEqual(SyncState.PENDING, store.get("q1").sync_state)
        self.assertEqual(0, coordinator.sync_status().in_flight)


if __name__ == "__main__":
    unittest.main()
