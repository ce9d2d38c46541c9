import asyncio
from typing import Callable, Dict, List, Tuple
from unittest import IsolatedAsyncioTestCase, TestCase

from synk.errors import AuthenticationExpired, SchemaError, TransientNetworkError
from synk.stats_store import MemoryStatsStore
from syncs.models import FULL_POLL_JOB, SyncPair, SyncResult
from syncs.scheduler import Clock
from syncs.sync_manager import SyncManager
from syncs.sync_stats import SyncStatsRecorder

PAIR_KEY = "db1:cal1"
OTHER_KEY = "db2:cal2"


class FakeHandle:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock(Clock):
    def __init__(self):
        self.now = 0.0
        self.handles: List[FakeHandle] = []
        self.sleeps: List[float] = []
        self.manager = None

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        # One backoff is enough for these tests
        if self.manager is not None:
            self.manager.stop()
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for handle in [h for h in self.handles if not h.cancelled and h.when <= self.now]:
            self.handles.remove(handle)
            handle.callback()


class FakeReconciler:
    def __init__(self, store: MemoryStatsStore):
        self.stats = SyncStatsRecorder(store)
        self.calls: List[str] = []
        self.errors: Dict[str, Exception] = {}

    async def sync_pair(self, pair: SyncPair) -> SyncResult:
        self.calls.append(pair.pair_key)
        error = self.errors.get(pair.pair_key)
        if error is not None:
            self.stats.record_failure(pair.pair_key)
            raise error
        self.stats.record_success(pair.pair_key)
        return SyncResult(pair_key=pair.pair_key)


class SyncManagerTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = MemoryStatsStore()
        self.clock = FakeClock()
        self.reconciler = FakeReconciler(self.store)
        self.expired: List[Tuple[str, AuthenticationExpired]] = []
        self.manager = self.make_manager()

    def make_manager(self) -> SyncManager:
        return SyncManager(
            self.reconciler,
            self.store,
            clock=self.clock,
            on_auth_expired=lambda key, error: self.expired.append((key, error)),
        )

    async def asyncTearDown(self) -> None:
        self.manager.stop()
        await self.manager.scheduler.join()

    async def trigger(self, pair_key: str) -> None:
        self.manager.on_local_change(pair_key)
        self.clock.advance(1.2)
        await self.manager.scheduler.join()

    async def test_pairs_are_persisted(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.add_sync_pair("db2", "cal2")

        reloaded = self.make_manager()

        self.assertEqual([p.pair_key for p in reloaded.pairs], [PAIR_KEY, OTHER_KEY])

    async def test_remove_pair_forgets_last_sync(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        await self.manager.sync_now(PAIR_KEY)

        self.assertTrue(self.manager.remove_sync_pair("db1", "cal1"))
        self.assertFalse(self.manager.remove_sync_pair("db1", "cal1"))

        stats = self.manager.get_stats()
        self.assertEqual(stats["pairs"], [])
        self.assertEqual(stats["lastSyncAt"], {})
        self.assertEqual(self.store.get("syncPairs"), [])

    async def test_local_change_is_synced_after_debounce(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.start()

        await self.trigger(PAIR_KEY)

        self.assertEqual(self.reconciler.calls, [PAIR_KEY])
        stats = self.manager.get_stats()
        self.assertEqual(stats["successfulSyncs"], 1)
        self.assertEqual(stats["recentEvents"][-1]["event_type"], "pair_synced")

    async def test_auth_expiry_pauses_pair_without_retry(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.start()
        self.reconciler.errors[PAIR_KEY] = AuthenticationExpired("google")

        await self.trigger(PAIR_KEY)

        self.assertFalse(self.manager.is_active(PAIR_KEY))
        self.assertEqual(self.expired[0][0], PAIR_KEY)
        self.assertEqual(self.expired[0][1].service, "google")
        self.assertEqual(self.clock.sleeps, [])
        self.assertIn(PAIR_KEY, self.manager.get_stats()["pausedPairs"])

        await self.trigger(PAIR_KEY)
        self.assertEqual(self.reconciler.calls, [PAIR_KEY])

    async def test_resume_reenables_paused_pair(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.start()
        self.reconciler.errors[PAIR_KEY] = AuthenticationExpired("notion")
        await self.trigger(PAIR_KEY)

        del self.reconciler.errors[PAIR_KEY]
        self.assertTrue(self.manager.resume_pair(PAIR_KEY))
        self.clock.advance(1.2)
        await self.manager.scheduler.join()

        self.assertTrue(self.manager.is_active(PAIR_KEY))
        self.assertEqual(self.reconciler.calls, [PAIR_KEY, PAIR_KEY])
        self.assertFalse(self.manager.resume_pair("unknown:pair"))

    async def test_schema_error_blocks_pair(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.start()
        self.reconciler.errors[PAIR_KEY] = SchemaError("db1", "no date property")

        await self.trigger(PAIR_KEY)

        self.assertEqual(self.manager.get_stats()["blockedPairs"], {PAIR_KEY: "no date property"})
        self.assertEqual(self.clock.sleeps, [])
        self.assertEqual(self.expired, [])

    async def test_re_adding_pair_clears_block(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.reconciler.errors[PAIR_KEY] = SchemaError("db1", "no date property")
        with self.assertRaises(SchemaError):
            await self.manager.sync_now(PAIR_KEY)
        self.assertFalse(self.manager.is_active(PAIR_KEY))

        self.manager.add_sync_pair("db1", "cal1")

        self.assertTrue(self.manager.is_active(PAIR_KEY))
        self.assertEqual(len(self.manager.pairs), 1)

    async def test_transient_failure_backs_off_and_requeues(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.start()
        self.clock.manager = self.manager
        self.reconciler.errors[PAIR_KEY] = TransientNetworkError("calendar unreachable")

        await self.trigger(PAIR_KEY)

        stats = self.manager.get_stats()
        self.assertEqual(self.clock.sleeps, [1.0])
        self.assertEqual(stats["backoffMs"], 2000)
        self.assertEqual(stats["queueSize"], 1)
        self.assertEqual(stats["failedSyncs"], 1)
        self.assertTrue(self.manager.is_active(PAIR_KEY))

    async def test_full_poll_syncs_every_pair_and_reports_failures(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        self.manager.add_sync_pair("db2", "cal2")
        self.reconciler.errors[PAIR_KEY] = TransientNetworkError("notion unreachable")

        with self.assertRaises(TransientNetworkError):
            await self.manager._run_job(FULL_POLL_JOB)

        self.assertEqual(self.reconciler.calls, [PAIR_KEY, OTHER_KEY])

    async def test_unknown_job_is_dropped(self) -> None:
        with self.assertLogs("SyncManager", level="WARNING"):
            await self.manager._run_job("missing:pair")

        self.assertEqual(self.reconciler.calls, [])

    async def test_sync_now_unknown_pair_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            await self.manager.sync_now("missing:pair")

    async def test_get_stats_shape(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")

        stats = self.manager.get_stats()

        for key in ("totalSyncs", "successfulSyncs", "failedSyncs", "lastSyncAt", "queueSize",
                    "syncInProgress", "backoffMs", "schedulerState", "recentEvents"):
            self.assertIn(key, stats)
        self.assertEqual(stats["schedulerState"], "idle")
        self.assertFalse(stats["syncInProgress"])

    async def test_clear_sync_data_keeps_pairs(self) -> None:
        self.manager.add_sync_pair("db1", "cal1")
        await self.manager.sync_now(PAIR_KEY)

        self.manager.clear_sync_data()

        stats = self.manager.get_stats()
        self.assertEqual(stats["totalSyncs"], 0)
        self.assertEqual(stats["lastSyncAt"], {})
        self.assertEqual(stats["recentEvents"], [])
        self.assertEqual(stats["pairs"], [PAIR_KEY])


class ManagerOutsideLoopTests(TestCase):
    def test_manager_built_before_event_loop_can_sync(self) -> None:
        store = MemoryStatsStore()
        reconciler = FakeReconciler(store)
        manager = SyncManager(reconciler, store, clock=FakeClock())
        manager.add_sync_pair("db1", "cal1")

        asyncio.run(manager.sync_now(PAIR_KEY))
        asyncio.run(manager.sync_now(PAIR_KEY))

        self.assertEqual(reconciler.calls, [PAIR_KEY, PAIR_KEY])


if __name__ == "__main__":
    import unittest

    unittest.main()
