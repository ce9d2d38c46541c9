"""
Sync Manager - facade over the scheduler and reconciler.

Holds the active pairs (persisted in the stats store), turns UI triggers into
scheduler jobs, and decides which failures are retried:

- TransientNetworkError (and any unexpected error) propagates to the
  scheduler, which retries with backoff.
- AuthenticationExpired pauses the pair until it is resumed or re-added.
- SchemaError blocks the pair until it is reconfigured (re-added) or resumed.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from synk.errors import AuthenticationExpired, SchemaError, TransientNetworkError
from synk.logging_service import SyncEventLog
from syncs.models import FULL_POLL_JOB, SyncPair, SyncResult
from syncs.scheduler import Clock, SyncScheduler

logger = logging.getLogger("SyncManager")

SYNC_PAIRS_KEY = "syncPairs"


class SyncManager:
    def __init__(
        self,
        reconciler,
        store,
        clock: Optional[Clock] = None,
        debounce_ms: int = 1_200,
        poll_interval_ms: int = 60_000,
        on_auth_expired: Optional[Callable[[str, AuthenticationExpired], None]] = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.on_auth_expired = on_auth_expired
        self.events = SyncEventLog(store)
        self.scheduler = SyncScheduler(
            self._run_job,
            clock=clock,
            debounce_ms=debounce_ms,
            poll_interval_ms=poll_interval_ms,
        )
        self._pairs: Dict[str, SyncPair] = {}
        self._paused: Dict[str, str] = {}
        self._blocked: Dict[str, str] = {}
        # Serializes on-demand syncs with scheduled ones; created on first use inside the running loop
        self._lock: Optional[asyncio.Lock] = None

        for data in store.get(SYNC_PAIRS_KEY, []) or []:
            try:
                pair = SyncPair.from_dict(data)
            except (KeyError, TypeError):
                logger.warning(f"Ignoring malformed stored pair: {data!r}")
                continue
            self._pairs[pair.pair_key] = pair

        logger.info(f"SyncManager initialized with {len(self._pairs)} pairs")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _sync_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def start(self):
        self.scheduler.start()

    def stop(self):
        """Cancel the poll and debounce timers; an in-flight flush is not aborted."""
        logger.info("Stopping SyncManager")
        self.scheduler.stop()

    # ------------------------------------------------------------------
    # Pairs
    # ------------------------------------------------------------------

    @property
    def pairs(self) -> List[SyncPair]:
        return list(self._pairs.values())

    def _persist_pairs(self):
        self.store.set(SYNC_PAIRS_KEY, [pair.to_dict() for pair in self._pairs.values()])

    def add_sync_pair(self, notion_database_id: str, google_calendar_id: str) -> SyncPair:
        """Link a database to a calendar; re-adding an existing pair clears its errors."""
        pair = SyncPair(notion_database_id, google_calendar_id)
        key = pair.pair_key
        self._paused.pop(key, None)
        self._blocked.pop(key, None)

        if key not in self._pairs:
            self._pairs[key] = pair
            self._persist_pairs()
            logger.info(f"Added sync pair {key}")
        else:
            logger.info(f"Sync pair {key} reconfigured")

        if self.scheduler.running:
            self.on_local_change(key)
        return pair

    def remove_sync_pair(self, notion_database_id: str, google_calendar_id: str) -> bool:
        return self.remove_pair_key(SyncPair(notion_database_id, google_calendar_id).pair_key)

    def remove_pair_key(self, pair_key: str) -> bool:
        if self._pairs.pop(pair_key, None) is None:
            return False
        self._paused.pop(pair_key, None)
        self._blocked.pop(pair_key, None)
        self._persist_pairs()
        self.reconciler.stats.forget(pair_key)
        logger.info(f"Removed sync pair {pair_key}")
        return True

    def resume_pair(self, pair_key: str) -> bool:
        """Re-enable a paused (auth) or blocked (schema) pair."""
        if pair_key not in self._pairs:
            return False
        was_disabled = self._paused.pop(pair_key, None) is not None
        was_disabled = self._blocked.pop(pair_key, None) is not None or was_disabled
        if was_disabled:
            logger.info(f"Resumed sync pair {pair_key}")
            if self.scheduler.running:
                self.on_local_change(pair_key)
        return True

    def get_pair(self, pair_key: str) -> Optional[SyncPair]:
        return self._pairs.get(pair_key)

    def is_active(self, pair_key: str) -> bool:
        return pair_key in self._pairs and pair_key not in self._paused and pair_key not in self._blocked

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_local_change(self, pair_key: str):
        """Fire-and-forget: queue a sync for `pair_key` (or "full-poll")."""
        self.scheduler.notify(pair_key)

    async def sync_now(self, pair_key: str) -> SyncResult:
        """Run one pass immediately, bypassing the queue. Errors propagate to the caller."""
        pair = self._pairs.get(pair_key)
        if pair is None:
            raise KeyError(pair_key)
        try:
            async with self._sync_lock():
                result = await self.reconciler.sync_pair(pair)
        except SchemaError as e:
            self._block(pair_key, e)
            raise
        except AuthenticationExpired as e:
            self._pause(pair_key, e)
            raise
        self._paused.pop(pair_key, None)
        self._blocked.pop(pair_key, None)
        return result

    # ------------------------------------------------------------------
    # Job execution (called by the scheduler)
    # ------------------------------------------------------------------

    async def _run_job(self, job: str):
        if job == FULL_POLL_JOB:
            await self._full_poll()
            return

        if job not in self._pairs:
            logger.warning(f"Dropping sync job for unknown pair {job}")
            return
        await self._sync_one(self._pairs[job])

    async def _full_poll(self):
        failed = []
        for pair in list(self._pairs.values()):
            try:
                await self._sync_one(pair)
            except Exception as e:
                failed.append((pair.pair_key, e))
        if failed:
            keys = ", ".join(key for key, _ in failed)
            raise TransientNetworkError(f"Full poll failed for {keys}") from failed[0][1]

    async def _sync_one(self, pair: SyncPair):
        key = pair.pair_key
        if not self.is_active(key):
            logger.debug(f"Skipping disabled pair {key}")
            return

        try:
            async with self._sync_lock():
                result = await self.reconciler.sync_pair(pair)
        except SchemaError as e:
            self._block(key, e)
            return
        except AuthenticationExpired as e:
            self._pause(key, e)
            return
        except Exception as e:
            self.events.log('sync_failed', 'error', f"Sync failed for {key}: {e}", {'pair_key': key})
            raise

        status = 'success' if result.success else 'warning'
        self.events.log(
            'pair_synced', status,
            f"Synced {key}: {len(result.item_errors)} item errors",
            result.to_dict(),
        )

    def _block(self, pair_key: str, error: SchemaError):
        if pair_key not in self._blocked:
            self.events.log('schema_error', 'warning', str(error), {'pair_key': pair_key})
        self._blocked[pair_key] = str(error)

    def _pause(self, pair_key: str, error: AuthenticationExpired):
        self._paused[pair_key] = str(error)
        self.events.log('auth_expired', 'error', str(error), {'pair_key': pair_key, 'service': error.service})
        if self.on_auth_expired is not None:
            try:
                self.on_auth_expired(pair_key, error)
            except Exception as callback_error:
                logger.error(f"on_auth_expired callback failed: {callback_error}")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        """Synchronous snapshot for the UI."""
        stats = self.reconciler.stats.snapshot().to_dict()
        state = self.scheduler.state
        stats.update({
            'queueSize': len(state.pending),
            'syncInProgress': state.flushing,
            'backoffMs': state.backoff_ms,
            'schedulerState': state.phase.value,
            'pairs': [pair.pair_key for pair in self._pairs.values()],
            'pausedPairs': dict(self._paused),
            'blockedPairs': dict(self._blocked),
            'recentEvents': self.events.recent(),
        })
        return stats

    def clear_sync_data(self):
        """Wipe persisted statistics and the pending queue; pairs are kept."""
        logger.info("Clearing sync data")
        self.store.clear()
        self.events.clear()
        self.scheduler.clear()
        self._persist_pairs()


# ============================================================================
# ENTRY POINT
# ============================================================================

def create_sync_manager(settings, store=None, **kwargs) -> SyncManager:
    """Wire the HTTP clients, stats store and reconciler from settings."""
    from synk.auth import IdentityClient
    from synk.google_calendar import GoogleCalendarClient
    from synk.notion_client import NotionClient
    from synk.stats_store import create_stats_store
    from syncs.reconciler import Reconciler
    from syncs.sync_stats import SyncStatsRecorder

    store = store if store is not None else create_stats_store(settings)
    identity = IdentityClient.from_settings(settings)
    reconciler = Reconciler(
        NotionClient(identity),
        GoogleCalendarClient(identity),
        SyncStatsRecorder(store),
        window_days=settings.window_days,
    )
    return SyncManager(
        reconciler,
        store,
        debounce_ms=settings.debounce_ms,
        poll_interval_ms=settings.poll_interval_ms,
        **kwargs,
    )
