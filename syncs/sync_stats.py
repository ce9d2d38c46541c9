"""Persisted sync counters (totalSyncs, successfulSyncs, failedSyncs, lastSyncAt)."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

SYNC_STATS_KEY = "syncStats"
LAST_SYNC_AT_KEY = "lastSyncAt"

DEFAULT_COUNTERS = {
    "totalSyncs": 0,
    "successfulSyncs": 0,
    "failedSyncs": 0,
}


@dataclass
class SyncStats:
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    last_sync_at: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "totalSyncs": self.total_syncs,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "lastSyncAt": dict(self.last_sync_at),
        }


class SyncStatsRecorder:
    """Reads and updates the counters in a StatsStore."""

    def __init__(self, store):
        self.store = store

    def _counters(self) -> Dict[str, int]:
        counters = dict(DEFAULT_COUNTERS)
        counters.update(self.store.get(SYNC_STATS_KEY, {}) or {})
        return counters

    def snapshot(self) -> SyncStats:
        counters = self._counters()
        return SyncStats(
            total_syncs=counters["totalSyncs"],
            successful_syncs=counters["successfulSyncs"],
            failed_syncs=counters["failedSyncs"],
            last_sync_at=dict(self.store.get(LAST_SYNC_AT_KEY, {}) or {}),
        )

    def record_success(self, pair_key: str, at: Optional[datetime] = None):
        counters = self._counters()
        counters["totalSyncs"] += 1
        counters["successfulSyncs"] += 1
        self.store.set(SYNC_STATS_KEY, counters)

        last_sync_at = dict(self.store.get(LAST_SYNC_AT_KEY, {}) or {})
        last_sync_at[pair_key] = (at or datetime.now(timezone.utc)).isoformat()
        self.store.set(LAST_SYNC_AT_KEY, last_sync_at)

    def record_failure(self, pair_key: str):
        counters = self._counters()
        counters["totalSyncs"] += 1
        counters["failedSyncs"] += 1
        self.store.set(SYNC_STATS_KEY, counters)

    def forget(self, pair_key: str):
        last_sync_at = dict(self.store.get(LAST_SYNC_AT_KEY, {}) or {})
        if last_sync_at.pop(pair_key, None) is not None:
            self.store.set(LAST_SYNC_AT_KEY, last_sync_at)
