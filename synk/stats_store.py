"""
Durable key-value stores for sync statistics and the active pair list.

Keys used by the engine:
    syncStats    -> {"totalSyncs", "successfulSyncs", "failedSyncs"}
    lastSyncAt   -> {pair_key: ISO timestamp}
    syncPairs    -> [{"notion_database_id", "google_calendar_id"}, ...]
    recentEvents -> bounded list of sync events
"""

import copy
import json
import os
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("StatsStore")

SYNC_STATE_TABLE = "sync_state"


class StatsStore:
    """Interface: get(key, default) / set(key, value) / clear()."""

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryStatsStore(StatsStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStatsStore(MemoryStatsStore):
    """
    Whole-document JSON store, rewritten atomically on every `set`.

    A corrupt or unreadable file is logged and treated as empty rather than
    preventing startup.
    """

    def __init__(self, path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read stats file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring stats file {self.path}: top level is not an object")
            return {}
        return data

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".sync-data-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def set(self, key: str, value: Any) -> None:
        super().set(key, value)
        self._flush()

    def clear(self) -> None:
        super().clear()
        self._flush()


class SupabaseStatsStore(StatsStore):
    """
    Store backed by the `sync_state` table (one row per key, JSON text value).

    Reads go through an in-process cache populated lazily, so `get` stays
    cheap enough for the synchronous `get_stats()` path.
    """

    def __init__(self, client, namespace: str = "synk"):
        self.client = client
        self.namespace = namespace
        self._cache: Dict[str, Any] = {}

    def _row_key(self, key: str) -> str:
        return f"{self.namespace}_{key}"

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._cache:
            return copy.deepcopy(self._cache[key])
        try:
            response = self.client.table(SYNC_STATE_TABLE).select("value").eq("key", self._row_key(key)).execute()
        except Exception as e:
            logger.warning(f"Could not read {key} from sync_state: {e}")
            return copy.deepcopy(default)
        if not response.data or response.data[0].get("value") is None:
            return copy.deepcopy(default)
        try:
            value = json.loads(response.data[0]["value"])
        except (TypeError, ValueError):
            logger.warning(f"Ignoring undecodable sync_state value for {key}")
            return copy.deepcopy(default)
        self._cache[key] = value
        return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        self.client.table(SYNC_STATE_TABLE).upsert({
            "key": self._row_key(key),
            "value": json.dumps(value),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }).execute()
        self._cache[key] = copy.deepcopy(value)

    def clear(self) -> None:
        self.client.table(SYNC_STATE_TABLE).delete().like("key", f"{self.namespace}_%").execute()
        self._cache.clear()


def create_stats_store(settings) -> StatsStore:
    """Pick the store from configuration: Supabase when configured, JSON file otherwise."""
    if settings.use_supabase:
        from supabase import create_client

        logger.info("Using Supabase sync_state table for sync statistics")
        return SupabaseStatsStore(create_client(settings.supabase_url, settings.supabase_key))
    logger.info(f"Using {settings.data_path} for sync statistics")
    return JsonFileStatsStore(settings.data_path)
