import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

RECENT_EVENTS_KEY = "recentEvents"
MAX_RECENT_EVENTS = 50

logger = logging.getLogger("SyncEventLog")


def configure_logging(level: str = "INFO") -> None:
    """Root configuration for the entry points (API server and CLI)."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class SyncEventLog:
    """
    Bounded log of sync events kept in the stats store.

    Every event also goes to the standard logger so the console/file logs stay
    complete; the persisted copy only keeps the newest entries for the UI.
    """

    def __init__(self, store, max_events: int = MAX_RECENT_EVENTS):
        self.store = store
        self.max_events = max_events
        self._events: Deque[Dict[str, Any]] = deque(
            store.get(RECENT_EVENTS_KEY, []), maxlen=max_events
        )

    def log(self, event_type: str, status: str, message: str, details: Optional[Dict[str, Any]] = None):
        log_msg = f"[{event_type.upper()}] {message}"
        if status in ("error", "fatal"):
            logger.error(log_msg)
        elif status == "warning":
            logger.warning(log_msg)
        else:
            logger.info(log_msg)

        self._events.append({
            "event_type": event_type,
            "status": status,
            "message": message[:500],
            "details": details or {},
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            self.store.set(RECENT_EVENTS_KEY, list(self._events))
        except Exception as e:
            logger.warning(f"Failed to persist sync event: {e}")

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self._events)[-limit:]

    def clear(self):
        self._events.clear()
