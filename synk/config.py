"""
Runtime configuration for Synk.

Values come from the environment (optionally a `.env` file). Components never
read the environment themselves; they receive a `SyncSettings` instance so
tests can build one directly.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_POLL_INTERVAL_MS = 60_000
DEFAULT_DEBOUNCE_MS = 1_200
DEFAULT_WINDOW_DAYS = 30
DEFAULT_DATA_PATH = Path.home() / ".synk" / "sync-data.json"


def _int_env(name: str, default: int) -> int:
    """Parse a positive integer env var, falling back to `default` when unset or invalid."""
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class SyncSettings:
    notion_token: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_refresh_token: Optional[str] = None
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    window_days: int = DEFAULT_WINDOW_DAYS
    data_path: Path = DEFAULT_DATA_PATH
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SyncSettings":
        data_path = os.environ.get("SYNK_DATA_PATH")
        return cls(
            notion_token=os.environ.get("NOTION_API_TOKEN"),
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID"),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET"),
            google_refresh_token=os.environ.get("GOOGLE_REFRESH_TOKEN"),
            poll_interval_ms=_int_env("SYNC_INTERVAL", DEFAULT_POLL_INTERVAL_MS),
            debounce_ms=_int_env("SYNC_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS),
            window_days=_int_env("SYNC_WINDOW_DAYS", DEFAULT_WINDOW_DAYS),
            data_path=Path(data_path).expanduser() if data_path else DEFAULT_DATA_PATH,
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_key=os.environ.get("SUPABASE_KEY") or None,
            log_level=os.environ.get("SYNK_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def use_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)
