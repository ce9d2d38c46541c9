"""
Notion database <-> Google Calendar sync engine.

Leaf-first: link_markers -> field_mapper -> change_detector -> reconciler
-> scheduler -> sync_manager.
"""

from .models import FULL_POLL_JOB, SyncPair, SyncItem, SyncCounts, SyncResult
from .change_detector import Action, Change, detect_changes
from .reconciler import Reconciler
from .scheduler import SyncScheduler, SchedulerPhase, AsyncioClock
from .sync_manager import SyncManager
from .sync_stats import SyncStats, SyncStatsRecorder

__all__ = [
    # Data classes
    'FULL_POLL_JOB',
    'SyncPair',
    'SyncItem',
    'SyncCounts',
    'SyncResult',
    'SyncStats',

    # Engine
    'Action',
    'Change',
    'detect_changes',
    'Reconciler',
    'SyncScheduler',
    'SchedulerPhase',
    'AsyncioClock',
    'SyncManager',
    'SyncStatsRecorder',
]
