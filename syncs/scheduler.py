"""
Sync Scheduler - debounce, queue and backoff for sync jobs.

States:
- IDLE: nothing pending
- DEBOUNCING: jobs pending, waiting for the debounce window to close
- FLUSHING: running the drained job list sequentially
- BACKOFF_WAIT: a flush failed, sleeping before retrying the whole batch

Local edits go through the debounce window; a periodic timer independently
enqueues a "full-poll" job because remote changes are only visible by polling.
At most one flush runs at a time for the whole process.

All timing goes through a `Clock`, so tests drive the scheduler without real
timers.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from syncs.models import FULL_POLL_JOB

logger = logging.getLogger("SyncScheduler")

BACKOFF_FLOOR_MS = 1_000
BACKOFF_CAP_MS = 60_000


class SchedulerPhase(Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    FLUSHING = "flushing"
    BACKOFF_WAIT = "backoff_wait"


def backoff_after(failures: int, floor_ms: int = BACKOFF_FLOOR_MS, cap_ms: int = BACKOFF_CAP_MS) -> int:
    """Backoff duration after `failures` consecutive failed flushes."""
    return min(floor_ms * (2 ** failures), cap_ms)


@dataclass
class SchedulerState:
    """Everything the scheduler mutates between invocations."""
    pending: Set[str] = field(default_factory=set)
    phase: SchedulerPhase = SchedulerPhase.IDLE
    flushing: bool = False
    backoff_ms: int = BACKOFF_FLOOR_MS
    consecutive_failures: int = 0


class Clock:
    """Timer abstraction: one-shot callbacks and async sleep."""

    def call_later(self, delay: float, callback: Callable[[], None]):
        """Schedule `callback`; the returned handle has `cancel()`."""
        raise NotImplementedError

    async def sleep(self, delay: float) -> None:
        raise NotImplementedError


class AsyncioClock(Clock):
    def call_later(self, delay: float, callback: Callable[[], None]):
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class SyncScheduler:
    """
    Usage:
        scheduler = SyncScheduler(run_job)
        scheduler.start()            # periodic full-poll
        scheduler.notify(pair_key)   # local change, debounced
        scheduler.stop()
    """

    def __init__(
        self,
        run_job: Callable[[str], Awaitable[None]],
        clock: Optional[Clock] = None,
        debounce_ms: int = 1_200,
        poll_interval_ms: int = 60_000,
        backoff_floor_ms: int = BACKOFF_FLOOR_MS,
        backoff_cap_ms: int = BACKOFF_CAP_MS,
    ):
        self._run_job = run_job
        self.clock = clock or AsyncioClock()
        self.debounce_ms = debounce_ms
        self.poll_interval_ms = poll_interval_ms
        self.backoff_floor_ms = backoff_floor_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.state = SchedulerState(backoff_ms=backoff_floor_ms)

        self._debounce_handle = None
        self._poll_handle = None
        self._running = False
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start(self):
        if self._running:
            return
        self._running = True
        logger.info(f"Starting periodic sync poll (every {self.poll_interval_ms / 1000:.0f}s)")
        self._schedule_poll()

    def notify(self, key: str):
        """Queue `key` and (re)start the debounce window."""
        if not self._running:
            logger.warning(f"Scheduler stopped, ignoring change for {key}")
            return
        logger.debug(f"Local change detected: {key}")
        self.state.pending.add(key)

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = self.clock.call_later(self.debounce_ms / 1000, self._on_debounce)
        if not self.state.flushing:
            self.state.phase = SchedulerPhase.DEBOUNCING

    def stop(self):
        """Cancel timers. An in-flight flush finishes its current batch."""
        logger.info("Stopping sync scheduler")
        self._running = False
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

    def clear(self):
        """Drop pending jobs and reset backoff."""
        self.state.pending.clear()
        self.state.backoff_ms = self.backoff_floor_ms
        self.state.consecutive_failures = 0
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if not self.state.flushing:
            self.state.phase = SchedulerPhase.IDLE

    @property
    def running(self) -> bool:
        return self._running

    async def join(self):
        """Wait for flushes started by timers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Timer callbacks
    # ------------------------------------------------------------------

    def _schedule_poll(self):
        self._poll_handle = self.clock.call_later(self.poll_interval_ms / 1000, self._on_poll)

    def _on_poll(self):
        if not self._running:
            return
        logger.info("Periodic sync poll triggered")
        self.state.pending.add(FULL_POLL_JOB)
        self._schedule_poll()
        self._spawn_flush()

    def _on_debounce(self):
        self._debounce_handle = None
        self._spawn_flush()

    def _spawn_flush(self):
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self):
        """
        Drain the pending set and run each job in order.

        On any failure the whole batch goes back into the pending set and the
        flush sleeps for the current backoff before trying again.
        """
        if self.state.flushing or not self.state.pending:
            return

        self.state.flushing = True
        try:
            while self.state.pending:
                self.state.phase = SchedulerPhase.FLUSHING
                jobs = sorted(self.state.pending, key=lambda job: (job == FULL_POLL_JOB, job))
                # Clear before any I/O so jobs queued mid-flush are kept
                self.state.pending.clear()
                logger.info(f"Starting sync batch with {len(jobs)} jobs")

                try:
                    for job in jobs:
                        await self._run_job(job)
                except Exception as e:
                    self.state.pending.update(jobs)
                    wait_ms = self.state.backoff_ms
                    self.state.consecutive_failures += 1
                    self.state.backoff_ms = backoff_after(
                        self.state.consecutive_failures, self.backoff_floor_ms, self.backoff_cap_ms
                    )
                    self.state.phase = SchedulerPhase.BACKOFF_WAIT
                    logger.error(f"Sync batch failed ({e}); backing off for {wait_ms}ms before retry")
                    await self.clock.sleep(wait_ms / 1000)
                    if not self._running:
                        logger.info("Scheduler stopped during backoff; leaving jobs queued")
                        break
                    continue

                self.state.backoff_ms = self.backoff_floor_ms
                self.state.consecutive_failures = 0
                logger.info("Sync batch completed successfully")

                if self._debounce_handle is not None:
                    # Jobs queued mid-flush wait for their own debounce window
                    break
        finally:
            self.state.flushing = False
            if self._debounce_handle is not None:
                self.state.phase = SchedulerPhase.DEBOUNCING
            else:
                self.state.phase = SchedulerPhase.IDLE
