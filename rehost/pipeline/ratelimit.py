"""Sliding-window upload quota.

The ledger lives in ``MigrationProgress.upload_timestamps`` (epoch millis) so
it survives restarts: a run started ten minutes after the previous one still
sees the uploads that run made. Every check prunes the ledger to the trailing
window first. A slot is *reserved* by ``acquire`` and either turned into a
ledger entry by ``commit`` (successful upload) or handed back by ``release``
(throttled or failed attempt), which keeps the window bounded when several
workers upload at once.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol

from rehost.errors import MigrationCancelled
from rehost.lib.log import get_logger
from rehost.models import MigrationProgress
from rehost.pipeline.events import EventBus, RateLimitWait

logger = get_logger(__name__)

# How long a worker parks when every slot is held by an in-flight upload
_IN_FLIGHT_POLL = 1.0


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)


class Sleeper:
    """Interruptible sleep shared by every suspension point of a run."""

    def __init__(self, stop_event: threading.Event | None = None) -> None:
        self.stop_event = stop_event or threading.Event()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        self.stop_event.set()

    def check(self) -> None:
        if self.stop_event.is_set():
            raise MigrationCancelled("Migration stopped by signal")

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            self.check()
            return
        if self.stop_event.wait(seconds):
            raise MigrationCancelled("Migration stopped by signal")


class SlidingWindowLimiter:
    """At most ``budget`` uploads in any trailing ``window_seconds``."""

    def __init__(
        self,
        progress: MigrationProgress,
        *,
        budget: int,
        window_seconds: float,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        lock: threading.RLock | None = None,
        on_commit: Callable[[], None] | None = None,
        bus: EventBus | None = None,
        migration: str = "",
    ) -> None:
        if budget < 1:
            raise ValueError("budget must be at least 1")
        self._progress = progress
        self.budget = budget
        self.window_ms = max(1, int(window_seconds * 1000))
        self._clock = clock or SystemClock()
        self._sleeper = sleeper or Sleeper()
        self._cond = threading.Condition(lock or threading.RLock())
        self._on_commit = on_commit
        self._bus = bus
        self._migration = migration
        self._reserved = 0

    @property
    def reserved(self) -> int:
        return self._reserved

    def in_window(self) -> int:
        with self._cond:
            return self._progress.prune_timestamps(self._clock.now_ms(), self.window_ms)

    def wait_time(self) -> float:
        """Seconds until a slot frees up; 0.0 when one is free right now."""
        with self._cond:
            delay = self._delay_locked()
        return _IN_FLIGHT_POLL if delay is None else delay

    def _delay_locked(self) -> float | None:
        now = self._clock.now_ms()
        count = self._progress.prune_timestamps(now, self.window_ms)
        if count + self._reserved < self.budget:
            return 0.0
        # Entries that must leave the window before one more upload fits
        must_expire = count + self._reserved - self.budget + 1
        if must_expire > count:
            return None
        exits_at = self._progress.upload_timestamps[must_expire - 1] + self.window_ms
        return max(exits_at - now, 1) / 1000.0

    def acquire(self) -> None:
        """Block until an upload slot is free, then reserve it."""
        while True:
            with self._cond:
                self._sleeper.check()
                delay = self._delay_locked()
                if delay == 0.0:
                    self._reserved += 1
                    return
                if delay is None:
                    self._cond.wait(timeout=_IN_FLIGHT_POLL)
                    continue
                in_window = len(self._progress.upload_timestamps)
            logger.info("rate_limit_wait", seconds=round(delay, 3), in_window=in_window, budget=self.budget)
            if self._bus is not None:
                self._bus.emit(
                    RateLimitWait(migration=self._migration, seconds=delay, in_window=in_window, budget=self.budget)
                )
            self._sleeper.sleep(delay)

    def commit(self) -> int:
        """Turn a reservation into a ledger entry; returns the entry's timestamp."""
        with self._cond:
            self._reserved = max(0, self._reserved - 1)
            now = self._clock.now_ms()
            self._progress.record_upload(now)
            if self._on_commit is not None:
                self._on_commit()
            self._cond.notify_all()
            return now

    def release(self) -> None:
        with self._cond:
            self._reserved = max(0, self._reserved - 1)
            self._cond.notify_all()


def estimate_seconds_remaining(remaining_uploads: int, budget: int, window_seconds: float) -> float:
    """Time to drain ``remaining_uploads`` at the configured steady-state rate."""
    if remaining_uploads <= 0 or budget <= 0:
        return 0.0
    return remaining_uploads * (window_seconds / budget)


__all__ = [
    "Clock",
    "Sleeper",
    "SlidingWindowLimiter",
    "SystemClock",
    "estimate_seconds_remaining",
]
