"""In-memory fixed-window counter of failed login attempts."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
import time
from typing import Callable, Iterator


@dataclass(slots=True)
class LoginAttemptCounter:
    """Failures counted for one client key since ``window_start``."""

    count: int
    window_start: float


class LoginThrottle:
    """Thread-safe per-key failure counter.

    A window opens at the first counted failure and lasts ``window_seconds``;
    a failure recorded after the window has lapsed starts a new one. Each key
    with a live counter has its own lock, so independent keys never contend.
    Lapsed counters and their locks are dropped by :meth:`prune`, which also
    runs after every ``prune_every`` recorded failures.
    """

    def __init__(
        self,
        max_failures: int = 3,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = 1000,
    ) -> None:
        """Initialise limits, the clock and per-key storage."""
        self._max_failures = max_failures
        self._window = window_seconds
        self._clock = clock
        self._prune_every = prune_every
        self._counters: dict[str, LoginAttemptCounter] = {}
        self._locks: dict[str, Lock] = {}
        self._registry_lock = Lock()
        self._failures_since_prune = 0

    def __len__(self) -> int:
        return len(self._counters)

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        # prune() may retire a lock between lookup and acquire; retry on a stale one.
        while True:
            with self._registry_lock:
                lock = self._locks.setdefault(key, Lock())
            lock.acquire()
            if self._locks.get(key) is lock:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def record_failure(self, key: str) -> None:
        """Count one failure for ``key``, opening a new window when needed."""
        with self._locked(key):
            now = self._clock()
            counter = self._counters.get(key)
            if counter is None or now - counter.window_start > self._window:
                self._counters[key] = LoginAttemptCounter(count=1, window_start=now)
            else:
                counter.count += 1

        with self._registry_lock:
            self._failures_since_prune += 1
            due = self._failures_since_prune >= self._prune_every
            if due:
                self._failures_since_prune = 0
        if due:
            self.prune()

    def is_blocked(self, key: str) -> bool:
        """Return ``True`` while ``key`` has reached the failure limit inside its window."""
        counter = self._counters.get(key)
        if counter is None:
            return False
        return (
            counter.count >= self._max_failures
            and self._clock() - counter.window_start < self._window
        )

    def prune(self) -> int:
        """Drop lapsed counters with their locks and return how many were removed.

        Keys whose lock is currently held are left for a later pass.
        """
        removed = 0
        now = self._clock()
        with self._registry_lock:
            for key, lock in list(self._locks.items()):
                if not lock.acquire(blocking=False):
                    continue
                try:
                    counter = self._counters.get(key)
                    if counter is None or now - counter.window_start > self._window:
                        del self._locks[key]
                        if counter is not None:
                            del self._counters[key]
                            removed += 1
                finally:
                    lock.release()
        return removed
