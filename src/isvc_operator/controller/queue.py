"""Deduplicating, rate-limited work queue.

A key is never handed to two workers at once. Adding a key while it is
being processed marks it dirty, and it is queued again as soon as the
current worker calls :meth:`WorkQueue.done`, so every event leads to at
least one later pass.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque


class WorkQueue:
    """Work queue keyed by ``namespace/name``."""

    def __init__(self, base_delay: float = 0.5, max_delay: float = 300.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._waiting: list[tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        """Queue a key unless it is already queued."""
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._counter), key))
            self._cond.notify()

    def backoff(self, key: str) -> float:
        """Delay for the next retry of ``key``: exponential, capped."""
        failures = self._failures.get(key, 0)
        return min(self._base_delay * (2 ** max(failures - 1, 0)), self._max_delay)

    def add_rate_limited(self, key: str) -> float:
        """Requeue a failed key with exponential backoff.

        Returns:
            The delay applied.
        """
        with self._cond:
            self._failures[key] = self._failures.get(key, 0) + 1
            delay = self.backoff(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the failure count of a key after a successful pass."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys to the queue; return seconds to the next one."""
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available.

        Returns:
            The key, or None on timeout or shutdown.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark processing of a key finished, requeueing it if it went dirty."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def is_processing(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def shut_down(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
