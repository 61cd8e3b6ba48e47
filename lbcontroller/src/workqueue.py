from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable

from lbcontroller.src.metrics import METRICS


class DelayingWorkQueue:
    """Deduplicating work queue with delayed adds.

    * A key that is already waiting is not queued twice.
    * A key handed out by :meth:`get` is in flight until :meth:`done`; adds
      made in the meantime are remembered and the key becomes available
      again once it is done, so no two workers ever hold the same key.
    * :meth:`add_after` parks a key until its due time; due keys are moved
      into the queue by :meth:`get`, no timer thread is involved.
    * After :meth:`shutdown`, every waiting and future :meth:`get` returns
      ``(None, True)``; keys still queued are dropped.
    """

    def __init__(self, name: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.name = name
        self.clock = clock
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._delayed: list[tuple[float, int, str]] = []
        self._sequence = itertools.count()
        self._shutting_down = False
        self._cond = threading.Condition()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
        self._cond.notify()

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add_locked(key)
                return
            heapq.heappush(self._delayed, (self.clock() + delay, next(self._sequence), key))
            # Wake a waiter so it can shorten its sleep to the new due time.
            self._cond.notify()

    def _promote_due_locked(self) -> float | None:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = self.clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._add_locked(key)
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns ``(key, False)`` on success, ``(None, True)`` once the queue
        is shut down and ``(None, False)`` if ``timeout`` expires first.
        """
        deadline = None if timeout is None else self.clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                next_due = self._promote_due_locked()
                if self._queue:
                    break
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self.clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
            return key, False

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._delayed.clear()
            self._cond.notify_all()
