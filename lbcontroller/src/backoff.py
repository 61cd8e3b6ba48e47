from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from lbcontroller.src.cloud import TryAgainError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Growth past the ceiling means throttling never let up; fall back to a plateau.
THROTTLE_CEILING_SECONDS = 120.0
THROTTLE_PLATEAU_SECONDS = 30.0
QUIET_PERIOD_SECONDS = 60.0


class RequeueBackoff:
    """Requeue delay for throttled reconciles, owned by a single worker.

    ``next()`` hands out the current delay and grows it.  Nothing resets the
    delay on success: :meth:`relax` is called periodically by the controller
    and drops back to the floor only once a full quiet period has passed
    since the last throttled call.
    """

    def __init__(
        self,
        floor: float = 5.0,
        factor: float = 1.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if floor <= 0:
            raise ValueError("floor must be > 0")
        if factor <= 1:
            raise ValueError("factor must be > 1")
        self.floor = floor
        self.factor = factor
        self.clock = clock
        self._delay = floor
        self._last_throttle: float | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> float:
        with self._lock:
            return self._delay

    def next(self) -> float:
        with self._lock:
            self._last_throttle = self.clock()
            delay = self._delay
            grown = delay * self.factor
            if grown > THROTTLE_CEILING_SECONDS:
                grown = THROTTLE_PLATEAU_SECONDS
            self._delay = grown
            return delay

    def relax(self) -> bool:
        """Reset to the floor if no throttling was seen for a full quiet period."""
        with self._lock:
            if self._last_throttle is None or self._delay == self.floor:
                return False
            if self.clock() - self._last_throttle < QUIET_PERIOD_SECONDS:
                return False
            self._delay = self.floor
            return True


@dataclass(frozen=True)
class RetryPolicy:
    duration: float
    steps: int
    factor: float
    jitter: float

    def __post_init__(self) -> None:
        if self.steps < 1:
            raise ValueError(f"steps must be >= 1, got: {self.steps}")

    def delay(self, attempt: int) -> float:
        base = self.duration * (self.factor**attempt)
        if self.jitter > 0:
            base += base * self.jitter * random.random()  # noqa: S311
        return base


DEFAULT_RETRY = RetryPolicy(duration=1.0, steps=8, factor=2.0, jitter=4.0)
STATUS_RETRY = RetryPolicy(duration=1.0, steps=3, factor=2.0, jitter=4.0)


def retry_on_try_again(
    fn: Callable[..., T],
    *args: object,
    policy: RetryPolicy = DEFAULT_RETRY,
    sleep: Callable[[float], object] = time.sleep,
) -> T:
    """Call ``fn`` until it stops raising :class:`TryAgainError` or the steps run out.

    Any other exception aborts immediately.  When every attempt asks to try
    again, the last :class:`TryAgainError` propagates to the caller.

    ``sleep`` may be an interruptible wait such as ``threading.Event.wait``:
    a truthy return means the event was set during the wait, and the pending
    :class:`TryAgainError` is raised without further attempts.
    """
    for attempt in range(policy.steps - 1):
        try:
            return fn(*args)
        except TryAgainError as exc:
            delay = policy.delay(attempt)
            LOGGER.warning("Retrying in %.1fs after error: %s", delay, exc)
            if sleep(delay):
                LOGGER.warning("Retry interrupted after %d attempt(s): %s", attempt + 1, exc)
                raise
    try:
        return fn(*args)
    except TryAgainError as exc:
        LOGGER.error("Giving up after %d attempts: %s", policy.steps, exc)
        raise
