from __future__ import annotations

import threading
import time

from lbcontroller.src.workqueue import DelayingWorkQueue


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_add_is_idempotent_while_pending() -> None:
    queue = DelayingWorkQueue("test")
    queue.add("default/a")
    queue.add("default/a")
    queue.add("default/b")

    assert len(queue) == 2
    assert queue.get(timeout=0) == ("default/a", False)
    assert queue.get(timeout=0) == ("default/b", False)
    assert queue.get(timeout=0) == (None, False)


def test_readd_while_in_flight_is_processed_exactly_once_more() -> None:
    queue = DelayingWorkQueue("test")
    queue.add("default/a")
    key, _ = queue.get(timeout=0)

    queue.add("default/a")
    queue.add("default/a")
    queue.add("default/a")
    # Not handed out again while in flight.
    assert queue.get(timeout=0) == (None, False)

    queue.done(key)
    assert queue.get(timeout=0) == ("default/a", False)
    queue.done("default/a")
    assert queue.get(timeout=0) == (None, False)


def test_done_without_readd_drops_key() -> None:
    queue = DelayingWorkQueue("test")
    queue.add("default/a")
    key, _ = queue.get(timeout=0)
    queue.done(key)

    assert len(queue) == 0
    assert queue.get(timeout=0) == (None, False)


def test_add_after_is_not_available_before_due() -> None:
    clock = FakeClock()
    queue = DelayingWorkQueue("test", clock=clock)
    queue.add_after("default/a", 5.0)

    assert queue.get(timeout=0) == (None, False)

    clock.now += 5.0
    assert queue.get(timeout=0) == ("default/a", False)


def test_add_after_with_zero_delay_is_immediate() -> None:
    queue = DelayingWorkQueue("test")
    queue.add_after("default/a", 0)
    assert queue.get(timeout=0) == ("default/a", False)


def test_delayed_key_deduplicates_with_pending_key() -> None:
    clock = FakeClock()
    queue = DelayingWorkQueue("test", clock=clock)
    queue.add("default/a")
    queue.add_after("default/a", 1.0)
    clock.now += 2.0

    assert queue.get(timeout=0) == ("default/a", False)
    queue.done("default/a")
    assert queue.get(timeout=0) == (None, False)


def test_get_wakes_up_for_delayed_item() -> None:
    queue = DelayingWorkQueue("test")
    queue.add_after("default/a", 0.05)

    started = time.monotonic()
    key, shutdown = queue.get(timeout=2.0)

    assert (key, shutdown) == ("default/a", False)
    assert time.monotonic() - started >= 0.04


def test_shutdown_releases_blocked_getters() -> None:
    queue = DelayingWorkQueue("test")
    results: list[tuple[str | None, bool]] = []

    def getter() -> None:
        results.append(queue.get())

    threads = [threading.Thread(target=getter) for _ in range(3)]
    for thread in threads:
        thread.start()
    time.sleep(0.05)
    queue.shutdown()
    for thread in threads:
        thread.join(timeout=2.0)

    assert results == [(None, True)] * 3
    assert queue.shutting_down


def test_add_after_shutdown_is_ignored() -> None:
    queue = DelayingWorkQueue("test")
    queue.shutdown()
    queue.add("default/a")
    queue.add_after("default/b", 1.0)

    assert len(queue) == 0
    assert queue.get(timeout=0) == (None, True)


def test_no_two_workers_hold_the_same_key() -> None:
    queue = DelayingWorkQueue("test")
    in_flight: set[str] = set()
    overlaps: list[str] = []
    processed: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        while True:
            key, shutdown = queue.get()
            if shutdown or key is None:
                return
            with lock:
                if key in in_flight:
                    overlaps.append(key)
                in_flight.add(key)
            time.sleep(0.001)
            with lock:
                in_flight.discard(key)
                processed.append(key)
            queue.done(key)

    workers = [threading.Thread(target=worker) for _ in range(4)]
    for thread in workers:
        thread.start()
    for i in range(200):
        queue.add(f"default/svc-{i % 5}")
        if i % 20 == 0:
            time.sleep(0.002)
    time.sleep(0.2)
    queue.shutdown()
    for thread in workers:
        thread.join(timeout=2.0)

    assert overlaps == []
    assert set(processed) == {f"default/svc-{i}" for i in range(5)}
