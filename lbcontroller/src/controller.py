from __future__ import annotations

import logging
import os
import threading
from collections.abc import Sequence
from typing import Any

from kubernetes.client import CoreV1Api

from lbcontroller.src.backoff import RequeueBackoff
from lbcontroller.src.cache import ServiceCache
from lbcontroller.src.cloud import (
    ErrorClassifying,
    ErrorKind,
    RetryableError,
    SyncError,
    TryAgainError,
    resolve_classifier,
)
from lbcontroller.src.handlers import EventRouter
from lbcontroller.src.informer import Informer
from lbcontroller.src.kube import EventRecorder, ServiceStatusWriter
from lbcontroller.src.metrics import METRICS
from lbcontroller.src.reconciler import Reconciler
from lbcontroller.src.workqueue import DelayingWorkQueue

SERVICE_QUEUE = "service-queue"
_EXPECTED_ERRORS = (SyncError, TryAgainError, RetryableError)


class ServiceController:
    """Owns the worker pool and the lifecycle of everything it depends on.

    ``run`` starts the informers and the event recorder, waits until every
    informer cache is synced, then starts ``workers`` threads that
    each pull a key, reconcile it and requeue it on failure.  Throttled
    failures are requeued with the worker's :class:`RequeueBackoff`, all
    other failures with the fixed ``requeue_delay``.  A relax ticker owned by
    the controller lets every backoff decay after a quiet period.

    On stop the queue is shut down and informers are asked to stop; a
    reconcile already in flight is allowed to finish.  The reconciler sleeps
    between retries on the controller's halt event, so a pending retry is
    abandoned as soon as stop is requested.
    """

    def __init__(
        self,
        queue: DelayingWorkQueue,
        reconciler: Reconciler,
        informers: Sequence[Informer],
        classifier: ErrorClassifying,
        recorder: EventRecorder | None = None,
        workers: int = 2,
        requeue_delay: float = 5.0,
        throttle_floor: float = 5.0,
        throttle_factor: float = 1.5,
        relax_interval: float = 20.0,
        join_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.queue = queue
        self.reconciler = reconciler
        self.informers = list(informers)
        self.classifier = classifier
        self.recorder = recorder
        self.workers = workers
        self.requeue_delay = requeue_delay
        self.relax_interval = relax_interval
        self.join_timeout = join_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.backoffs = [
            RequeueBackoff(floor=throttle_floor, factor=throttle_factor) for _ in range(workers)
        ]
        self.ready = threading.Event()
        self._halt = threading.Event()
        self.reconciler.sleep = self._halt.wait
        self._threads: list[threading.Thread] = []

    def process_next(self, backoff: RequeueBackoff, worker: str = "0") -> bool:
        """Handle one key from the queue.  Returns False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False
        try:
            self.logger.info("[%s] worker %s: syncing service", key, worker)
            self.reconciler.sync(key)
            METRICS.reconcile_total.labels(result="success").inc()
        except Exception as exc:
            kind = self.classifier.classify_error(exc)
            if kind is ErrorKind.THROTTLED:
                delay = backoff.next()
                METRICS.throttle_delay_seconds.labels(worker=worker).set(backoff.current)
                self.logger.warning("Request was throttled: %s, retry in %.1fs", key, delay)
            else:
                delay = self.requeue_delay
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.requeue_total.labels(reason=kind.value).inc()
            self.logger.error(
                "Requeue: sync error for service %s: %s",
                key,
                exc,
                exc_info=not isinstance(exc, _EXPECTED_ERRORS),
            )
            self.queue.add_after(key, delay)
        finally:
            self.queue.done(key)
        return True

    def _run_worker(self, index: int) -> None:
        backoff = self.backoffs[index]
        worker = str(index)
        self.logger.info("Service sync worker %s started", worker)
        while self.process_next(backoff, worker):
            pass
        self.logger.info("Service sync worker %s stopped", worker)

    def _relax_backoffs(self) -> None:
        while not self._halt.wait(timeout=self.relax_interval):
            for index, backoff in enumerate(self.backoffs):
                if backoff.relax():
                    self.logger.info("Throttling ended; worker %d backoff reset", index)
                METRICS.throttle_delay_seconds.labels(worker=str(index)).set(backoff.current)

    def wait_for_cache_sync(self, stop: threading.Event, poll_seconds: float = 0.1) -> bool:
        """Block until every informer has synced; False if stopped or an informer gave up."""
        while not stop.is_set():
            if all(informer.has_synced.is_set() for informer in self.informers):
                return True
            for informer in self.informers:
                if informer.terminated.is_set() and not informer.has_synced.is_set():
                    self.logger.error("%s informer terminated before syncing", informer.resource)
                    return False
            stop.wait(timeout=poll_seconds)
        return False

    def _informer_terminated(self) -> bool:
        return any(informer.terminated.is_set() for informer in self.informers)

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._halt.clear()
        self.logger.info("Starting service controller")
        if self.recorder is not None:
            self.recorder.start()
        for informer in self.informers:
            informer.start(stop)

        try:
            if not self.wait_for_cache_sync(stop):
                self.logger.error("Informer caches have not been synced")
                return

            for index in range(self.workers):
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(index,),
                    name=f"service-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
            relax = threading.Thread(target=self._relax_backoffs, name="backoff-relax", daemon=True)
            relax.start()
            self._threads.append(relax)

            self.ready.set()
            self.logger.info("Service controller started with %d worker(s)", self.workers)
            while not stop.wait(timeout=1.0):
                if self._informer_terminated():
                    self.logger.error("An informer stopped unexpectedly; shutting down controller")
                    break
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self.ready.clear()
        self._halt.set()
        self.queue.shutdown()
        for informer in self.informers:
            informer.request_stop()
        for thread in self._threads:
            thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop within %ss", thread.name, self.join_timeout)
        self._threads.clear()
        if self.recorder is not None:
            self.recorder.stop()
        self.logger.info("Shutting down service controller")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value


def build_controller_from_env(core_api: CoreV1Api, backend: Any) -> ServiceController:
    """Construct a :class:`ServiceController` from environment variables.

    Environment variables (with defaults):
        ``WORKERS`` (``2``), ``REQUEUE_DELAY_SECONDS`` (``5``),
        ``THROTTLE_BACKOFF_FLOOR_SECONDS`` (``5``),
        ``THROTTLE_BACKOFF_FACTOR`` (``1.5``, must be > 1),
        ``THROTTLE_ERROR_MARKERS`` (``Throttling``, comma separated),
        ``WATCH_TIMEOUT_SECONDS`` (``30``).
    """
    workers = env_int("WORKERS", 2, minimum=1)
    requeue_delay = env_float("REQUEUE_DELAY_SECONDS", 5.0, minimum=0.0)
    throttle_floor = env_float("THROTTLE_BACKOFF_FLOOR_SECONDS", 5.0, minimum=0.1)
    throttle_factor = env_float("THROTTLE_BACKOFF_FACTOR", 1.5)
    if throttle_factor <= 1:
        raise ValueError(f"THROTTLE_BACKOFF_FACTOR must be > 1, got: {throttle_factor}")
    markers = [
        marker.strip()
        for marker in os.getenv("THROTTLE_ERROR_MARKERS", "Throttling").split(",")
        if marker.strip()
    ]
    watch_timeout = env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1)

    classifier = resolve_classifier(backend, markers)

    cache = ServiceCache()
    queue = DelayingWorkQueue(SERVICE_QUEUE)
    recorder = EventRecorder(core_api)
    services = Informer(core_api.list_service_for_all_namespaces, "services", watch_timeout)
    nodes = Informer(core_api.list_node, "nodes", watch_timeout)
    endpoints = Informer(core_api.list_endpoints_for_all_namespaces, "endpoints", watch_timeout)

    router = EventRouter(queue=queue, cache=cache, core_api=core_api, recorder=recorder)
    router.register(services=services, nodes=nodes, endpoints=endpoints)

    reconciler = Reconciler(
        backend=backend,
        services=services,
        nodes=nodes,
        cache=cache,
        status_writer=ServiceStatusWriter(core_api),
        recorder=recorder,
        core_api=core_api,
        classifier=classifier,
    )
    return ServiceController(
        queue=queue,
        reconciler=reconciler,
        informers=[services, nodes, endpoints],
        classifier=classifier,
        recorder=recorder,
        workers=workers,
        requeue_delay=requeue_delay,
        throttle_floor=throttle_floor,
        throttle_factor=throttle_factor,
    )
