from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from lbcontroller.src.metrics import METRICS

Handler = Callable[..., None]


def object_key(obj: Any) -> str:
    """``namespace/name`` for namespaced objects, ``name`` for cluster-scoped ones."""
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


@dataclass(frozen=True)
class _Handlers:
    on_add: Handler | None
    on_update: Handler | None
    on_delete: Handler | None


class Informer:
    """List-then-watch cache of one resource type with change callbacks.

    The loop lists the resource once to build the local store, marks itself
    synced and then streams watch events from the list's resourceVersion:

    * the initial list is retried with jittered exponential backoff
      (1 s doubling to a 30 s cap);
    * ``410 Gone`` re-lists and dispatches the difference against the store
      as add/update/delete, so no change is lost while disconnected;
    * ``401`` / ``403`` are configuration errors and end the loop;
    * any other error backs off and reconnects.

    Handler exceptions are logged and never break the loop.
    """

    def __init__(
        self,
        list_fn: Callable[..., Any],
        resource: str,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.list_fn = list_fn
        self.resource = resource
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.has_synced = threading.Event()
        self.terminated = threading.Event()
        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[_Handlers] = []
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def add_handler(
        self,
        on_add: Handler | None = None,
        on_update: Handler | None = None,
        on_delete: Handler | None = None,
    ) -> None:
        self._handlers.append(_Handlers(on_add, on_update, on_delete))

    def get(self, namespace: str | None, name: str) -> Any | None:
        key = f"{namespace}/{name}" if namespace else name
        with self._store_lock:
            return self._store.get(key)

    def list(self) -> list[Any]:
        with self._store_lock:
            return list(self._store.values())

    def _dispatch(self, kind: str, *objs: Any) -> None:
        for handlers in self._handlers:
            callback = getattr(handlers, f"on_{kind}")
            if callback is None:
                continue
            try:
                callback(*objs)
            except Exception:
                self.logger.exception(
                    "%s %s handler failed for %s", self.resource, kind, object_key(objs[-1])
                )

    def _replace(self, items: list[Any]) -> None:
        """Swap the store for a fresh listing and dispatch what changed."""
        fresh = {object_key(obj): obj for obj in items}
        with self._store_lock:
            previous = self._store
            self._store = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("add", obj)
            elif old.metadata.resource_version != obj.metadata.resource_version:
                self._dispatch("update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("delete", old)

    def _apply_event(self, event_type: str, obj: Any) -> None:
        key = object_key(obj)
        if event_type in {"ADDED", "MODIFIED"}:
            with self._store_lock:
                old = self._store.get(key)
                self._store[key] = obj
            if old is None:
                self._dispatch("add", obj)
            else:
                self._dispatch("update", old, obj)
        elif event_type == "DELETED":
            with self._store_lock:
                old = self._store.pop(key, None)
            self._dispatch("delete", old if old is not None else obj)

    def _list(self) -> str | None:
        listing = self.list_fn()
        items = getattr(listing, "items", None) or []
        self._replace(items)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        self.terminated.clear()
        try:
            self._run(stop)
        finally:
            self.terminated.set()

    def _run(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.has_synced.set()
                self.logger.info(
                    "Synced %s cache; watching from resourceVersion %s",
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self._apply_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.resource)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s).",
                                self.resource,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.resource,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(resource=self.resource).inc()
                    return

                self.logger.exception("Kubernetes API %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

    def start(self, stop_event: threading.Event) -> None:
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"stop_event": stop_event},
            name=f"informer-{self.resource}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
