from __future__ import annotations

import logging
import queue
import threading
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1LoadBalancerStatus,
    V1Node,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.config.config_exception import ConfigException

from lbcontroller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


def load_kube_configuration() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> CoreV1Api:
    return client.CoreV1Api()


def patch_service_labels(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    labels: dict[str, str | None],
) -> None:
    """Merge-patch service labels; a ``None`` value removes the label."""
    body = {"metadata": {"labels": labels}}
    core_api.patch_namespaced_service(name=name, namespace=namespace, body=body)


class StatusNotFound(Exception):
    """The service disappeared before its status could be written."""


class StatusConflict(Exception):
    """The service changed underneath the status write."""


class ServiceStatusWriter:
    """Writes ``status.loadBalancer`` through the status subresource."""

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def write(self, namespace: str, name: str, status: V1LoadBalancerStatus) -> None:
        try:
            latest = self.core_api.read_namespaced_service(name=name, namespace=namespace)
            if latest.status is None:
                latest.status = client.V1ServiceStatus()
            latest.status.load_balancer = status
            self.core_api.replace_namespaced_service_status(
                name=name,
                namespace=namespace,
                body=latest,
            )
        except ApiException as exc:
            if exc.status == 404:
                raise StatusNotFound(f"service {namespace}/{name} not found") from exc
            if exc.status == 409:
                raise StatusConflict(
                    f"service {namespace}/{name} has been changed since it was read"
                ) from exc
            raise


def _involved_object(obj: Any) -> V1ObjectReference:
    metadata = obj.metadata
    kind = getattr(obj, "kind", None) or ("Node" if isinstance(obj, V1Node) else "Service")
    return V1ObjectReference(
        api_version="v1",
        kind=kind,
        name=metadata.name,
        namespace=metadata.namespace,
        uid=metadata.uid,
        resource_version=metadata.resource_version,
    )


class EventRecorder:
    """Best-effort Kubernetes event emission.

    :meth:`event` never blocks and never raises: events are logged, queued
    for a sender thread and dropped when the queue is full.  Delivery
    failures are logged only.
    """

    def __init__(
        self,
        core_api: CoreV1Api | None,
        component: str = "service-controller",
        max_pending: int = 1000,
    ) -> None:
        self.core_api = core_api
        self.component = component
        self.logger = logging.getLogger(__name__)
        self._pending: queue.Queue[CoreV1Event] = queue.Queue(maxsize=max_pending)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        reference = _involved_object(obj)
        target = (
            f"{reference.namespace}/{reference.name}" if reference.namespace else reference.name
        )
        self.logger.info(
            "Event(%s %s): type=%s reason=%s message=%s",
            reference.kind,
            target,
            event_type,
            reason,
            message,
        )
        if self.core_api is None:
            return
        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{reference.name}.",
                namespace=reference.namespace or "default",
            ),
            involved_object=reference,
            reason=reason,
            message=message,
            type=event_type,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._pending.put_nowait(body)
        except queue.Full:
            METRICS.events_dropped_total.inc()
            self.logger.warning("Event queue full; dropping %s event for %s", reason, target)

    def _send(self, body: CoreV1Event) -> None:
        try:
            self.core_api.create_namespaced_event(  # type: ignore[union-attr]
                namespace=body.metadata.namespace,
                body=body,
            )
        except Exception:
            self.logger.warning(
                "Failed to record %s event for %s",
                body.reason,
                body.involved_object.name,
                exc_info=True,
            )

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                body = self._pending.get(timeout=0.5)
            except queue.Empty:
                continue
            self._send(body)

    def start(self) -> None:
        if self.core_api is None or self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-recorder", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
