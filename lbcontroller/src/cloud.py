from __future__ import annotations

import enum
import itertools
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

from kubernetes.client import V1LoadBalancerIngress, V1LoadBalancerStatus, V1Node, V1Service

LOGGER = logging.getLogger(__name__)

ANNOTATION_LOADBALANCER_ID = "service.beta.kubernetes.io/loadbalancer-id"
ANNOTATION_ADDITIONAL_TAGS = "service.beta.kubernetes.io/loadbalancer-additional-resource-tags"


class ErrorKind(enum.Enum):
    """Structured classification of a failed cloud or API call."""

    THROTTLED = "throttled"
    TRANSIENT = "transient"
    REJECTED = "rejected"


class CloudError(Exception):
    """Error raised by a load-balancer backend, tagged with its kind at the boundary."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        super().__init__(message)
        self.kind = kind


class TryAgainError(Exception):
    """Signals that the failed operation is safe to retry right away."""

    def __init__(self, message: str = "try again", kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        super().__init__(message)
        self.kind = kind


class RetryableError(Exception):
    """The reconcile could not read its inputs; requeue and try later."""

    kind = ErrorKind.TRANSIENT


class SyncError(Exception):
    """The reconcile failed for this cycle; the key is requeued at the top level."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.REJECTED) -> None:
        super().__init__(message)
        self.kind = kind


@dataclass(frozen=True)
class Listener:
    port: int
    protocol: str
    node_port: int | None = None


@dataclass(frozen=True)
class LoadBalancerDescriptor:
    """Observed description of a cloud load balancer."""

    id: str
    name: str
    address: str
    listeners: tuple[Listener, ...] = ()
    backends: tuple[str, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    user_managed: bool = False


@runtime_checkable
class LoadBalancerBackend(Protocol):
    """Cloud capability the reconciler drives. All operations must be idempotent."""

    def get_load_balancer(self, service: V1Service) -> tuple[bool, LoadBalancerDescriptor | None]:
        ...

    def ensure_load_balancer(
        self, service: V1Service, nodes: list[V1Node]
    ) -> V1LoadBalancerStatus:
        ...

    def ensure_load_balancer_deleted(self, service: V1Service) -> None:
        ...


@runtime_checkable
class ErrorClassifying(Protocol):
    """Optional backend capability: map its own exceptions to an :class:`ErrorKind`."""

    def classify_error(self, exc: BaseException) -> ErrorKind:
        ...


class MessageClassifier:
    """Fallback classifier for backends that do not type their errors.

    Exceptions that already carry a ``kind`` are trusted; anything else is
    matched against the configured throttling markers in its message.
    """

    def __init__(self, throttle_markers: Iterable[str] = ("Throttling",)) -> None:
        self.throttle_markers = tuple(m for m in throttle_markers if m)

    def classify_error(self, exc: BaseException) -> ErrorKind:
        kind = getattr(exc, "kind", None)
        if isinstance(kind, ErrorKind):
            return kind
        message = str(exc)
        if any(marker in message for marker in self.throttle_markers):
            return ErrorKind.THROTTLED
        return ErrorKind.TRANSIENT


def resolve_classifier(backend: Any, throttle_markers: Iterable[str]) -> ErrorClassifying:
    """Check the backend once and return the classifier the worker loop will use."""
    if not isinstance(backend, LoadBalancerBackend):
        raise TypeError(
            f"{type(backend).__name__} does not implement the LoadBalancerBackend capability"
        )
    if isinstance(backend, ErrorClassifying):
        LOGGER.info("Using error classification provided by %s", type(backend).__name__)
        return backend
    return MessageClassifier(throttle_markers)


def default_load_balancer_name(service: V1Service) -> str:
    """Derive a stable load balancer name from the service UID."""
    uid = str(service.metadata.uid or "").replace("-", "")
    return ("a" + uid)[:32]


def parse_additional_tags(annotations: dict[str, str] | None) -> dict[str, str]:
    """Parse ``k1=v1, k2=v2`` from the additional-tags annotation.

    Entries without a key are dropped, a missing value becomes ``""`` and
    anything after a second ``=`` is ignored.
    """
    raw = (annotations or {}).get(ANNOTATION_ADDITIONAL_TAGS, "")
    tags: dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        pieces = part.split("=")
        key = pieces[0].strip()
        if not key:
            continue
        tags[key] = pieces[1].strip() if len(pieces) > 1 else ""
    return tags


def _listeners_for(service: V1Service) -> tuple[Listener, ...]:
    ports = getattr(service.spec, "ports", None) or []
    return tuple(
        Listener(port=p.port, protocol=(p.protocol or "TCP"), node_port=p.node_port)
        for p in ports
    )


class InMemoryLoadBalancerBackend:
    """Process-local load balancer backend.

    Stands in for a cloud provider in tests and local runs. Balancers are
    found by the id annotation when the service carries one, otherwise by
    the name derived from the service UID.
    """

    def __init__(self, address_prefix: str = "192.0.2.") -> None:
        self.address_prefix = address_prefix
        self._balancers: dict[str, LoadBalancerDescriptor] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.fail_next: list[BaseException] = []

    def seed(self, descriptor: LoadBalancerDescriptor) -> None:
        with self._lock:
            self._balancers[descriptor.id] = descriptor

    def balancers(self) -> list[LoadBalancerDescriptor]:
        with self._lock:
            return list(self._balancers.values())

    def _raise_injected(self) -> None:
        if self.fail_next:
            raise self.fail_next.pop(0)

    def _find_locked(self, service: V1Service) -> LoadBalancerDescriptor | None:
        annotations = service.metadata.annotations or {}
        lb_id = annotations.get(ANNOTATION_LOADBALANCER_ID)
        if lb_id:
            return self._balancers.get(lb_id)
        name = default_load_balancer_name(service)
        for descriptor in self._balancers.values():
            if descriptor.name == name and not descriptor.user_managed:
                return descriptor
        return None

    def get_load_balancer(self, service: V1Service) -> tuple[bool, LoadBalancerDescriptor | None]:
        self._raise_injected()
        with self._lock:
            found = self._find_locked(service)
        return found is not None, found

    def ensure_load_balancer(
        self, service: V1Service, nodes: list[V1Node]
    ) -> V1LoadBalancerStatus:
        self._raise_injected()
        annotations = service.metadata.annotations or {}
        requested_id = annotations.get(ANNOTATION_LOADBALANCER_ID)
        backends = tuple(sorted(n.metadata.name for n in nodes))
        with self._lock:
            current = self._find_locked(service)
            if current is None and requested_id:
                raise CloudError(
                    f"ensure load balancer: Message: load balancer {requested_id} not found",
                    kind=ErrorKind.REJECTED,
                )
            if current is None:
                sequence = next(self._ids)
                current = LoadBalancerDescriptor(
                    id=f"lb-{sequence:08d}",
                    name=default_load_balancer_name(service),
                    address=f"{self.address_prefix}{sequence % 254 + 1}",
                )
                LOGGER.info("Created load balancer %s (%s)", current.id, current.name)
            updated = replace(
                current,
                listeners=_listeners_for(service),
                backends=backends,
                tags={**current.tags, **parse_additional_tags(annotations)},
            )
            self._balancers[updated.id] = updated
        return V1LoadBalancerStatus(ingress=[V1LoadBalancerIngress(ip=updated.address)])

    def ensure_load_balancer_deleted(self, service: V1Service) -> None:
        self._raise_injected()
        with self._lock:
            current = self._find_locked(service)
            if current is None:
                return
            annotations = service.metadata.annotations or {}
            if current.user_managed or annotations.get(ANNOTATION_LOADBALANCER_ID):
                # Reused balancers outlive the service; only detach what we attached.
                self._balancers[current.id] = replace(current, listeners=(), backends=())
                LOGGER.info("Detached listeners from reused load balancer %s", current.id)
                return
            del self._balancers[current.id]
            LOGGER.info("Deleted load balancer %s (%s)", current.id, current.name)
