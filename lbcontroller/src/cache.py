from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from hashlib import sha256
from typing import Any

from kubernetes.client import V1LoadBalancerStatus, V1Service


def service_key(obj: Any) -> str:
    """Return the ``namespace/name`` key used by the queue and the cache."""
    metadata = obj.metadata
    return f"{metadata.namespace}/{metadata.name}"


def split_key(key: str) -> tuple[str, str]:
    parts = key.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"unexpected key format {key!r}")
    return parts[0], parts[1]


def service_hash(service: V1Service) -> str:
    """Hash the parts of a service that decide its load balancer.

    Only ``spec`` and annotations are hashed, so the controller's own label
    and status writes never change the result.
    """
    spec = service.spec.to_dict() if service.spec is not None else {}
    payload = {
        "spec": spec,
        "annotations": dict(service.metadata.annotations or {}),
    }
    stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(stable_payload.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class CachedService:
    """Last service state the controller finished reconciling."""

    service: V1Service
    uid: str | None
    content_hash: str
    backends: tuple[str, ...] = ()
    status: V1LoadBalancerStatus | None = None

    @classmethod
    def from_service(
        cls,
        service: V1Service,
        backends: tuple[str, ...] = (),
        status: V1LoadBalancerStatus | None = None,
    ) -> CachedService:
        return cls(
            service=service,
            uid=service.metadata.uid,
            content_hash=service_hash(service),
            backends=backends,
            status=status,
        )


class ServiceCache:
    """Thread-safe map of ``namespace/name`` to :class:`CachedService`.

    Only an optimization and identity-tracking aid: everything in it can be
    rebuilt from the cluster and the cloud after a restart.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CachedService] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> CachedService | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, entry: CachedService) -> None:
        with self._lock:
            self._entries[key] = entry

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def items(self) -> list[tuple[str, CachedService]]:
        with self._lock:
            return list(self._entries.items())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
