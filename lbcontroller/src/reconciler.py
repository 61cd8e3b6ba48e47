from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1LoadBalancerStatus, V1Service

from lbcontroller.src.backoff import (
    DEFAULT_RETRY,
    STATUS_RETRY,
    RetryPolicy,
    retry_on_try_again,
)
from lbcontroller.src.cache import CachedService, ServiceCache, service_hash, service_key, split_key
from lbcontroller.src.cloud import (
    ErrorClassifying,
    ErrorKind,
    LoadBalancerBackend,
    MessageClassifier,
    RetryableError,
    SyncError,
    TryAgainError,
)
from lbcontroller.src.kube import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    StatusConflict,
    StatusNotFound,
    patch_service_labels,
)
from lbcontroller.src.metrics import METRICS
from lbcontroller.src.predicates import (
    LABEL_SERVICE_HASH,
    available_nodes,
    is_process_needed,
    needs_load_balancer,
)

_MESSAGE_RE = re.compile(r".*(Message:.*)")


def sanitize_error_message(exc: BaseException) -> str:
    """Extract the human-readable ``Message:`` part of a cloud API error, if any."""
    text = str(exc)
    match = _MESSAGE_RE.search(text)
    if match:
        return match.group(1)
    return text


def ingress_snapshot(status: V1LoadBalancerStatus | None) -> tuple[tuple[str | None, str | None], ...]:
    """Comparable view of a load balancer status; ``None`` and no ingress are equal."""
    if status is None:
        return ()
    return tuple((ingress.ip, ingress.hostname) for ingress in (status.ingress or []))


class Reconciler:
    """Drives one service key toward its desired load balancer state.

    ``sync`` always re-reads the service from the lister rather than trusting
    whatever event enqueued the key:

    * service gone and a cached copy exists: delete its load balancer;
    * service gone and nothing cached: nothing is known, log and stop;
    * cached UID differs from the live one: the service was recreated, so
      delete first and then ensure from scratch;
    * otherwise ensure (or remove, when no longer a LoadBalancer service)
      and write ``status.loadBalancer`` only when it changed.

    The cache entry is written only after the whole update succeeded.
    """

    def __init__(
        self,
        backend: LoadBalancerBackend,
        services: Any,
        nodes: Any,
        cache: ServiceCache,
        status_writer: Any,
        recorder: Any,
        core_api: CoreV1Api,
        classifier: ErrorClassifying | None = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY,
        status_retry: RetryPolicy = STATUS_RETRY,
        sleep: Callable[[float], object] = time.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self.backend = backend
        self.services = services
        self.nodes = nodes
        self.cache = cache
        self.status_writer = status_writer
        self.recorder = recorder
        self.core_api = core_api
        self.classifier = classifier or MessageClassifier()
        self.retry_policy = retry_policy
        self.status_retry = status_retry
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    def _retry(self, fn: Callable[..., Any], *args: Any, policy: RetryPolicy | None = None) -> Any:
        return retry_on_try_again(fn, *args, policy=policy or self.retry_policy, sleep=self.sleep)

    def sync(self, key: str) -> None:
        try:
            namespace, name = split_key(key)
        except ValueError:
            self.logger.error("Dropping malformed service key %r", key)
            return

        started = time.monotonic()
        try:
            cached = self.cache.get(key)
            try:
                service = self.services.get(namespace, name)
            except Exception as exc:
                raise RetryableError(f"failed to load service {key}: {exc}") from exc

            if service is None:
                if cached is None:
                    self.logger.error(
                        "[%s] service not found and no cached copy; skipping deletion", key
                    )
                    return
                if not is_process_needed(cached.service):
                    self.logger.info("[%s] class annotation set, dropping cached copy", key)
                    self.cache.remove(key)
                    return
                self.logger.info("[%s] service has been deleted", key)
                self._retry(self.delete, cached.service)
                return

            self._update(key, cached, service)
        finally:
            elapsed = time.monotonic() - started
            METRICS.reconcile_latency_seconds.labels(phase="reconcile").observe(elapsed)
            self.logger.info("[%s] finished syncing service (%.3fs)", key, elapsed)

    def _update(self, key: str, cached: CachedService | None, service: V1Service) -> None:
        pre = ingress_snapshot(service.status.load_balancer if service.status else None)

        if cached is not None and cached.uid != service.metadata.uid:
            self.logger.warning(
                "[%s] UID changed %s -> %s; deleting load balancer before re-creating",
                key,
                cached.uid,
                service.metadata.uid,
            )
            if is_process_needed(cached.service):
                self._retry(self.delete, cached.service)
            else:
                # Owned by another controller; never touch its load balancer.
                self.cache.remove(key)
            self._retry(self.delete, service)
            cached = None

        backends: tuple[str, ...] = ()
        if not needs_load_balancer(service):
            desired: V1LoadBalancerStatus | None = self._ensure_removed(key, service)
        else:
            desired, backends = self._ensure(key, cached, service)

        self._update_status(key, service, pre, desired)

        if needs_load_balancer(service):
            self.cache.set(
                key, CachedService.from_service(service, backends=backends, status=desired)
            )

    def _ensure_removed(self, key: str, service: V1Service) -> V1LoadBalancerStatus:
        exists, _ = self.backend.get_load_balancer(service)
        if exists:
            self.logger.info("[%s] deleting load balancer that is no longer needed", key)
            self._retry(self.delete, service)
        else:
            self.cache.remove(key)
        self._remove_service_hash(key, service)
        return V1LoadBalancerStatus()

    def _ensure(
        self, key: str, cached: CachedService | None, service: V1Service
    ) -> tuple[V1LoadBalancerStatus, tuple[str, ...]]:
        nodes = available_nodes(service, self.nodes.list())
        backends = tuple(sorted(node.metadata.name for node in nodes))

        if (
            cached is not None
            and cached.status is not None
            and cached.content_hash == service_hash(service)
            and cached.backends == backends
        ):
            self.logger.info("[%s] load balancer already up to date", key)
            return cached.status, backends

        if not nodes:
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "UnAvailableLoadBalancer",
                "There are no available nodes for LoadBalancer",
            )

        self.logger.info("[%s] ensuring load balancer with %d backend(s)", key, len(nodes))
        started = time.monotonic()
        try:
            status = self.backend.ensure_load_balancer(service, nodes)
        except Exception as exc:
            message = sanitize_error_message(exc)
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "SyncLoadBalancerFailed",
                f"Error syncing load balancer: {message}",
            )
            raise SyncError(
                f"ensure loadbalancer error: {exc}", kind=self.classifier.classify_error(exc)
            ) from exc
        finally:
            METRICS.reconcile_latency_seconds.labels(phase="create").observe(
                time.monotonic() - started
            )

        self.recorder.event(service, EVENT_TYPE_NORMAL, "EnsuredLoadBalancer", "Ensured load balancer")
        self._add_service_hash(key, service)
        return status, backends

    def _add_service_hash(self, key: str, service: V1Service) -> None:
        content_hash = service_hash(service)
        labels = service.metadata.labels or {}
        if labels.get(LABEL_SERVICE_HASH) == content_hash:
            return
        try:
            patch_service_labels(
                self.core_api,
                service.metadata.namespace,
                service.metadata.name,
                {LABEL_SERVICE_HASH: content_hash},
            )
        except ApiException as exc:
            raise RetryableError(f"update service hash for {key}: {exc.reason}") from exc

    def _remove_service_hash(self, key: str, service: V1Service) -> None:
        labels = service.metadata.labels or {}
        if LABEL_SERVICE_HASH not in labels:
            return
        try:
            patch_service_labels(
                self.core_api,
                service.metadata.namespace,
                service.metadata.name,
                {LABEL_SERVICE_HASH: None},
            )
        except ApiException as exc:
            raise RetryableError(f"remove service hash for {key}: {exc.reason}") from exc

    def _update_status(
        self,
        key: str,
        service: V1Service,
        pre: tuple[tuple[str | None, str | None], ...],
        desired: V1LoadBalancerStatus | None,
    ) -> None:
        if desired is None:
            self.logger.error("[%s] refusing to write a nil load balancer status", key)
            raise SyncError(f"status not updated for {key}: nil desired status")

        if pre == ingress_snapshot(desired):
            self.logger.info("[%s] not persisting unchanged LoadBalancerStatus", key)
            return

        self.logger.info("[%s] status: %s -> %s", key, pre, ingress_snapshot(desired))
        self._retry(self._write_status, key, service, desired, policy=self.status_retry)

    def _write_status(self, key: str, service: V1Service, desired: V1LoadBalancerStatus) -> None:
        try:
            self.status_writer.write(service.metadata.namespace, service.metadata.name, desired)
        except StatusNotFound:
            self.logger.info("[%s] not persisting status for a service that no longer exists", key)
        except StatusConflict as exc:
            raise SyncError(
                f"not persisting status for {key}: {exc}", kind=ErrorKind.TRANSIENT
            ) from exc
        except Exception as exc:
            self.logger.warning("[%s] failed to persist LoadBalancerStatus: %s", key, exc)
            raise TryAgainError(f"retry with {exc}, try again") from exc

    def delete(self, service: V1Service) -> None:
        """Delete the load balancer of ``service``; never checks whether it exists first."""
        key = service_key(service)
        self.logger.info("[%s] deleting load balancer", key)
        started = time.monotonic()
        try:
            self.backend.ensure_load_balancer_deleted(service)
        except Exception as exc:
            message = sanitize_error_message(exc)
            self.recorder.event(
                service,
                EVENT_TYPE_WARNING,
                "DeleteLoadBalancerFailed",
                f"Error deleting load balancer: {message}",
            )
            raise TryAgainError(
                f"delete load balancer for {key}: {message}",
                kind=self.classifier.classify_error(exc),
            ) from exc
        METRICS.reconcile_latency_seconds.labels(phase="delete").observe(
            time.monotonic() - started
        )
        self.recorder.event(
            service,
            EVENT_TYPE_NORMAL,
            "DeletedLoadBalancer",
            f"LoadBalancer Deleted SUCCESS. {key}",
        )
        self.cache.remove(key)
