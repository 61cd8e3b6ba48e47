from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, V1Endpoints, V1Node, V1Service

from lbcontroller.src.cache import CachedService, ServiceCache, service_key
from lbcontroller.src.predicates import (
    endpoints_changed,
    is_excluded_node,
    is_process_needed,
    need_add,
    need_delete,
    need_update,
    needs_load_balancer,
    node_spec_changed,
)
from lbcontroller.src.workqueue import DelayingWorkQueue


class EventRouter:
    """Turns Service, Node and Endpoints changes into service keys to reconcile.

    Every feed writes into the same queue, so a service touched by several
    signals before a worker picks it up is reconciled once.
    """

    def __init__(
        self,
        queue: DelayingWorkQueue,
        cache: ServiceCache,
        core_api: CoreV1Api,
        recorder: Any = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.cache = cache
        self.core_api = core_api
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    def register(self, services: Any, nodes: Any, endpoints: Any) -> None:
        services.add_handler(
            on_add=self.on_service_add,
            on_update=self.on_service_update,
            on_delete=self.on_service_delete,
        )
        nodes.add_handler(
            on_add=self.on_node_change,
            on_update=self.on_node_update,
            on_delete=self.on_node_change,
        )
        endpoints.add_handler(
            on_add=self.on_endpoints_change,
            on_update=self.on_endpoints_update,
            on_delete=self.on_endpoints_change,
        )

    def enqueue(self, key: str) -> None:
        self.logger.info("Enqueue service %s, queue length %d", key, len(self.queue))
        self.queue.add(key)

    def _sync_service(self, service: V1Service) -> None:
        key = service_key(service)
        if not is_process_needed(service):
            self.logger.info("[%s] class annotation set, skip processing", key)
            return
        self.enqueue(key)

    def on_service_add(self, service: V1Service) -> None:
        if need_add(service):
            self.logger.info("[%s] service addition event", service_key(service))
            self._sync_service(service)

    def on_service_update(self, old: V1Service, new: V1Service) -> None:
        if need_update(old, new, self.recorder):
            self.logger.info("[%s] service update event", service_key(new))
            self._sync_service(new)

    def on_service_delete(self, service: V1Service) -> None:
        if not need_delete(service):
            return
        key = service_key(service)
        if not is_process_needed(service):
            self.logger.info("[%s] class annotation set, skip deletion", key)
            return
        self.logger.info("[%s] service deletion event", key)
        # The lister will no longer return the object; keep the last known spec.
        self.cache.set(key, CachedService.from_service(service))
        self.enqueue(key)

    def on_node_change(self, node: V1Node) -> None:
        if node is None:
            return
        if is_excluded_node(node):
            self.logger.info("Node %s is excluded from load balancing, skip", node.metadata.name)
            return
        for key, entry in self.cache.items():
            service = entry.service
            if not needs_load_balancer(service):
                continue
            if not is_process_needed(service):
                continue
            self.logger.info("[%s] node %s changed, enqueue service", key, node.metadata.name)
            self.enqueue(key)

    def on_node_update(self, old: V1Node, new: V1Node) -> None:
        if node_spec_changed(old, new):
            self.logger.info("Node %s update event", new.metadata.name)
            self.on_node_change(new)

    def on_endpoints_change(self, endpoints: V1Endpoints) -> None:
        if endpoints is None:
            return
        namespace = endpoints.metadata.namespace
        name = endpoints.metadata.name
        key = f"{namespace}/{name}"
        entry = self.cache.get(key)
        if entry is not None:
            service = entry.service
        else:
            try:
                service = self.core_api.read_namespaced_service(name=name, namespace=namespace)
            except ApiException as exc:
                self.logger.warning(
                    "Can not get service %s for endpoints change (status=%s)", key, exc.status
                )
                return
        if not is_process_needed(service):
            return
        if not needs_load_balancer(service):
            return

        addresses = [
            f"ip: {address.ip}, nodeName: {address.node_name or ''}"
            for subset in (endpoints.subsets or [])
            for address in (subset.addresses or [])
        ]
        self.logger.info("[%s] endpoints changed: %s", key, addresses)
        self.enqueue(key)

    def on_endpoints_update(self, old: V1Endpoints, new: V1Endpoints) -> None:
        if endpoints_changed(old, new):
            self.on_endpoints_change(new)
