from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from kubernetes.client import V1Node, V1Service

from lbcontroller.src.cache import service_key

LOGGER = logging.getLogger(__name__)

ANNOTATION_CLASS = "service.beta.kubernetes.io/class"
ANNOTATION_REMOVE_UNSCHEDULABLE = (
    "service.beta.kubernetes.io/loadbalancer-remove-unscheduled-backend"
)
LABEL_SERVICE_HASH = "service.beta.kubernetes.io/hash"
LABEL_EXCLUDE_NODE = "service.beta.kubernetes.io/exclude-node"
MASTER_ROLE_LABELS = (
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
)
VIRTUAL_NODE_LABEL = ("type", "virtual-kubelet")
SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
TRAFFIC_POLICY_CLUSTER = "Cluster"


def _annotations(obj: Any) -> dict[str, str]:
    return getattr(obj.metadata, "annotations", None) or {}


def _labels(obj: Any) -> dict[str, str]:
    return getattr(obj.metadata, "labels", None) or {}


def is_process_needed(service: V1Service) -> bool:
    """Services claimed by another controller through the class annotation are skipped."""
    return not _annotations(service).get(ANNOTATION_CLASS)


def needs_load_balancer(service: V1Service) -> bool:
    return getattr(service.spec, "type", None) == SERVICE_TYPE_LOAD_BALANCER


def need_add(service: V1Service) -> bool:
    # A hash label on a non-LoadBalancer service means we managed it before
    # and its load balancer may still need to be removed.
    return needs_load_balancer(service) or LABEL_SERVICE_HASH in _labels(service)


def need_update(old: V1Service, new: V1Service, recorder: Any = None) -> bool:
    """Decide whether a service update can affect its load balancer."""
    old_needs = needs_load_balancer(old)
    new_needs = needs_load_balancer(new)
    if old_needs != new_needs:
        if recorder is not None:
            recorder.event(
                new,
                "Normal",
                "Type",
                f"{getattr(old.spec, 'type', None)} -> {getattr(new.spec, 'type', None)}",
            )
        return True

    if not new_needs:
        return False

    if old.spec != new.spec:
        return True
    if _annotations(old) != _annotations(new):
        return True
    if old.metadata.deletion_timestamp != new.metadata.deletion_timestamp:
        return True
    return old.metadata.uid != new.metadata.uid


def need_delete(service: V1Service) -> bool:
    return True


def _ready_status(node: V1Node) -> str | None:
    conditions = getattr(node.status, "conditions", None) or []
    for condition in conditions:
        if condition.type == "Ready":
            return condition.status
    return None


def node_spec_changed(old: V1Node, new: V1Node) -> bool:
    """Only scheduling-relevant node changes matter; heartbeats do not."""
    if _labels(old) != _labels(new):
        return True
    if bool(getattr(old.spec, "unschedulable", False)) != bool(
        getattr(new.spec, "unschedulable", False)
    ):
        return True
    return _ready_status(old) != _ready_status(new)


def endpoints_changed(old: Any, new: Any) -> bool:
    return (old.subsets or []) != (new.subsets or [])


def is_excluded_node(node: V1Node) -> bool:
    return _labels(node).get(LABEL_EXCLUDE_NODE) == "true"


def node_eligible(service: V1Service, node: V1Node) -> bool:
    """Return True when ``node`` may serve as a backend for ``service``."""
    key = service_key(service)
    name = node.metadata.name
    labels = _labels(node)

    if getattr(node.spec, "unschedulable", False):
        if _annotations(service).get(ANNOTATION_REMOVE_UNSCHEDULABLE) == "on":
            LOGGER.debug("[%s] ignoring unschedulable node %s", key, name)
            return False

    if any(label in labels for label in MASTER_ROLE_LABELS):
        traffic_policy = getattr(service.spec, "external_traffic_policy", None)
        if traffic_policy != TRAFFIC_POLICY_CLUSTER:
            LOGGER.debug("[%s] ignoring master node %s", key, name)
            return False

    label_key, label_value = VIRTUAL_NODE_LABEL
    if labels.get(label_key) == label_value:
        return True

    conditions = getattr(node.status, "conditions", None) or []
    if not conditions:
        return False
    for condition in conditions:
        if condition.type == "Ready" and condition.status != "True":
            LOGGER.debug(
                "[%s] ignoring node %s with Ready condition status %s",
                key,
                name,
                condition.status,
            )
            return False
    return True


def available_nodes(service: V1Service, nodes: Iterable[V1Node]) -> list[V1Node]:
    """Filter the live node list down to the backends for ``service``."""
    return [
        node
        for node in nodes
        if not is_excluded_node(node) and node_eligible(service, node)
    ]
