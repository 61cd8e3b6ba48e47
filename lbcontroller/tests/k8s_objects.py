from __future__ import annotations

from typing import Any

from kubernetes.client import (
    ApiException,
    V1EndpointAddress,
    V1Endpoints,
    V1EndpointSubset,
    V1LoadBalancerIngress,
    V1LoadBalancerStatus,
    V1Node,
    V1NodeCondition,
    V1NodeSpec,
    V1NodeStatus,
    V1ObjectMeta,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
    V1ServiceStatus,
)


def make_service(
    name: str = "web",
    namespace: str = "default",
    uid: str = "uid-1",
    service_type: str = "LoadBalancer",
    annotations: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
    traffic_policy: str | None = None,
    ingress_ip: str | None = None,
    port: int = 80,
    resource_version: str = "1",
) -> V1Service:
    status = V1ServiceStatus(load_balancer=V1LoadBalancerStatus())
    if ingress_ip is not None:
        status.load_balancer.ingress = [V1LoadBalancerIngress(ip=ingress_ip)]
    return V1Service(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=uid,
            annotations=dict(annotations or {}),
            labels=dict(labels or {}),
            resource_version=resource_version,
        ),
        spec=V1ServiceSpec(
            type=service_type,
            external_traffic_policy=traffic_policy,
            ports=[V1ServicePort(port=port, protocol="TCP", node_port=30000 + port)],
        ),
        status=status,
    )


def make_node(
    name: str = "node-1",
    labels: dict[str, str] | None = None,
    unschedulable: bool = False,
    ready: str | None = "True",
    resource_version: str = "1",
) -> V1Node:
    conditions = [] if ready is None else [V1NodeCondition(type="Ready", status=ready)]
    return V1Node(
        metadata=V1ObjectMeta(name=name, labels=dict(labels or {}), resource_version=resource_version),
        spec=V1NodeSpec(unschedulable=unschedulable),
        status=V1NodeStatus(conditions=conditions),
    )


def make_endpoints(
    name: str = "web", namespace: str = "default", ips: list[str] | None = None
) -> V1Endpoints:
    addresses = [V1EndpointAddress(ip=ip, node_name="node-1") for ip in (ips or [])]
    return V1Endpoints(
        metadata=V1ObjectMeta(name=name, namespace=namespace),
        subsets=[V1EndpointSubset(addresses=addresses)] if addresses else [],
    )


class FakeLister:
    """Stands in for an informer store."""

    def __init__(self, objects: list[Any] | None = None) -> None:
        self.objects: dict[str, Any] = {}
        for obj in objects or []:
            self.put(obj)

    @staticmethod
    def _key(namespace: str | None, name: str) -> str:
        return f"{namespace}/{name}" if namespace else name

    def put(self, obj: Any) -> None:
        self.objects[self._key(obj.metadata.namespace, obj.metadata.name)] = obj

    def remove(self, obj: Any) -> None:
        self.objects.pop(self._key(obj.metadata.namespace, obj.metadata.name), None)

    def get(self, namespace: str | None, name: str) -> Any | None:
        return self.objects.get(self._key(namespace, name))

    def list(self) -> list[Any]:
        return list(self.objects.values())


class FakeCoreApi:
    """Minimal CoreV1Api backed by a :class:`FakeLister` of services."""

    def __init__(self, services: FakeLister | None = None) -> None:
        self.services = services or FakeLister()
        self.label_patches: list[tuple[str, dict[str, Any]]] = []
        self.status_writes: list[tuple[str, V1LoadBalancerStatus]] = []
        self.status_errors: list[ApiException] = []
        self.reads: list[str] = []

    def read_namespaced_service(self, name: str, namespace: str) -> V1Service:
        self.reads.append(f"{namespace}/{name}")
        service = self.services.get(namespace, name)
        if service is None:
            raise ApiException(status=404, reason="Not Found")
        return service

    def patch_namespaced_service(self, name: str, namespace: str, body: dict[str, Any]) -> None:
        service = self.read_namespaced_service(name=name, namespace=namespace)
        self.label_patches.append((f"{namespace}/{name}", body))
        labels = dict(service.metadata.labels or {})
        for key, value in body["metadata"]["labels"].items():
            if value is None:
                labels.pop(key, None)
            else:
                labels[key] = value
        service.metadata.labels = labels

    def replace_namespaced_service_status(self, name: str, namespace: str, body: V1Service) -> None:
        if self.status_errors:
            raise self.status_errors.pop(0)
        self.status_writes.append((f"{namespace}/{name}", body.status.load_balancer))
        self.services.put(body)


class FakeRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str, str]] = []

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        self.events.append((obj.metadata.name, event_type, reason, message))

    def reasons(self) -> list[str]:
        return [reason for _, _, reason, _ in self.events]
