"""Shared pytest fixtures for Kube Bridge tests."""

import copy
import itertools
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from kube_migration.client.exceptions import APIError, ConflictError, NotFoundError
from kube_migration.client.kubeconfig import ClusterSettings
from kube_migration.config import PerformanceConfig
from kube_migration.resources import ResourceDescriptor, split_api_version

ALL_VERBS = ["create", "delete", "get", "list", "patch", "update", "watch"]

CORE_RESOURCES = [
    {"name": "configmaps", "kind": "ConfigMap", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "endpoints", "kind": "Endpoints", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "events", "kind": "Event", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "namespaces", "kind": "Namespace", "namespaced": False, "verbs": ALL_VERBS},
    {"name": "persistentvolumeclaims", "kind": "PersistentVolumeClaim", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "pods", "kind": "Pod", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "pods/log", "kind": "Pod", "namespaced": True, "verbs": ["get"]},
    {"name": "secrets", "kind": "Secret", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "serviceaccounts", "kind": "ServiceAccount", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "services", "kind": "Service", "namespaced": True, "verbs": ALL_VERBS},
    {"name": "bindings", "kind": "Binding", "namespaced": True, "verbs": ["create"]},
]

GROUP_RESOURCES: dict[str, list[dict[str, Any]]] = {
    "apps/v1": [
        {"name": "deployments", "kind": "Deployment", "namespaced": True, "verbs": ALL_VERBS},
        {"name": "deployments/scale", "kind": "Scale", "namespaced": True, "verbs": ["get", "update"]},
        {"name": "replicasets", "kind": "ReplicaSet", "namespaced": True, "verbs": ALL_VERBS},
        {"name": "controllerrevisions", "kind": "ControllerRevision", "namespaced": True, "verbs": ALL_VERBS},
    ],
    "rbac.authorization.k8s.io/v1": [
        {"name": "clusterrolebindings", "kind": "ClusterRoleBinding", "namespaced": False, "verbs": ALL_VERBS},
        {"name": "clusterroles", "kind": "ClusterRole", "namespaced": False, "verbs": ALL_VERBS},
        {"name": "rolebindings", "kind": "RoleBinding", "namespaced": True, "verbs": ALL_VERBS},
        {"name": "roles", "kind": "Role", "namespaced": True, "verbs": ALL_VERBS},
    ],
    "apiextensions.k8s.io/v1": [
        {
            "name": "customresourcedefinitions",
            "kind": "CustomResourceDefinition",
            "namespaced": False,
            "verbs": ALL_VERBS,
        },
    ],
}


def fast_performance(**overrides: Any) -> PerformanceConfig:
    """Performance settings that keep retries instantaneous."""
    values = {"qps": 0, "burst": 4, "retry_attempts": 3, "retry_backoff_min": 0, "retry_backoff_max": 1}
    values.update(overrides)
    return PerformanceConfig(**values)


def matches_selector(labels: dict[str, str], selector: str | None) -> bool:
    if not selector:
        return True
    for requirement in selector.split(","):
        key, _, value = requirement.partition("=")
        if labels.get(key.strip()) != value.strip():
            return False
    return True


class FakeCluster:
    """In-memory stand-in for ``ClusterClient``.

    Objects are stored per (kind, namespace, name). Discovery is served from
    ``core_resources`` and ``group_resources``; failures can be injected per
    method and per kind. Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        name: str = "fake",
        group_resources: dict[str, list[dict[str, Any]]] | None = None,
        performance: PerformanceConfig | None = None,
    ):
        self.name = name
        self.settings = ClusterSettings(
            name=name, host="https://fake.example:6443", performance=performance or fast_performance()
        )
        self.core_resources = copy.deepcopy(CORE_RESOURCES)
        self.group_resources = copy.deepcopy(GROUP_RESOURCES if group_resources is None else group_resources)
        self.objects: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.pod_logs: dict[tuple[str, str], str] = {}
        self.calls: list[tuple[str, str, str | None, str | None]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.group_failures: dict[str, Exception] = {}
        self.on_create: list[Callable[["FakeCluster", dict[str, Any]], None]] = []
        self.on_get: list[Callable[["FakeCluster", dict[str, Any]], None]] = []
        self.closed = False
        self._versions = itertools.count(1)

    @property
    def cluster_name(self) -> str:
        return self.name

    # Test helpers

    def add(self, document: dict[str, Any]) -> dict[str, Any]:
        """Store an object as the API server would (server fields included)."""
        stored = copy.deepcopy(document)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{metadata['name']}")
        metadata["resourceVersion"] = str(next(self._versions))
        metadata.setdefault("creationTimestamp", "2024-01-01T00:00:00Z")
        self.objects[(stored["kind"], metadata.get("namespace"), metadata["name"])] = stored
        return stored

    def stored(self, kind: str, name: str, namespace: str | None = None) -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def fail(self, method: str, kind: str, error: Exception) -> None:
        self.failures[(method, kind)] = error

    def mutating_calls(self) -> list[tuple[str, str, str | None, str | None]]:
        return [call for call in self.calls if call[0] in ("create", "replace", "delete")]

    def _check(self, method: str, descriptor: ResourceDescriptor) -> None:
        error = self.failures.get((method, descriptor.kind))
        if error is not None:
            raise error

    @staticmethod
    def _namespace(descriptor: ResourceDescriptor, namespace: str | None) -> str | None:
        return namespace if descriptor.namespaced else None

    # Discovery

    async def list_api_groups(self) -> list[dict[str, Any]]:
        groups = []
        for group_version in sorted(self.group_resources):
            group, version = split_api_version(group_version)
            groups.append(
                {
                    "name": group,
                    "versions": [{"groupVersion": group_version, "version": version}],
                    "preferredVersion": {"groupVersion": group_version, "version": version},
                }
            )
        return groups

    async def list_api_resources(self, group: str, version: str) -> list[dict[str, Any]]:
        group_version = f"{group}/{version}" if group else version
        if group_version in self.group_failures:
            raise self.group_failures[group_version]
        if not group:
            return copy.deepcopy(self.core_resources)
        if group_version not in self.group_resources:
            raise NotFoundError("Not found", 404)
        return copy.deepcopy(self.group_resources[group_version])

    # Reads

    async def iter_resources(self, descriptor, namespace=None, label_selector=None, page_size=None):
        for item in await self.list_resources(descriptor, namespace=namespace, label_selector=label_selector):
            yield item

    async def list_resources(self, descriptor, namespace=None, label_selector=None) -> list[dict[str, Any]]:
        self.calls.append(("list", descriptor.kind, namespace, None))
        self._check("list", descriptor)
        items = []
        for (kind, ns, _), obj in sorted(self.objects.items(), key=lambda entry: entry[0][2]):
            if kind != descriptor.kind:
                continue
            if descriptor.namespaced and namespace is not None and ns != namespace:
                continue
            if not matches_selector(obj["metadata"].get("labels") or {}, label_selector):
                continue
            items.append(copy.deepcopy(obj))
        return items

    async def get_resource(self, descriptor, name, namespace=None) -> dict[str, Any]:
        self.calls.append(("get", descriptor.kind, namespace, name))
        self._check("get", descriptor)
        obj = self.objects.get((descriptor.kind, self._namespace(descriptor, namespace), name))
        if obj is None:
            raise NotFoundError("Not found", 404)
        for hook in self.on_get:
            hook(self, obj)
        return copy.deepcopy(obj)

    # Writes

    async def create_resource(self, descriptor, body, namespace=None) -> dict[str, Any]:
        self.calls.append(("create", descriptor.kind, namespace, body["metadata"]["name"]))
        self._check("create", descriptor)
        key = (descriptor.kind, self._namespace(descriptor, namespace), body["metadata"]["name"])
        if key in self.objects:
            raise ConflictError("Conflict (AlreadyExists)", 409)
        stored = self.add(body)
        for hook in self.on_create:
            hook(self, stored)
        return copy.deepcopy(stored)

    async def replace_resource(self, descriptor, name, body, namespace=None) -> dict[str, Any]:
        self.calls.append(("replace", descriptor.kind, namespace, name))
        self._check("replace", descriptor)
        key = (descriptor.kind, self._namespace(descriptor, namespace), name)
        live = self.objects.get(key)
        if live is None:
            raise NotFoundError("Not found", 404)
        if body["metadata"].get("resourceVersion") != live["metadata"]["resourceVersion"]:
            raise ConflictError("Conflict (resourceVersion)", 409)
        replaced = copy.deepcopy(body)
        replaced["metadata"]["uid"] = live["metadata"]["uid"]
        return copy.deepcopy(self.add(replaced))

    async def delete_resource(self, descriptor, name, namespace=None) -> None:
        self.calls.append(("delete", descriptor.kind, namespace, name))
        self._check("delete", descriptor)
        key = (descriptor.kind, self._namespace(descriptor, namespace), name)
        if key not in self.objects:
            raise NotFoundError("Not found", 404)
        del self.objects[key]

    async def read_pod_log(self, name, namespace, container=None) -> str:
        self.calls.append(("log", "Pod", namespace, name))
        if (namespace, name) not in self.pod_logs:
            raise APIError("no logs", 400)
        return self.pod_logs[(namespace, name)]

    async def close(self) -> None:
        self.closed = True


def write_manifest(root: Path, relative: str, document: dict[str, Any]) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=True), encoding="utf-8")
    return path


def deployment(name: str, namespace: str, image: str = "registry.old.example/app:1.0", **spec: Any) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": name}},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": "app", "image": image}], **spec},
            },
        },
    }


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster("source")


@pytest.fixture
def shop_namespace(fake_cluster: FakeCluster) -> FakeCluster:
    """A source cluster with a small application in namespace ``shop``."""
    cluster = fake_cluster
    cluster.add({"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "shop"}})
    cluster.add(deployment("web", "shop"))
    cluster.add(
        {
            "apiVersion": "apps/v1",
            "kind": "ReplicaSet",
            "metadata": {
                "name": "web-5d9c",
                "namespace": "shop",
                "ownerReferences": [
                    {"apiVersion": "apps/v1", "kind": "Deployment", "name": "web", "uid": "uid-web", "controller": True}
                ],
            },
            "spec": {"replicas": 1},
        }
    )
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {"name": "web", "namespace": "shop"},
            "spec": {
                "type": "NodePort",
                "clusterIP": "10.0.0.12",
                "clusterIPs": ["10.0.0.12"],
                "ports": [{"port": 80, "targetPort": 8080, "nodePort": 30080}],
                "selector": {"app": "web"},
            },
            "status": {"loadBalancer": {}},
        }
    )
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "settings",
                "namespace": "shop",
                "annotations": {"kubectl.kubernetes.io/last-applied-configuration": "{}"},
                "managedFields": [{"manager": "kubectl"}],
            },
            "data": {"mode": "production"},
        }
    )
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "kube-root-ca.crt", "namespace": "shop"},
            "data": {"ca.crt": "---"},
        }
    )
    cluster.add({"apiVersion": "v1", "kind": "Event", "metadata": {"name": "web.1", "namespace": "shop"}})
    cluster.add({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "other", "namespace": "elsewhere"}})
    return cluster
