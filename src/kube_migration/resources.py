"""Central resource type definitions - single source of truth.

This module holds the resource descriptor type, the descriptors of the
well-known kinds the pipeline itself manipulates, the default export
deny-list and the apply tier precedence. All other modules import from
here rather than defining their own hardcoded lists.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


@dataclass(frozen=True, order=True)
class ResourceDescriptor:
    """A resource type as advertised by API discovery.

    Attributes:
        group: API group ("" for the core group)
        version: API version within the group
        kind: Kind name (e.g. "Deployment")
        resource: REST plural used in URLs (e.g. "deployments")
        namespaced: Whether instances live in a namespace
        verbs: Verbs advertised by discovery
    """

    group: str
    version: str
    kind: str
    resource: str
    namespaced: bool = True
    verbs: tuple[str, ...] = field(default=("get", "list", "create", "update", "delete"), compare=False)

    @property
    def scope(self) -> str:
        return "namespaced" if self.namespaced else "cluster"

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def group_version(self) -> str:
        return self.api_version

    @property
    def qualified_kind(self) -> str:
        """Kind token used in file names; group-qualified outside the core group."""
        return f"{self.kind}.{self.group}" if self.group else self.kind

    def supports(self, *verbs: str) -> bool:
        return all(verb in self.verbs for verb in verbs)

    def path(self, namespace: str | None = None, name: str | None = None) -> str:
        """Build the REST path for a collection or a single object."""
        prefix = f"/apis/{self.group}/{self.version}" if self.group else f"/api/{self.version}"
        if self.namespaced and namespace:
            prefix = f"{prefix}/namespaces/{namespace}"
        path = f"{prefix}/{self.resource}"
        if name:
            path = f"{path}/{name}"
        return path


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split an apiVersion into (group, version)."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def qualified_kind_of(resource: dict[str, Any]) -> str:
    """Kind token of a manifest, group-qualified outside the core group."""
    group, _ = split_api_version(resource.get("apiVersion", ""))
    kind = resource.get("kind", "Unknown")
    return f"{kind}.{group}" if group else kind


# Descriptors the pipeline uses directly (transfer, cluster-scoped RBAC, apply)
NAMESPACE = ResourceDescriptor("", "v1", "Namespace", "namespaces", namespaced=False)
POD = ResourceDescriptor("", "v1", "Pod", "pods")
SECRET = ResourceDescriptor("", "v1", "Secret", "secrets")
CONFIG_MAP = ResourceDescriptor("", "v1", "ConfigMap", "configmaps")
SERVICE = ResourceDescriptor("", "v1", "Service", "services")
PERSISTENT_VOLUME_CLAIM = ResourceDescriptor("", "v1", "PersistentVolumeClaim", "persistentvolumeclaims")
CLUSTER_ROLE = ResourceDescriptor(
    "rbac.authorization.k8s.io", "v1", "ClusterRole", "clusterroles", namespaced=False
)
CLUSTER_ROLE_BINDING = ResourceDescriptor(
    "rbac.authorization.k8s.io", "v1", "ClusterRoleBinding", "clusterrolebindings", namespaced=False
)
ROLE_BINDING = ResourceDescriptor("rbac.authorization.k8s.io", "v1", "RoleBinding", "rolebindings")
CUSTOM_RESOURCE_DEFINITION = ResourceDescriptor(
    "apiextensions.k8s.io",
    "v1",
    "CustomResourceDefinition",
    "customresourcedefinitions",
    namespaced=False,
)
ROUTE = ResourceDescriptor("route.openshift.io", "v1", "Route", "routes")

# Ephemeral or derived kinds excluded from export unless explicitly included.
# Entries are matched against Kind, plural, and plural.group (case-insensitive).
DEFAULT_DENY_LIST: frozenset[str] = frozenset(
    {
        "events",
        "events.events.k8s.io",
        "endpoints",
        "endpointslices.discovery.k8s.io",
        "controllerrevisions.apps",
        "leases.coordination.k8s.io",
        "pods.metrics.k8s.io",
        "nodes.metrics.k8s.io",
        "componentstatuses",
        "bindings",
        "localsubjectaccessreviews.authorization.k8s.io",
        "packagemanifests.packages.operators.coreos.com",
    }
)


def descriptor_matches(descriptor: ResourceDescriptor, names: set[str] | frozenset[str]) -> bool:
    """Check whether a descriptor is named by any entry of a filter set.

    Entries may be a Kind ("Deployment"), a plural ("deployments") or a
    group-qualified plural ("deployments.apps"); matching is case-insensitive.
    """
    lowered = {name.lower() for name in names}
    candidates = {descriptor.kind.lower(), descriptor.resource.lower()}
    if descriptor.group:
        candidates.add(f"{descriptor.resource}.{descriptor.group}".lower())
        candidates.add(f"{descriptor.kind}.{descriptor.group}".lower())
    return bool(candidates & lowered)


class ApplyTier(IntEnum):
    """Fixed apply precedence; lower tiers complete before higher ones start."""

    NAMESPACES = 0
    CRDS = 1
    CLUSTER = 2
    CONFIG = 3
    STORAGE = 4
    WORKLOADS = 5
    DEPENDENTS = 6


KIND_TIERS: dict[str, ApplyTier] = {
    "Namespace": ApplyTier.NAMESPACES,
    "CustomResourceDefinition": ApplyTier.CRDS,
    "ClusterRole": ApplyTier.CLUSTER,
    "ClusterRoleBinding": ApplyTier.CLUSTER,
    "ServiceAccount": ApplyTier.CONFIG,
    "Role": ApplyTier.CONFIG,
    "RoleBinding": ApplyTier.CONFIG,
    "Secret": ApplyTier.CONFIG,
    "ConfigMap": ApplyTier.CONFIG,
    "LimitRange": ApplyTier.CONFIG,
    "ResourceQuota": ApplyTier.CONFIG,
    "PersistentVolume": ApplyTier.STORAGE,
    "PersistentVolumeClaim": ApplyTier.STORAGE,
    "Deployment": ApplyTier.WORKLOADS,
    "DeploymentConfig": ApplyTier.WORKLOADS,
    "StatefulSet": ApplyTier.WORKLOADS,
    "DaemonSet": ApplyTier.WORKLOADS,
    "ReplicaSet": ApplyTier.WORKLOADS,
    "ReplicationController": ApplyTier.WORKLOADS,
    "Job": ApplyTier.WORKLOADS,
    "CronJob": ApplyTier.WORKLOADS,
    "Pod": ApplyTier.WORKLOADS,
}

# Kinds known to be cluster-scoped even before discovery can confirm it
CLUSTER_SCOPED_KINDS: frozenset[str] = frozenset(
    {
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "PriorityClass",
        "IngressClass",
        "SecurityContextConstraints",
    }
)

WORKLOAD_KINDS: frozenset[str] = frozenset(
    kind for kind, tier in KIND_TIERS.items() if tier == ApplyTier.WORKLOADS
)


def tier_for(kind: str, namespaced: bool) -> ApplyTier:
    """Return the apply tier of a kind.

    Kinds not listed explicitly fall into CLUSTER when cluster-scoped and
    DEPENDENTS otherwise (services, ingresses, custom resource instances).
    """
    if kind in KIND_TIERS:
        return KIND_TIERS[kind]
    return ApplyTier.DEPENDENTS if namespaced else ApplyTier.CLUSTER
