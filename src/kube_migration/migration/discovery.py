"""API discovery for exportable resource kinds.

Walks the core group and every named group's preferred version, turning
the advertised APIResourceLists into ``ResourceDescriptor`` objects. One
unreadable group is recorded and skipped; an unreadable group list aborts.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from kube_migration.client.exceptions import APIError, DiscoveryError, NetworkError
from kube_migration.client.kube_client import ClusterClient
from kube_migration.resources import (
    DEFAULT_DENY_LIST,
    ResourceDescriptor,
    descriptor_matches,
    split_api_version,
)
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

REQUIRED_VERBS = ("list", "get")


@dataclass
class DiscoveryResult:
    """Descriptors found by discovery plus the groups that could not be read."""

    descriptors: list[ResourceDescriptor] = field(default_factory=list)
    failed_groups: dict[str, str] = field(default_factory=dict)

    @property
    def namespaced(self) -> list[ResourceDescriptor]:
        return [d for d in self.descriptors if d.namespaced]

    @property
    def cluster_scoped(self) -> list[ResourceDescriptor]:
        return [d for d in self.descriptors if not d.namespaced]


def parse_api_resources(group: str, version: str, entries: Iterable[dict[str, Any]]) -> list[ResourceDescriptor]:
    """Convert APIResourceList entries into descriptors, skipping subresources."""
    descriptors = []
    for entry in entries:
        name = entry.get("name", "")
        if not name or "/" in name:
            continue
        descriptors.append(
            ResourceDescriptor(
                group=entry.get("group") or group,
                version=entry.get("version") or version,
                kind=entry["kind"],
                resource=name,
                namespaced=bool(entry.get("namespaced", False)),
                verbs=tuple(entry.get("verbs") or ()),
            )
        )
    return descriptors


def is_exportable(
    descriptor: ResourceDescriptor,
    include_kinds: set[str] | None = None,
    exclude_kinds: set[str] | None = None,
) -> bool:
    """Apply verb requirements and include/exclude filters to one descriptor.

    An explicit include restricts the result to the named kinds and lifts the
    default deny-list for them; an explicit exclude always wins.
    """
    if not descriptor.supports(*REQUIRED_VERBS):
        return False
    if exclude_kinds and descriptor_matches(descriptor, exclude_kinds):
        return False
    if include_kinds:
        return descriptor_matches(descriptor, include_kinds)
    return not descriptor_matches(descriptor, DEFAULT_DENY_LIST)


async def discover(
    client: ClusterClient,
    include_kinds: Iterable[str] | None = None,
    exclude_kinds: Iterable[str] | None = None,
    include_cluster_scoped: bool = False,
    max_concurrent: int | None = None,
) -> DiscoveryResult:
    """Enumerate exportable resource kinds.

    Args:
        client: Cluster client
        include_kinds: Kinds to restrict to (overrides the deny-list)
        exclude_kinds: Kinds to drop (in addition to the deny-list)
        include_cluster_scoped: Also return cluster-scoped kinds
        max_concurrent: Parallel group reads (defaults to the client burst)

    Returns:
        Deterministically ordered descriptors and failed groups

    Raises:
        APIError / NetworkError: If the core group or group list is unreadable
    """
    include = set(include_kinds or ())
    exclude = set(exclude_kinds or ())
    result = DiscoveryResult()

    core = parse_api_resources("", "v1", await client.list_api_resources("", "v1"))
    groups = await client.list_api_groups()

    semaphore = asyncio.Semaphore(max_concurrent or client.settings.performance.worker_pool_size)

    async def read_group(group: dict[str, Any]) -> list[ResourceDescriptor]:
        preferred = group.get("preferredVersion") or (group.get("versions") or [{}])[0]
        group_version = preferred.get("groupVersion", "")
        group_name, version = split_api_version(group_version)
        async with semaphore:
            try:
                entries = await client.list_api_resources(group_name, version)
            except (APIError, NetworkError) as e:
                error = DiscoveryError(f"Cannot discover {group_version}: {e}", group_version)
                result.failed_groups[group_version] = str(error)
                logger.warning("group_discovery_failed", group_version=group_version, error=str(e))
                return []
        return parse_api_resources(group_name, version, entries)

    per_group = await asyncio.gather(*(read_group(group) for group in groups))

    found: set[ResourceDescriptor] = set()
    for descriptor in core + [d for descriptors in per_group for d in descriptors]:
        if not descriptor.namespaced and not include_cluster_scoped:
            continue
        if is_exportable(descriptor, include, exclude):
            found.add(descriptor)

    result.descriptors = sorted(found, key=lambda d: (d.group, d.version, d.kind))
    result.failed_groups = dict(sorted(result.failed_groups.items()))

    logger.info(
        "discovery_complete",
        cluster=client.cluster_name,
        kinds=len(result.descriptors),
        failed_groups=len(result.failed_groups),
    )
    return result


class KindResolver:
    """Resolve ``(apiVersion, kind)`` pairs to descriptors on a cluster.

    Group versions are discovered lazily and cached. CRDs can be registered
    from their manifest so their instances resolve before the API server
    serves them (dry-run plans against a cluster without the CRD).
    """

    def __init__(self, client: ClusterClient):
        self.client = client
        self._cache: dict[str, dict[str, ResourceDescriptor]] = {}
        self._registered: dict[str, dict[str, ResourceDescriptor]] = {}
        self._lock = asyncio.Lock()

    async def _load(self, api_version: str) -> dict[str, ResourceDescriptor]:
        async with self._lock:
            if api_version not in self._cache:
                group, version = split_api_version(api_version)
                try:
                    entries = await self.client.list_api_resources(group, version)
                except (APIError, NetworkError) as e:
                    logger.debug("group_version_unavailable", api_version=api_version, error=str(e))
                    entries = []
                self._cache[api_version] = {
                    d.kind: d for d in parse_api_resources(group, version, entries)
                }
            return self._cache[api_version]

    async def resolve(self, api_version: str, kind: str) -> ResourceDescriptor:
        """Return the descriptor for a kind.

        Raises:
            DiscoveryError: If the destination does not serve the kind
        """
        served = await self._load(api_version)
        if kind in served:
            return served[kind]
        registered = self._registered.get(api_version, {})
        if kind in registered:
            return registered[kind]
        raise DiscoveryError(f"{kind} ({api_version}) is not served by the cluster", api_version)

    def register_crd(self, crd: dict[str, Any]) -> list[ResourceDescriptor]:
        """Register the kinds a CustomResourceDefinition manifest will serve."""
        spec = crd.get("spec", {})
        names = spec.get("names", {})
        group = spec.get("group", "")
        namespaced = spec.get("scope", "Namespaced") == "Namespaced"
        descriptors = []
        for version in spec.get("versions", []):
            if not version.get("served", True):
                continue
            descriptor = ResourceDescriptor(
                group=group,
                version=version["name"],
                kind=names.get("kind", ""),
                resource=names.get("plural", ""),
                namespaced=namespaced,
            )
            self._registered.setdefault(descriptor.api_version, {})[descriptor.kind] = descriptor
            descriptors.append(descriptor)
        return descriptors

    def invalidate(self) -> None:
        """Drop cached discovery so newly established CRDs are picked up."""
        self._cache.clear()
