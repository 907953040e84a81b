"""Apply engine.

Re-creates a transform (or export) tree on a destination cluster. Manifests
are grouped into fixed tiers (see ``resources.ApplyTier``); a tier starts
only after the previous one finished. Every object is upserted: read the
live object, create it when absent, leave it alone when the desired state
is already a subset of the live state, otherwise replace it with the live
``resourceVersion``. Failures are recorded per object; nothing is rolled
back.
"""

import asyncio
import copy
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from kube_migration.client.exceptions import (
    APIError,
    ApplyError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DiscoveryError,
    InvalidResourceError,
    NetworkError,
    NotFoundError,
    SerializationError,
)
from kube_migration.client.kube_client import ClusterClient
from kube_migration.config import ApplyConfig
from kube_migration.migration.discovery import KindResolver
from kube_migration.migration.manifest import CLUSTER_DIR, ManifestTree, read_yaml
from kube_migration.migration.models import ApplyAction, ApplyItemResult, ApplyResult
from kube_migration.resources import (
    CUSTOM_RESOURCE_DEFINITION,
    ApplyTier,
    ResourceDescriptor,
    qualified_kind_of,
    tier_for,
)
from kube_migration.utils.logging import get_logger, log_pipeline_progress

logger = get_logger(__name__)

BINDING_KINDS = ("RoleBinding", "ClusterRoleBinding")


@dataclass
class PlannedResource:
    """One manifest scheduled for apply."""

    descriptor: ResourceDescriptor
    document: dict[str, Any]
    tier: ApplyTier
    source: str

    @property
    def name(self) -> str:
        return self.document["metadata"]["name"]

    @property
    def namespace(self) -> str | None:
        if not self.descriptor.namespaced:
            return None
        return self.document["metadata"].get("namespace")

    def result(self, action: ApplyAction, **kwargs: Any) -> ApplyItemResult:
        return ApplyItemResult(
            kind=qualified_kind_of(self.document),
            namespace=self.namespace,
            name=self.name,
            tier=int(self.tier),
            action=action,
            source=self.source,
            **kwargs,
        )


@dataclass
class ApplyPlan:
    """Planned resources grouped by tier, plus items rejected while planning."""

    tiers: dict[ApplyTier, list[PlannedResource]]
    rejected: list[ApplyItemResult]

    def ordered_tiers(self) -> list[tuple[ApplyTier, list[PlannedResource]]]:
        return [(tier, self.tiers[tier]) for tier in sorted(self.tiers)]

    @property
    def size(self) -> int:
        return sum(len(items) for items in self.tiers.values())


def rewrite_namespace(document: dict[str, Any], source: str, target: str, namespaced: bool) -> dict[str, Any]:
    """Move a manifest from one namespace to another.

    Namespaced objects get the target namespace; a Namespace object named
    after the source is renamed; ServiceAccount subjects of (Cluster)Role
    bindings that pointed at the source namespace follow the move.
    """
    document = copy.deepcopy(document)
    metadata = document.setdefault("metadata", {})
    kind = document.get("kind")

    if kind == "Namespace" and metadata.get("name") == source:
        metadata["name"] = target
    if namespaced:
        metadata["namespace"] = target
    if kind in BINDING_KINDS:
        for subject in document.get("subjects") or []:
            if subject.get("kind") == "ServiceAccount" and subject.get("namespace") == source:
                subject["namespace"] = target
    return document


def is_subset(desired: Any, live: Any) -> bool:
    """Whether every field of ``desired`` is present with the same value in ``live``."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(key in live and is_subset(value, live[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, v) for d, v in zip(desired, live))
    return desired == live


def diff_paths(desired: Any, live: Any, prefix: str = "") -> list[str]:
    """JSON Pointer paths where ``desired`` is not matched by ``live``."""
    if isinstance(desired, dict) and isinstance(live, dict):
        paths = []
        for key in sorted(desired):
            token = str(key).replace("~", "~0").replace("/", "~1")
            if key not in live:
                paths.append(f"{prefix}/{token}")
            else:
                paths.extend(diff_paths(desired[key], live[key], f"{prefix}/{token}"))
        return paths
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        paths = []
        for index, (d, v) in enumerate(zip(desired, live)):
            paths.extend(diff_paths(d, v, f"{prefix}/{index}"))
        return paths
    return [] if is_subset(desired, live) else [prefix or "/"]


class ApplyEngine:
    """Applies a manifest tree to a destination cluster in tiers."""

    def __init__(
        self,
        client: ClusterClient,
        apply_config: ApplyConfig | None = None,
        max_concurrent: int = 16,
        target_namespace: str | None = None,
        skip_namespaced: bool = False,
        skip_cluster_scoped: bool = False,
        dry_run: bool = False,
    ):
        """Initialize apply engine.

        Args:
            client: Destination cluster client
            apply_config: Apply options (CRD wait timeout, poll interval)
            max_concurrent: Objects applied concurrently within a tier
            target_namespace: Move every namespaced object into this namespace
            skip_namespaced: Do not apply namespaced objects
            skip_cluster_scoped: Do not apply cluster-scoped objects
            dry_run: Plan and diff without mutating calls
        """
        self.client = client
        self.config = apply_config or ApplyConfig()
        self.max_concurrent = max_concurrent
        self.target_namespace = target_namespace
        self.skip_namespaced = skip_namespaced
        self.skip_cluster_scoped = skip_cluster_scoped
        self.dry_run = dry_run
        self.resolver = KindResolver(client)

    async def build_plan(self, tree_dir: str | Path) -> ApplyPlan:
        """Read the tree and group its manifests into tiers."""
        tree = ManifestTree(tree_dir)
        tiers: dict[ApplyTier, list[PlannedResource]] = defaultdict(list)
        rejected: list[ApplyItemResult] = []

        loaded: list[tuple[str, str, dict[str, Any]]] = []
        for path in tree.iter_resource_files():
            relative = tree.relative(path)
            source_namespace = relative.parts[1] if len(relative.parts) > 2 else ""
            try:
                document = read_yaml(path)
            except SerializationError as e:
                rejected.append(self._reject({}, str(relative), source_namespace, str(e), name=path.stem))
                continue
            if document.get("kind") == CUSTOM_RESOURCE_DEFINITION.kind:
                self.resolver.register_crd(document)
            loaded.append((str(relative), source_namespace, document))

        namespaces_needed: set[str] = set()
        namespaces_present: set[str] = set()

        for source, source_namespace, document in loaded:
            try:
                descriptor = await self.resolver.resolve(
                    document.get("apiVersion", ""), document.get("kind", "")
                )
            except DiscoveryError as e:
                rejected.append(self._reject(document, source, source_namespace, str(e)))
                continue

            if self.target_namespace:
                document = rewrite_namespace(
                    document, source_namespace, self.target_namespace, descriptor.namespaced
                )
            elif descriptor.namespaced:
                document.setdefault("metadata", {}).setdefault("namespace", source_namespace)

            planned = PlannedResource(
                descriptor=descriptor,
                document=document,
                tier=tier_for(descriptor.kind, descriptor.namespaced),
                source=source,
            )
            if self._skipped(descriptor):
                rejected.append(planned.result(ApplyAction.SKIPPED))
                continue

            # Only resources that will be applied need their namespace to exist
            if descriptor.kind == "Namespace":
                namespaces_present.add(planned.name)
            elif planned.namespace:
                namespaces_needed.add(planned.namespace)
            tiers[planned.tier].append(planned)

        if not self.skip_cluster_scoped:
            namespace_descriptor = await self.resolver.resolve("v1", "Namespace")
            for namespace in sorted(namespaces_needed - namespaces_present):
                tiers[ApplyTier.NAMESPACES].append(
                    PlannedResource(
                        descriptor=namespace_descriptor,
                        document={"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}},
                        tier=ApplyTier.NAMESPACES,
                        source="(generated)",
                    )
                )

        for items in tiers.values():
            items.sort(key=lambda p: (p.descriptor.kind, p.namespace or "", p.name))

        plan = ApplyPlan(tiers=dict(tiers), rejected=rejected)
        logger.info(
            "apply_plan_built",
            resources=plan.size,
            tiers={int(tier): len(items) for tier, items in plan.ordered_tiers()},
            rejected=len(rejected),
            target_namespace=self.target_namespace,
        )
        return plan

    def _skipped(self, descriptor: ResourceDescriptor) -> bool:
        if descriptor.namespaced:
            return self.skip_namespaced
        return self.skip_cluster_scoped

    @staticmethod
    def _reject(
        document: dict[str, Any], source: str, namespace: str, error: str, name: str = ""
    ) -> ApplyItemResult:
        """Failed result for a manifest that never made it into the plan.

        Without a served descriptor the scope comes from the file location:
        manifests under ``_cluster/`` are cluster-scoped.
        """
        namespaced = bool(namespace) and CLUSTER_DIR not in Path(source).parts
        return ApplyItemResult(
            kind=qualified_kind_of(document),
            namespace=namespace if namespaced else None,
            name=(document.get("metadata") or {}).get("name") or name,
            tier=int(tier_for(document.get("kind", ""), namespaced)),
            action=ApplyAction.FAILED,
            error=error,
            source=source,
        )

    async def apply(self, tree_dir: str | Path) -> ApplyResult:
        """Plan and apply a manifest tree.

        Raises:
            AuthenticationError: If the destination rejects the credentials
        """
        plan = await self.build_plan(tree_dir)
        result = ApplyResult(dry_run=self.dry_run, items=list(plan.rejected))
        semaphore = asyncio.Semaphore(self.max_concurrent)
        applied = 0

        for tier, items in plan.ordered_tiers():
            logger.info("apply_tier_started", tier=int(tier), tier_name=tier.name, resources=len(items))

            async def run(item: PlannedResource) -> ApplyItemResult:
                async with semaphore:
                    return await self.upsert(item)

            tier_results = await asyncio.gather(*(run(item) for item in items))

            if tier == ApplyTier.CRDS and not self.dry_run:
                tier_results = await self._wait_for_crds(items, tier_results)
                self.resolver.invalidate()

            result.items.extend(tier_results)
            applied += len(items)
            log_pipeline_progress(logger, "apply", applied, plan.size, tier=int(tier))

        result.items.sort(key=lambda r: (r.tier, r.kind, r.namespace or "", r.name))
        logger.info("apply_completed", dry_run=self.dry_run, **result.summary())
        return result

    async def upsert(self, item: PlannedResource) -> ApplyItemResult:
        """Create, update or leave one object as-is."""
        try:
            return await self._upsert(item)
        except AuthenticationError:
            raise
        except (ApplyError, APIError, NetworkError) as e:
            logger.warning(
                "apply_failed",
                kind=item.descriptor.kind,
                namespace=item.namespace,
                name=item.name,
                error=str(e),
            )
            return item.result(ApplyAction.FAILED, error=str(e))

    async def _upsert(self, item: PlannedResource) -> ApplyItemResult:
        descriptor, namespace = item.descriptor, item.namespace
        try:
            live = await self.client.get_resource(descriptor, item.name, namespace=namespace)
        except NotFoundError:
            live = None

        if live is None:
            if self.dry_run:
                return item.result(ApplyAction.CREATED)
            try:
                await self.client.create_resource(descriptor, item.document, namespace=namespace)
            except ConflictError:
                # Created concurrently by someone else; fall through to compare
                live = await self.client.get_resource(descriptor, item.name, namespace=namespace)
            except (InvalidResourceError, AuthorizationError) as e:
                raise ApplyError(f"create rejected: {e}") from e
            else:
                logger.debug("resource_created", kind=descriptor.kind, namespace=namespace, name=item.name)
                return item.result(ApplyAction.CREATED)

        if is_subset(item.document, live):
            return item.result(ApplyAction.UNCHANGED)

        changed = diff_paths(item.document, live)
        if self.dry_run:
            return item.result(ApplyAction.UPDATED, diff_paths=changed)

        body = copy.deepcopy(item.document)
        body["metadata"]["resourceVersion"] = live["metadata"].get("resourceVersion")
        try:
            await self.client.replace_resource(descriptor, item.name, body, namespace=namespace)
        except (InvalidResourceError, AuthorizationError, ConflictError) as e:
            raise ApplyError(f"update rejected: {e}") from e
        logger.debug(
            "resource_updated",
            kind=descriptor.kind,
            namespace=namespace,
            name=item.name,
            diff_paths=changed,
        )
        return item.result(ApplyAction.UPDATED, diff_paths=changed)

    async def _wait_for_crds(
        self, items: list[PlannedResource], results: list[ApplyItemResult]
    ) -> list[ApplyItemResult]:
        """Wait until applied CRDs report ``Established``."""
        waited = []
        for item, item_result in zip(items, results):
            if item_result.action == ApplyAction.FAILED:
                waited.append(item_result)
                continue
            if await self._crd_established(item.name):
                waited.append(item_result)
            else:
                waited.append(
                    item.result(
                        ApplyAction.FAILED,
                        error=f"not Established within {self.config.crd_establish_timeout}s",
                    )
                )
        return waited

    async def _crd_established(self, name: str) -> bool:
        deadline = time.monotonic() + self.config.crd_establish_timeout
        while True:
            try:
                crd = await self.client.get_resource(CUSTOM_RESOURCE_DEFINITION, name)
            except NotFoundError:
                crd = {}
            for condition in (crd.get("status") or {}).get("conditions") or []:
                if condition.get("type") == "Established" and condition.get("status") == "True":
                    logger.debug("crd_established", name=name)
                    return True
            if time.monotonic() >= deadline:
                logger.warning("crd_not_established", name=name)
                return False
            await asyncio.sleep(self.config.poll_interval)
