"""Namespace exporter.

Fans out one list call per (kind, namespace) unit on a bounded worker pool,
sanitizes every instance and writes it into the export tree. Failures are
kept per unit: a kind that cannot be listed or an instance that cannot be
serialized lands in ``failures/`` and the export carries on.
"""

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from kube_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    FetchError,
    NetworkError,
    NotFoundError,
    SerializationError,
)
from kube_migration.client.kube_client import ClusterClient
from kube_migration.config import ExportConfig
from kube_migration.migration.discovery import discover
from kube_migration.migration.manifest import ManifestTree
from kube_migration.migration.models import LIST_FAILURE_NAME, ExportResult, ExportUnit, UnitStatus
from kube_migration.migration.sanitize import sanitize
from kube_migration.resources import (
    CLUSTER_ROLE,
    CLUSTER_ROLE_BINDING,
    CLUSTER_SCOPED_KINDS,
    NAMESPACE,
    ROLE_BINDING,
    ResourceDescriptor,
)
from kube_migration.utils.logging import get_logger, log_pipeline_progress

logger = get_logger(__name__)


class NamespaceExporter:
    """Exports every resource of one namespace into a manifest tree.

    The worker pool is an ``asyncio.Semaphore`` sized from the client's
    burst; aggregate counters are only touched under ``_stats_lock``.
    """

    def __init__(
        self,
        client: ClusterClient,
        export_dir: str | Path,
        export_config: ExportConfig | None = None,
        progress_callback: Callable[[str, int, int], None] | None = None,
    ):
        """Initialize exporter.

        Args:
            client: Source cluster client
            export_dir: Root of the export tree
            export_config: Export policy options
            progress_callback: Called with (kind, completed, total) after each kind
        """
        self.client = client
        self.tree = ManifestTree(export_dir)
        self.config = export_config or ExportConfig()
        self.progress_callback = progress_callback
        self.stats = {"kinds_listed": 0, "exported": 0, "failed": 0}
        self._stats_lock = asyncio.Lock()
        self._cluster_scoped_kinds: set[str] = set(CLUSTER_SCOPED_KINDS)

    async def export(
        self,
        namespace: str,
        include_kinds: Iterable[str] | None = None,
        exclude_kinds: Iterable[str] | None = None,
        label_selector: str | None = None,
        cluster_scoped_rbac: bool = False,
    ) -> ExportResult:
        """Export one namespace.

        Args:
            namespace: Namespace to export
            include_kinds: Restrict to these kinds
            exclude_kinds: Kinds to skip
            label_selector: Label selector applied to every list call
            cluster_scoped_rbac: Also export ClusterRoles/ClusterRoleBindings
                bound to the namespace's service accounts

        Returns:
            Export result (the tree is written as a side effect)

        Raises:
            OutputError: If the export directory is not writable
            APIError / NetworkError: If discovery itself is impossible
        """
        self.tree.ensure_writable()
        result = ExportResult(namespace=namespace)

        if not await self._namespace_exists(namespace):
            logger.warning("namespace_not_found", namespace=namespace, cluster=self.client.cluster_name)
            self.tree.reset_namespace(namespace)
            return result

        exclude = set(exclude_kinds or ()) | set(self.config.deny_kinds)
        discovery = await discover(
            self.client,
            include_kinds=include_kinds,
            exclude_kinds=exclude,
            include_cluster_scoped=False,
        )
        result.failed_groups = dict(discovery.failed_groups)
        self._cluster_scoped_kinds |= {d.kind for d in discovery.cluster_scoped}

        self.tree.reset_namespace(namespace)

        descriptors = discovery.namespaced
        total = len(descriptors)
        semaphore = asyncio.Semaphore(self.client.settings.performance.worker_pool_size)

        logger.info(
            "export_started",
            namespace=namespace,
            kinds=total,
            label_selector=label_selector,
            cluster=self.client.cluster_name,
        )

        async def run_unit(descriptor: ResourceDescriptor) -> list[ExportUnit]:
            async with semaphore:
                units = await self._export_kind(descriptor, namespace, label_selector)
            async with self._stats_lock:
                self.stats["kinds_listed"] += 1
                completed = self.stats["kinds_listed"]
            log_pipeline_progress(logger, "export", completed, total, kind=descriptor.qualified_kind)
            if self.progress_callback:
                self.progress_callback(descriptor.qualified_kind, completed, total)
            return units

        per_kind = await asyncio.gather(*(run_unit(d) for d in descriptors))
        result.kinds_listed = total
        for units in per_kind:
            result.units.extend(units)

        if cluster_scoped_rbac:
            result.units.extend(await self._export_cluster_rbac(namespace, label_selector))

        result.units.sort(key=lambda u: (u.status.value, u.cluster_scoped) + u.identity)

        logger.info(
            "export_completed",
            namespace=namespace,
            exported=len(result.exported),
            failed=len(result.failures),
            failed_groups=len(result.failed_groups),
        )
        return result

    async def _namespace_exists(self, namespace: str) -> bool:
        try:
            await self.client.get_resource(NAMESPACE, namespace)
        except NotFoundError:
            return False
        except AuthorizationError:
            # Namespace-scoped credentials cannot read the Namespace object itself
            logger.debug("namespace_check_forbidden", namespace=namespace)
        return True

    async def _list(
        self,
        descriptor: ResourceDescriptor,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        try:
            return await self.client.list_resources(
                descriptor, namespace=namespace, label_selector=label_selector
            )
        except AuthenticationError:
            raise
        except (APIError, NetworkError) as e:
            raise FetchError(f"list failed: {e}") from e

    async def _export_kind(
        self,
        descriptor: ResourceDescriptor,
        namespace: str,
        label_selector: str | None,
    ) -> list[ExportUnit]:
        try:
            items = await self._list(descriptor, namespace, label_selector)
        except FetchError as e:
            logger.warning(
                "list_failed",
                kind=descriptor.qualified_kind,
                namespace=namespace,
                error=str(e),
            )
            unit = ExportUnit.failed(descriptor, namespace, LIST_FAILURE_NAME, str(e))
            await self._write(unit)
            return [unit]

        units = []
        for item in items:
            units.append(await self._write(self._build_unit(descriptor, namespace, item)))
        return units

    def _build_unit(
        self,
        descriptor: ResourceDescriptor,
        namespace: str,
        item: dict[str, Any],
        cluster_scoped: bool = False,
    ) -> ExportUnit:
        name = (item.get("metadata") or {}).get("name") or "_unnamed"
        try:
            body = sanitize(
                item,
                owner_reference_policy=self.config.owner_reference_policy,
                cluster_scoped_kinds=self._cluster_scoped_kinds,
            )
        except SerializationError as e:
            return ExportUnit.failed(descriptor, namespace, name, str(e))
        return ExportUnit.ok(descriptor, namespace, body, cluster_scoped=cluster_scoped)

    async def _write(self, unit: ExportUnit) -> ExportUnit:
        """Write a unit; a unit that cannot be serialized becomes a failure."""
        try:
            self.tree.write_unit(unit)
        except SerializationError as e:
            unit = ExportUnit.failed(unit.descriptor, unit.namespace, unit.name, str(e))
            self.tree.write_unit(unit)

        async with self._stats_lock:
            self.stats["exported" if unit.status == UnitStatus.OK else "failed"] += 1
        logger.debug(
            "export_unit_written",
            kind=unit.descriptor.qualified_kind,
            namespace=unit.namespace,
            name=unit.name,
            status=unit.status.value,
        )
        return unit

    async def _export_cluster_rbac(
        self, namespace: str, label_selector: str | None = None
    ) -> list[ExportUnit]:
        """Export cluster RBAC bound to the namespace's service accounts.

        ClusterRoleBindings with a ServiceAccount subject in the namespace are
        exported, together with every ClusterRole referenced by those bindings
        or by the namespace's RoleBindings. The label selector narrows both
        binding lists; referenced ClusterRoles follow the bindings that remain.
        """
        units: list[ExportUnit] = []
        role_names: set[str] = set()

        try:
            bindings = await self._list(CLUSTER_ROLE_BINDING, label_selector=label_selector)
        except FetchError as e:
            unit = ExportUnit.failed(CLUSTER_ROLE_BINDING, namespace, LIST_FAILURE_NAME, str(e))
            return [await self._write(unit)]

        for binding in sorted(bindings, key=lambda b: b["metadata"]["name"]):
            if not binds_namespace_service_account(binding, namespace):
                continue
            units.append(
                await self._write(
                    self._build_unit(CLUSTER_ROLE_BINDING, namespace, binding, cluster_scoped=True)
                )
            )
            role_ref = binding.get("roleRef") or {}
            if role_ref.get("kind") == "ClusterRole":
                role_names.add(role_ref["name"])

        try:
            role_bindings = await self._list(ROLE_BINDING, namespace, label_selector)
        except FetchError as e:
            # Already recorded as a kind-level failure by the namespaced pass
            logger.warning("rolebinding_list_failed", namespace=namespace, error=str(e))
            role_bindings = []
        for binding in role_bindings:
            role_ref = binding.get("roleRef") or {}
            if role_ref.get("kind") == "ClusterRole":
                role_names.add(role_ref["name"])

        for role_name in sorted(role_names):
            try:
                role = await self.client.get_resource(CLUSTER_ROLE, role_name)
            except (APIError, NetworkError) as e:
                units.append(
                    await self._write(
                        ExportUnit.failed(CLUSTER_ROLE, namespace, role_name, f"get failed: {e}")
                    )
                )
                continue
            role.setdefault("apiVersion", CLUSTER_ROLE.api_version)
            role.setdefault("kind", CLUSTER_ROLE.kind)
            units.append(
                await self._write(self._build_unit(CLUSTER_ROLE, namespace, role, cluster_scoped=True))
            )

        logger.info("cluster_rbac_exported", namespace=namespace, objects=len(units))
        return units


def binds_namespace_service_account(binding: dict[str, Any], namespace: str) -> bool:
    """Whether a binding has a ServiceAccount subject in the namespace."""
    for subject in binding.get("subjects") or []:
        if subject.get("kind") == "ServiceAccount" and subject.get("namespace") == namespace:
            return True
    return False
