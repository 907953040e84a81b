"""Kubernetes cluster client.

This client extends BaseAPIClient with the discovery, list, read, write
and pod-log calls the migration pipeline needs. Every method speaks plain
JSON documents (dicts) so manifests flow through the pipeline unchanged.
"""

from collections.abc import AsyncGenerator
from typing import Any

import httpx

from kube_migration.client.base_client import BaseAPIClient
from kube_migration.client.kubeconfig import ClusterSettings
from kube_migration.resources import POD, ResourceDescriptor
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


class ClusterClient(BaseAPIClient):
    """Client for one Kubernetes cluster.

    One instance exists per cluster per run; it owns the cluster's rate
    limiter and retry policy, so every caller shares the same budget.
    """

    def __init__(
        self,
        settings: ClusterSettings,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(
            settings,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            transport=transport,
        )
        logger.info("cluster_client_initialized", cluster=settings.name, host=settings.host)

    # Discovery

    async def list_api_groups(self) -> list[dict[str, Any]]:
        """Return the ``groups`` of the ``/apis`` APIGroupList."""
        response = await self.get("/apis")
        return response.get("groups", [])

    async def list_api_resources(self, group: str, version: str) -> list[dict[str, Any]]:
        """Return the APIResourceList entries served by a group version.

        Args:
            group: API group ("" for the core group)
            version: Group version

        Returns:
            Raw ``resources`` entries (subresources included)
        """
        path = f"/apis/{group}/{version}" if group else f"/api/{version}"
        response = await self.get(path)
        return response.get("resources", [])

    # Reads

    async def iter_resources(
        self,
        descriptor: ResourceDescriptor,
        namespace: str | None = None,
        label_selector: str | None = None,
        page_size: int | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Yield every instance of a kind, following ``continue`` tokens.

        List responses omit ``kind``/``apiVersion`` on items; both are filled
        in from the descriptor so each yielded document is self-describing.
        """
        params: dict[str, Any] = {"limit": page_size or self.settings.performance.page_size}
        if label_selector:
            params["labelSelector"] = label_selector

        path = descriptor.path(namespace)
        page = 0
        while True:
            page += 1
            response = await self.get(path, params=params)
            items = response.get("items") or []

            logger.debug(
                "page_fetched",
                kind=descriptor.qualified_kind,
                namespace=namespace,
                page=page,
                items_this_page=len(items),
            )

            for item in items:
                item.setdefault("apiVersion", descriptor.api_version)
                item.setdefault("kind", descriptor.kind)
                yield item

            continue_token = (response.get("metadata") or {}).get("continue")
            if not continue_token:
                break
            params["continue"] = continue_token

    async def list_resources(
        self,
        descriptor: ResourceDescriptor,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch all instances of a kind across all pages."""
        items = [
            item
            async for item in self.iter_resources(
                descriptor, namespace=namespace, label_selector=label_selector
            )
        ]
        logger.debug(
            "list_complete",
            kind=descriptor.qualified_kind,
            namespace=namespace,
            total_items=len(items),
        )
        return items

    async def get_resource(
        self, descriptor: ResourceDescriptor, name: str, namespace: str | None = None
    ) -> dict[str, Any]:
        """Read a single object.

        Raises:
            NotFoundError: If the object does not exist
        """
        return await self.get(descriptor.path(namespace, name))

    # Writes

    async def create_resource(
        self,
        descriptor: ResourceDescriptor,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Create an object."""
        return await self.post(descriptor.path(namespace), body)

    async def replace_resource(
        self,
        descriptor: ResourceDescriptor,
        name: str,
        body: dict[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Replace an object; ``body`` must carry the live resourceVersion."""
        return await self.put(descriptor.path(namespace, name), body)

    async def delete_resource(
        self,
        descriptor: ResourceDescriptor,
        name: str,
        namespace: str | None = None,
    ) -> None:
        """Delete an object with foreground propagation."""
        await self.delete(
            descriptor.path(namespace, name),
            params={"propagationPolicy": "Foreground"},
        )

    # Pods

    async def read_pod_log(
        self, name: str, namespace: str, container: str | None = None
    ) -> str:
        """Return the full log of a pod container."""
        params = {"container": container} if container else None
        return await self.get_text(f"{POD.path(namespace, name)}/log", params=params)
