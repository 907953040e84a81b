"""Transient object builders and cluster waits for volume transfer.

Every object a session creates is named ``kb-<role>-<session-id>`` and
labelled with the session id so teardown can find it even when the
recorded list is incomplete.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from kube_migration.client.exceptions import NotFoundError, TransferError
from kube_migration.client.kube_client import ClusterClient
from kube_migration.migration.transfer import rsync
from kube_migration.resources import POD, ResourceDescriptor
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
SESSION_LABEL = "kube-bridge.io/session"
ROLE_LABEL = "kube-bridge.io/role"
MANAGER = "kube-bridge"


def object_name(role: str, session_id: str) -> str:
    return f"kb-{role}-{session_id}"


def session_labels(session_id: str, role: str | None = None) -> dict[str, str]:
    labels = {MANAGED_BY_LABEL: MANAGER, SESSION_LABEL: session_id}
    if role:
        labels[ROLE_LABEL] = role
    return labels


def session_selector(session_id: str) -> str:
    return f"{SESSION_LABEL}={session_id}"


def _metadata(role: str, session_id: str, namespace: str) -> dict[str, Any]:
    return {
        "name": object_name(role, session_id),
        "namespace": namespace,
        "labels": session_labels(session_id, role),
    }


def psk_secret(session_id: str, namespace: str, psk: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata("psk", session_id, namespace),
        "type": "Opaque",
        "stringData": {rsync.PSK_FILE: rsync.psk_entry(session_id, psk)},
    }


def config_map(role: str, session_id: str, namespace: str, data: dict[str, str]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(role, session_id, namespace),
        "data": data,
    }


def _volumes(session_id: str, claim: str, config_role: str, read_only: bool) -> list[dict[str, Any]]:
    return [
        {"name": "data", "persistentVolumeClaim": {"claimName": claim, "readOnly": read_only}},
        {"name": "config", "configMap": {"name": object_name(config_role, session_id)}},
        {"name": "psk", "secret": {"secretName": object_name("psk", session_id)}},
    ]


def _mounts(read_only: bool) -> list[dict[str, Any]]:
    return [
        {"name": "data", "mountPath": rsync.DATA_MOUNT, "readOnly": read_only},
        {"name": "config", "mountPath": rsync.CONFIG_MOUNT, "readOnly": True},
        {"name": "psk", "mountPath": rsync.PSK_MOUNT, "readOnly": True},
    ]


def server_pod(session_id: str, namespace: str, claim: str, image: str, tunnel_port: int) -> dict[str, Any]:
    """rsync daemon plus stunnel server mounting the destination claim."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": _metadata("server", session_id, namespace),
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "rsync",
                    "image": image,
                    "command": [
                        "rsync",
                        "--daemon",
                        "--no-detach",
                        f"--config={rsync.CONFIG_MOUNT}/{rsync.RSYNCD_CONF}",
                    ],
                    "volumeMounts": _mounts(read_only=False),
                },
                {
                    "name": "stunnel",
                    "image": image,
                    "command": ["stunnel", f"{rsync.CONFIG_MOUNT}/{rsync.STUNNEL_CONF}"],
                    "ports": [{"name": "tunnel", "containerPort": tunnel_port, "protocol": "TCP"}],
                    "readinessProbe": {"tcpSocket": {"port": tunnel_port}, "periodSeconds": 2},
                    "volumeMounts": _mounts(read_only=False)[1:],
                },
            ],
            "volumes": _volumes(session_id, claim, "server", read_only=False),
        },
    }


def client_pod(
    session_id: str,
    namespace: str,
    claim: str,
    image: str,
    rsync_options: list[str],
    source_path: str | None,
) -> dict[str, Any]:
    """rsync client plus stunnel sidecar mounting the source claim read-only."""
    sync_mount = {"name": "sync", "mountPath": rsync.SYNC_MOUNT}
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": _metadata("client", session_id, namespace),
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "rsync",
                    "image": image,
                    "command": ["/bin/sh", "-c", rsync.rsync_client_script(rsync_options, source_path)],
                    "volumeMounts": _mounts(read_only=True)[:1] + [sync_mount],
                },
                {
                    "name": "stunnel",
                    "image": image,
                    "command": ["/bin/sh", "-c", rsync.stunnel_client_script()],
                    "volumeMounts": _mounts(read_only=True)[1:] + [sync_mount],
                },
            ],
            "volumes": _volumes(session_id, claim, "client", read_only=True)
            + [{"name": "sync", "emptyDir": {}}],
        },
    }


def checksum_pod(role: str, session_id: str, namespace: str, claim: str, image: str, path: str | None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": _metadata(role, session_id, namespace),
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": "checksum",
                    "image": image,
                    "command": ["/bin/sh", "-c", rsync.checksum_script(path)],
                    "volumeMounts": [{"name": "data", "mountPath": rsync.DATA_MOUNT, "readOnly": True}],
                }
            ],
            "volumes": [
                {"name": "data", "persistentVolumeClaim": {"claimName": claim, "readOnly": True}}
            ],
        },
    }


def tunnel_service(session_id: str, namespace: str, tunnel_port: int, load_balancer: bool) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata("server", session_id, namespace),
        "spec": {
            "type": "LoadBalancer" if load_balancer else "ClusterIP",
            "selector": session_labels(session_id, "server"),
            "ports": [{"name": "tunnel", "port": tunnel_port, "targetPort": tunnel_port, "protocol": "TCP"}],
        },
    }


def tunnel_route(session_id: str, namespace: str) -> dict[str, Any]:
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": _metadata("server", session_id, namespace),
        "spec": {
            "to": {"kind": "Service", "name": object_name("server", session_id)},
            "port": {"targetPort": "tunnel"},
            "tls": {"termination": "passthrough"},
        },
    }


def destination_claim(
    source_claim: dict[str, Any],
    name: str,
    namespace: str,
    storage_class_map: dict[str, str],
) -> dict[str, Any]:
    """Build a destination claim sized and classed like the source claim."""
    spec = source_claim.get("spec") or {}
    new_spec: dict[str, Any] = {
        "accessModes": list(spec.get("accessModes") or ["ReadWriteOnce"]),
        "resources": {
            "requests": {"storage": ((spec.get("resources") or {}).get("requests") or {}).get("storage", "1Gi")}
        },
    }
    if spec.get("volumeMode"):
        new_spec["volumeMode"] = spec["volumeMode"]
    storage_class = spec.get("storageClassName")
    if storage_class:
        new_spec["storageClassName"] = storage_class_map.get(storage_class, storage_class)

    labels = dict((source_claim.get("metadata") or {}).get("labels") or {})
    metadata: dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = labels
    return {"apiVersion": "v1", "kind": "PersistentVolumeClaim", "metadata": metadata, "spec": new_spec}


async def poll_until(
    check: Callable[[], Awaitable[Any]],
    interval: float,
    description: str,
) -> Any:
    """Call ``check`` until it returns a truthy value.

    The caller bounds the total wait (the session runs under a deadline).
    """
    while True:
        value = await check()
        if value:
            return value
        logger.debug("waiting", what=description)
        await asyncio.sleep(interval)


async def wait_pod_ready(client: ClusterClient, name: str, namespace: str, interval: float) -> dict[str, Any]:
    """Wait until every container of a pod is ready.

    Raises:
        TransferError: If the pod fails or terminates
    """

    async def check() -> dict[str, Any] | None:
        pod = await client.get_resource(POD, name, namespace=namespace)
        status = pod.get("status") or {}
        phase = status.get("phase")
        if phase in ("Failed", "Succeeded"):
            raise TransferError(f"Pod {namespace}/{name} ended with phase {phase}")
        statuses = status.get("containerStatuses") or []
        if phase == "Running" and statuses and all(s.get("ready") for s in statuses):
            return pod
        return None

    return await poll_until(check, interval, f"pod {namespace}/{name} ready")


async def wait_container_terminated(
    client: ClusterClient, name: str, namespace: str, container: str, interval: float
) -> dict[str, Any]:
    """Wait for one container to terminate and return its terminated state."""

    async def check() -> dict[str, Any] | None:
        pod = await client.get_resource(POD, name, namespace=namespace)
        status = pod.get("status") or {}
        for container_status in status.get("containerStatuses") or []:
            if container_status.get("name") != container:
                continue
            terminated = (container_status.get("state") or {}).get("terminated")
            if terminated:
                return terminated
        if status.get("phase") == "Failed":
            return {"exitCode": -1, "reason": status.get("reason", "PodFailed")}
        return None

    return await poll_until(check, interval, f"container {container} of {namespace}/{name}")


async def wait_deleted(
    client: ClusterClient, descriptor: ResourceDescriptor, name: str, namespace: str, interval: float
) -> None:
    async def check() -> bool:
        try:
            await client.get_resource(descriptor, name, namespace=namespace)
        except NotFoundError:
            return True
        return False

    await poll_until(check, interval, f"{descriptor.kind} {namespace}/{name} deleted")


def load_balancer_address(service: dict[str, Any]) -> str | None:
    for ingress in ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []:
        address = ingress.get("ip") or ingress.get("hostname")
        if address:
            return address
    return None


def route_host(route: dict[str, Any]) -> str | None:
    host = (route.get("spec") or {}).get("host")
    if host:
        return host
    for ingress in (route.get("status") or {}).get("ingress") or []:
        if ingress.get("host"):
            return ingress["host"]
    return None
