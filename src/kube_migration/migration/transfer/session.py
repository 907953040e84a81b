"""Persistent volume claim transfer between two clusters.

A session moves through ``Pending -> Provisioning -> Transferring ->
Verifying -> Complete``; any stage may end in ``Failed``. Whatever the
outcome (including cancellation and the overall deadline) every object the
session created is deleted from both clusters before ``run`` returns.
"""

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from kube_migration.client.exceptions import (
    APIError,
    NetworkError,
    NotFoundError,
    TransferError,
)
from kube_migration.client.kube_client import ClusterClient
from kube_migration.config import TransferConfig
from kube_migration.migration.transfer import provisioner, rsync
from kube_migration.resources import (
    CONFIG_MAP,
    PERSISTENT_VOLUME_CLAIM,
    POD,
    ROUTE,
    SECRET,
    SERVICE,
    ResourceDescriptor,
)
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE = "source"
DESTINATION = "destination"


class TransferState(str, Enum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    TRANSFERRING = "Transferring"
    VERIFYING = "Verifying"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass(frozen=True)
class ClaimRef:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class TransientObject:
    """An object created by a session, to be deleted at teardown."""

    side: str
    descriptor: ResourceDescriptor
    namespace: str
    name: str


@dataclass
class TransferSession:
    """State and results of one claim transfer."""

    session_id: str
    source_cluster: str
    destination_cluster: str
    source_claim: ClaimRef
    destination_claim: ClaimRef
    endpoint: str
    source_path: str | None = None
    dest_path: str | None = None
    state: TransferState = TransferState.PENDING
    failed_stage: TransferState | None = None
    bytes_transferred: int = 0
    stats: dict[str, Any] = field(default_factory=dict)
    source_checksum: str | None = None
    destination_checksum: str | None = None
    endpoint_address: str | None = None
    objects: list[TransientObject] = field(default_factory=list)
    teardown_errors: list[str] = field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == TransferState.COMPLETE

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "source": {"cluster": self.source_cluster, "claim": str(self.source_claim), "path": self.source_path},
            "destination": {
                "cluster": self.destination_cluster,
                "claim": str(self.destination_claim),
                "path": self.dest_path,
            },
            "endpoint": self.endpoint,
            "endpoint_address": self.endpoint_address,
            "bytes_transferred": self.bytes_transferred,
            "stats": self.stats,
            "source_checksum": self.source_checksum,
            "destination_checksum": self.destination_checksum,
            "error": self.error,
            "teardown_errors": list(self.teardown_errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


def new_session_id() -> str:
    """Short random id; lowercase hex keeps object names DNS-compatible."""
    return secrets.token_hex(4)


class PVCTransfer:
    """Runs one transfer session between a source and a destination cluster."""

    def __init__(
        self,
        source: ClusterClient,
        destination: ClusterClient,
        source_claim: ClaimRef,
        destination_claim: ClaimRef,
        config: TransferConfig | None = None,
        source_path: str | None = None,
        dest_path: str | None = None,
        session_id: str | None = None,
    ):
        self.source = source
        self.destination = destination
        self.config = config or TransferConfig()
        self.session = TransferSession(
            session_id=session_id or new_session_id(),
            source_cluster=source.cluster_name,
            destination_cluster=destination.cluster_name,
            source_claim=source_claim,
            destination_claim=destination_claim,
            endpoint=self.config.endpoint,
            source_path=source_path,
            dest_path=dest_path,
        )
        self._psk = secrets.token_hex(32)

    def _client(self, side: str) -> ClusterClient:
        return self.source if side == SOURCE else self.destination

    def _set_state(self, state: TransferState) -> None:
        logger.info(
            "transfer_state_changed",
            session=self.session.session_id,
            previous=self.session.state.value,
            state=state.value,
        )
        self.session.state = state

    async def run(self) -> TransferSession:
        """Run the session to a terminal state.

        Returns:
            The session (state Complete or Failed); teardown has already run

        Raises:
            asyncio.CancelledError: Re-raised after teardown when cancelled
            Exception: Any error outside the API taxonomy is re-raised after teardown
        """
        session = self.session
        session.started_at = datetime.now(timezone.utc)
        try:
            await asyncio.wait_for(self._run_stages(), timeout=self.config.timeout_seconds)
        except asyncio.TimeoutError:
            self._fail(f"transfer exceeded {self.config.timeout_seconds}s")
        except asyncio.CancelledError:
            self._fail("transfer cancelled")
            await self._finish()
            raise
        except (TransferError, APIError, NetworkError) as e:
            self._fail(str(e))
        except Exception as e:
            self._fail(f"unexpected error: {e}")
            await self._finish()
            raise
        await self._finish()
        return session

    async def _finish(self) -> None:
        await asyncio.shield(self._teardown())
        self.session.finished_at = datetime.now(timezone.utc)

    def _fail(self, error: str) -> None:
        self.session.failed_stage = self.session.state
        self.session.error = error
        logger.error(
            "transfer_failed",
            session=self.session.session_id,
            stage=self.session.state.value,
            error=error,
        )
        self._set_state(TransferState.FAILED)

    async def _run_stages(self) -> None:
        self._set_state(TransferState.PROVISIONING)
        await self._provision()

        self._set_state(TransferState.TRANSFERRING)
        await self._transfer()

        if self.config.verify_checksum:
            self._set_state(TransferState.VERIFYING)
            await self._verify()

        self._set_state(TransferState.COMPLETE)

    # Provisioning

    async def _create(self, side: str, descriptor: ResourceDescriptor, body: dict[str, Any]) -> None:
        namespace = body["metadata"]["namespace"]
        name = body["metadata"]["name"]
        # Recorded first so a create that fails after reaching the server is still cleaned up
        self.session.objects.append(TransientObject(side, descriptor, namespace, name))
        await self._client(side).create_resource(descriptor, body, namespace=namespace)
        logger.debug("transient_object_created", side=side, kind=descriptor.kind, name=name)

    async def ensure_destination_claim(self) -> None:
        """Create the destination claim from the source claim when absent."""
        src, dst = self.session.source_claim, self.session.destination_claim
        try:
            await self.destination.get_resource(PERSISTENT_VOLUME_CLAIM, dst.name, namespace=dst.namespace)
            return
        except NotFoundError:
            pass

        try:
            source_claim = await self.source.get_resource(
                PERSISTENT_VOLUME_CLAIM, src.name, namespace=src.namespace
            )
        except NotFoundError as e:
            raise TransferError(f"Source claim {src} not found") from e

        body = provisioner.destination_claim(
            source_claim, dst.name, dst.namespace, self.config.storage_class_map
        )
        await self.destination.create_resource(PERSISTENT_VOLUME_CLAIM, body, namespace=dst.namespace)
        logger.info(
            "destination_claim_created",
            claim=str(dst),
            storage_class=body["spec"].get("storageClassName"),
            size=body["spec"]["resources"]["requests"]["storage"],
        )

    async def _provision(self) -> None:
        sid = self.session.session_id
        src, dst = self.session.source_claim, self.session.destination_claim
        port = self.config.tunnel_port
        image = self.config.transfer_image

        try:
            await self.source.get_resource(PERSISTENT_VOLUME_CLAIM, src.name, namespace=src.namespace)
        except NotFoundError as e:
            raise TransferError(f"Source claim {src} not found") from e
        await self.ensure_destination_claim()

        # Destination: PSK, configuration, server pod, endpoint
        await self._create(DESTINATION, SECRET, provisioner.psk_secret(sid, dst.namespace, self._psk))
        await self._create(
            DESTINATION,
            CONFIG_MAP,
            provisioner.config_map(
                "server",
                sid,
                dst.namespace,
                {
                    rsync.RSYNCD_CONF: rsync.rsyncd_config(self.session.dest_path),
                    rsync.STUNNEL_CONF: rsync.stunnel_server_config(port),
                },
            ),
        )
        await self._create(DESTINATION, POD, provisioner.server_pod(sid, dst.namespace, dst.name, image, port))

        use_route = self.config.endpoint == "route"
        await self._create(
            DESTINATION,
            SERVICE,
            provisioner.tunnel_service(sid, dst.namespace, port, load_balancer=not use_route),
        )
        if use_route:
            await self._create(DESTINATION, ROUTE, provisioner.tunnel_route(sid, dst.namespace))

        host, remote_port = await self._wait_endpoint(use_route)
        self.session.endpoint_address = f"{host}:{remote_port}"
        await provisioner.wait_pod_ready(
            self.destination,
            provisioner.object_name("server", sid),
            dst.namespace,
            self.config.poll_interval,
        )
        logger.info("transfer_server_ready", session=sid, endpoint=self.session.endpoint_address)

        # Source: PSK, client configuration, client pod
        await self._create(SOURCE, SECRET, provisioner.psk_secret(sid, src.namespace, self._psk))
        await self._create(
            SOURCE,
            CONFIG_MAP,
            provisioner.config_map(
                "client",
                sid,
                src.namespace,
                {rsync.STUNNEL_CONF: rsync.stunnel_client_config(host, remote_port, sni=use_route)},
            ),
        )
        await self._create(
            SOURCE,
            POD,
            provisioner.client_pod(
                sid, src.namespace, src.name, image, list(self.config.rsync_options), self.session.source_path
            ),
        )

    async def _wait_endpoint(self, use_route: bool) -> tuple[str, int]:
        sid = self.session.session_id
        namespace = self.session.destination_claim.namespace
        name = provisioner.object_name("server", sid)

        if use_route:
            async def route_ready() -> str | None:
                route = await self.destination.get_resource(ROUTE, name, namespace=namespace)
                return provisioner.route_host(route)

            host = await provisioner.poll_until(route_ready, self.config.poll_interval, "route host")
            return host, 443

        async def address_ready() -> str | None:
            service = await self.destination.get_resource(SERVICE, name, namespace=namespace)
            return provisioner.load_balancer_address(service)

        host = await provisioner.poll_until(address_ready, self.config.poll_interval, "load balancer address")
        return host, self.config.tunnel_port

    # Transferring

    async def _transfer(self) -> None:
        sid = self.session.session_id
        namespace = self.session.source_claim.namespace
        client_name = provisioner.object_name("client", sid)

        terminated = await provisioner.wait_container_terminated(
            self.source, client_name, namespace, "rsync", self.config.poll_interval
        )
        try:
            logs = await self.source.read_pod_log(client_name, namespace, container="rsync")
        except (APIError, NetworkError) as e:
            logger.warning("transfer_log_unavailable", session=sid, error=str(e))
            logs = ""

        exit_code = terminated.get("exitCode", -1)
        if exit_code != 0:
            tail = "\n".join(logs.strip().splitlines()[-5:])
            raise TransferError(f"rsync exited with {exit_code}: {tail or terminated.get('reason', '')}")

        self.session.stats = rsync.parse_rsync_stats(logs)
        self.session.bytes_transferred = self.session.stats["bytes_transferred"]
        logger.info(
            "transfer_copied",
            session=sid,
            bytes_transferred=self.session.bytes_transferred,
            files=self.session.stats["files_transferred"],
        )

    # Verifying

    async def _release_claims(self) -> None:
        """Delete the transfer pods so checksum pods can mount the claims."""
        sid = self.session.session_id
        for side, role, namespace in (
            (SOURCE, "client", self.session.source_claim.namespace),
            (DESTINATION, "server", self.session.destination_claim.namespace),
        ):
            client = self._client(side)
            name = provisioner.object_name(role, sid)
            try:
                await client.delete_resource(POD, name, namespace=namespace)
            except NotFoundError:
                continue
            await provisioner.wait_deleted(client, POD, name, namespace, self.config.poll_interval)

    async def _checksum(self, side: str, role: str, claim: ClaimRef, path: str | None) -> str:
        client = self._client(side)
        body = provisioner.checksum_pod(
            role, self.session.session_id, claim.namespace, claim.name, self.config.transfer_image, path
        )
        await self._create(side, POD, body)
        name = body["metadata"]["name"]
        terminated = await provisioner.wait_container_terminated(
            client, name, claim.namespace, "checksum", self.config.poll_interval
        )
        if terminated.get("exitCode", -1) != 0:
            raise TransferError(f"Checksum pod {claim.namespace}/{name} failed")
        return (await client.read_pod_log(name, claim.namespace, container="checksum")).strip()

    async def _verify(self) -> None:
        await self._release_claims()
        session = self.session
        session.source_checksum, session.destination_checksum = await asyncio.gather(
            self._checksum(SOURCE, "checksum-src", session.source_claim, session.source_path),
            self._checksum(DESTINATION, "checksum-dst", session.destination_claim, session.dest_path),
        )
        if session.source_checksum != session.destination_checksum:
            raise TransferError(
                f"Checksum mismatch: source {session.source_checksum} "
                f"!= destination {session.destination_checksum}"
            )
        logger.info("transfer_verified", session=session.session_id, checksum=session.source_checksum)

    # Teardown

    async def _teardown(self) -> None:
        """Delete every session object in both clusters; errors are only logged."""
        sid = self.session.session_id
        deleted: set[tuple[str, str, str, str]] = set()

        for obj in reversed(self.session.objects):
            key = (obj.side, obj.descriptor.kind, obj.namespace, obj.name)
            if key in deleted:
                continue
            deleted.add(key)
            await self._delete_quietly(obj.side, obj.descriptor, obj.name, obj.namespace)

        kinds = [POD, SERVICE, CONFIG_MAP, SECRET]
        if self.config.endpoint == "route":
            kinds.append(ROUTE)
        for side, namespace in (
            (SOURCE, self.session.source_claim.namespace),
            (DESTINATION, self.session.destination_claim.namespace),
        ):
            for descriptor in kinds:
                if side == SOURCE and descriptor is ROUTE:
                    continue
                try:
                    leftovers = await self._client(side).list_resources(
                        descriptor, namespace=namespace, label_selector=provisioner.session_selector(sid)
                    )
                except Exception as e:
                    self._teardown_error(side, descriptor.kind, "*", e)
                    continue
                for item in leftovers:
                    name = item["metadata"]["name"]
                    key = (side, descriptor.kind, namespace, name)
                    if key not in deleted:
                        deleted.add(key)
                        await self._delete_quietly(side, descriptor, name, namespace)

        logger.info("transfer_teardown_complete", session=sid, objects=len(deleted))

    async def _delete_quietly(self, side: str, descriptor: ResourceDescriptor, name: str, namespace: str) -> None:
        try:
            await self._client(side).delete_resource(descriptor, name, namespace=namespace)
        except NotFoundError:
            pass
        except Exception as e:
            # One failed delete must not stop the rest of the teardown
            self._teardown_error(side, descriptor.kind, name, e)

    def _teardown_error(self, side: str, kind: str, name: str, error: Exception) -> None:
        message = f"{side} {kind}/{name}: {error}"
        self.session.teardown_errors.append(message)
        logger.warning("transfer_teardown_error", session=self.session.session_id, error=message)
