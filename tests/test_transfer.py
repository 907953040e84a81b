"""Tests for the volume transfer subsystem."""

import asyncio

import pytest
from kubernetes.config.config_exception import ConfigException

from kube_migration.client.exceptions import ServerError
from kube_migration.config import TransferConfig
from kube_migration.migration.transfer import provisioner, rsync
from kube_migration.migration.transfer.session import ClaimRef, PVCTransfer, TransferState

from tests.conftest import FakeCluster

RSYNC_OUTPUT = """\
sending incremental file list
./
index.html
data.db

Number of files: 3 (reg: 2, dir: 1)
Number of created files: 2 (reg: 2)
Number of regular files transferred: 2
Total file size: 2,048 bytes
Total transferred file size: 2,048 bytes
Literal data: 2,048 bytes
Total bytes sent: 2,300
Total bytes received: 60

sent 2,300 bytes  received 60 bytes  4,720.00 bytes/sec
total size is 2,048  speedup is 0.87
"""

FAST = TransferConfig(poll_interval=0.01, storage_class_map={"gp2": "gp3"})


def simulate_pods(cluster: FakeCluster, rsync_exit: int = 0, checksum: str = "d41d8cd9", server_ready: bool = True):
    """Make created transfer objects progress the way the cluster would run them."""

    def on_create(fake: FakeCluster, stored: dict) -> None:
        metadata = stored["metadata"]
        role = (metadata.get("labels") or {}).get(provisioner.ROLE_LABEL)
        namespace, name = metadata.get("namespace"), metadata["name"]
        kind = stored["kind"]

        if kind == "Service" and stored["spec"]["type"] == "LoadBalancer":
            stored["status"] = {"loadBalancer": {"ingress": [{"ip": "203.0.113.10"}]}}
        elif kind == "Route":
            stored["spec"]["host"] = "kb-server.apps.example.com"
        elif kind == "Pod" and role == "server" and server_ready:
            stored["status"] = {
                "phase": "Running",
                "containerStatuses": [{"name": "rsync", "ready": True}, {"name": "stunnel", "ready": True}],
            }
        elif kind == "Pod" and role == "client":
            stored["status"] = {
                "phase": "Running",
                "containerStatuses": [
                    {"name": "rsync", "state": {"terminated": {"exitCode": rsync_exit}}},
                    {"name": "stunnel", "state": {"running": {}}},
                ],
            }
            fake.pod_logs[(namespace, name)] = RSYNC_OUTPUT if rsync_exit == 0 else "rsync error: some files vanished"
        elif kind == "Pod" and role and role.startswith("checksum"):
            stored["status"] = {
                "phase": "Succeeded",
                "containerStatuses": [{"name": "checksum", "state": {"terminated": {"exitCode": 0}}}],
            }
            fake.pod_logs[(namespace, name)] = f"{checksum}  -\n"

    cluster.on_create.append(on_create)


def leftovers(cluster: FakeCluster) -> list[tuple]:
    return [key for key in cluster.objects if key[0] not in ("PersistentVolumeClaim", "Namespace")]


@pytest.fixture
def source():
    cluster = FakeCluster("source")
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": "data", "namespace": "shop", "labels": {"app": "db"}},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": "5Gi"}},
                "storageClassName": "gp2",
                "volumeName": "pv-1",
            },
        }
    )
    simulate_pods(cluster)
    return cluster


@pytest.fixture
def destination():
    cluster = FakeCluster("destination")
    simulate_pods(cluster)
    return cluster


def transfer(source, destination, config=FAST, **kwargs) -> PVCTransfer:
    return PVCTransfer(
        source,
        destination,
        ClaimRef("shop", "data"),
        ClaimRef("shop", "data"),
        config=config,
        session_id="abc123",
        **kwargs,
    )


class TestTransferSession:
    async def test_successful_transfer(self, source, destination):
        session = await transfer(source, destination).run()

        assert session.state == TransferState.COMPLETE, session.error
        assert session.succeeded
        assert session.bytes_transferred == 2048
        assert session.stats["files_transferred"] == 2
        assert session.source_checksum == session.destination_checksum == "d41d8cd9  -"
        assert session.endpoint_address == "203.0.113.10:8443"
        assert session.started_at <= session.finished_at

    async def test_destination_claim_created_with_remapped_class(self, source, destination):
        await transfer(source, destination).run()

        claim = destination.stored("PersistentVolumeClaim", "data", "shop")
        assert claim["spec"]["storageClassName"] == "gp3"
        assert claim["spec"]["resources"]["requests"]["storage"] == "5Gi"
        assert "volumeName" not in claim["spec"]
        assert claim["metadata"]["labels"] == {"app": "db"}

    async def test_existing_destination_claim_is_reused(self, source, destination):
        destination.add(
            {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {"name": "data", "namespace": "shop"},
                "spec": {"storageClassName": "fast"},
            }
        )

        await transfer(source, destination).run()

        assert ("create", "PersistentVolumeClaim", "shop", "data") not in destination.calls
        assert destination.stored("PersistentVolumeClaim", "data", "shop")["spec"]["storageClassName"] == "fast"

    async def test_all_transient_objects_removed(self, source, destination):
        session = await transfer(source, destination).run()

        assert leftovers(source) == []
        assert leftovers(destination) == []
        assert session.teardown_errors == []
        created = {(obj.side, obj.descriptor.kind) for obj in session.objects}
        assert ("destination", "Secret") in created
        assert ("source", "Pod") in created

    async def test_psk_secret_is_shared_by_both_sides(self, source, destination):
        seen = {}

        def capture(fake, stored):
            if stored["kind"] == "Secret":
                seen[fake.name] = stored["stringData"][rsync.PSK_FILE]

        source.on_create.append(capture)
        destination.on_create.append(capture)

        await transfer(source, destination).run()

        assert seen["source"] == seen["destination"]
        assert seen["source"].startswith("abc123:")

    async def test_route_endpoint(self, source, destination):
        config = FAST.model_copy(update={"endpoint": "route"})

        session = await transfer(source, destination, config=config).run()

        assert session.succeeded, session.error
        assert session.endpoint_address == "kb-server.apps.example.com:443"
        assert ("create", "Route", "shop", "kb-server-abc123") in destination.calls
        assert leftovers(destination) == []

    async def test_checksum_skipped_when_disabled(self, source, destination):
        config = FAST.model_copy(update={"verify_checksum": False})

        session = await transfer(source, destination, config=config).run()

        assert session.succeeded
        assert session.source_checksum is None


class TestTransferFailures:
    async def test_missing_source_claim(self, destination):
        session = await transfer(FakeCluster("source"), destination).run()

        assert session.state == TransferState.FAILED
        assert session.failed_stage == TransferState.PROVISIONING
        assert "not found" in session.error
        assert destination.mutating_calls() == []

    async def test_rsync_failure_cleans_up(self, destination):
        source = FakeCluster("source")
        source.add({"apiVersion": "v1", "kind": "PersistentVolumeClaim",
                    "metadata": {"name": "data", "namespace": "shop"}, "spec": {}})
        simulate_pods(source, rsync_exit=23)

        session = await transfer(source, destination).run()

        assert session.failed_stage == TransferState.TRANSFERRING
        assert "rsync exited with 23" in session.error
        assert leftovers(source) == []
        assert leftovers(destination) == []

    async def test_checksum_mismatch_fails_verification(self, source):
        destination = FakeCluster("destination")
        simulate_pods(destination, checksum="ffffffff")

        session = await transfer(source, destination).run()

        assert session.failed_stage == TransferState.VERIFYING
        assert "Checksum mismatch" in session.error
        assert leftovers(source) == []
        assert leftovers(destination) == []

    async def test_api_failure_during_provisioning(self, source, destination):
        destination.fail("create", "Service", ServerError("Server error", 500))

        session = await transfer(source, destination).run()

        assert session.failed_stage == TransferState.PROVISIONING
        assert leftovers(destination) == []

    async def test_deadline_fails_and_cleans_up(self, source):
        destination = FakeCluster("destination")
        simulate_pods(destination, server_ready=False)
        config = FAST.model_copy(update={"timeout_seconds": 0.2})

        session = await transfer(source, destination, config=config).run()

        assert session.state == TransferState.FAILED
        assert "exceeded" in session.error
        assert leftovers(destination) == []

    async def test_cancellation_tears_down(self, source):
        destination = FakeCluster("destination")
        simulate_pods(destination, server_ready=False)
        job = transfer(source, destination)

        task = asyncio.create_task(job.run())
        while destination.stored("Pod", "kb-server-abc123", "shop") is None:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert job.session.state == TransferState.FAILED
        assert leftovers(destination) == []

    async def test_teardown_errors_are_reported(self, source, destination):
        destination.fail("delete", "ConfigMap", ServerError("Server error", 500))

        session = await transfer(source, destination).run()

        assert session.succeeded
        assert any("ConfigMap/kb-server-abc123" in error for error in session.teardown_errors)

    async def test_unexpected_error_still_tears_down(self, source, destination):
        source.fail("get", "Pod", ConfigException("exec credential plugin failed"))
        job = transfer(source, destination)

        with pytest.raises(ConfigException):
            await job.run()

        assert job.session.state == TransferState.FAILED
        assert job.session.failed_stage == TransferState.TRANSFERRING
        assert "exec credential plugin failed" in job.session.error
        assert job.session.finished_at is not None
        assert leftovers(source) == []
        assert leftovers(destination) == []

    async def test_teardown_continues_past_unexpected_delete_errors(self, source, destination):
        destination.fail("delete", "Secret", RuntimeError("connection reset"))

        session = await transfer(source, destination).run()

        assert session.succeeded
        assert any("Secret/kb-psk-abc123" in error for error in session.teardown_errors)
        assert leftovers(destination) == [("Secret", "shop", "kb-psk-abc123")]
        assert leftovers(source) == []


class TestRsyncHelpers:
    def test_parse_rsync_stats(self):
        stats = rsync.parse_rsync_stats(RSYNC_OUTPUT)

        assert stats["files_transferred"] == 2
        assert stats["total_size"] == 2048
        assert stats["bytes_transferred"] == 2048
        assert stats["bytes_sent"] == 2300
        assert stats["bytes_received"] == 60
        assert stats["transfer_rate"] == "4,720.00 bytes/sec"
        assert stats["speedup"] == 0.87

    def test_parse_empty_output(self):
        assert rsync.parse_rsync_stats("")["bytes_transferred"] == 0

    def test_object_names_and_selector(self):
        assert provisioner.object_name("server", "abc123") == "kb-server-abc123"
        assert provisioner.session_selector("abc123") == "kube-bridge.io/session=abc123"

    def test_destination_claim_without_class(self):
        claim = provisioner.destination_claim({"spec": {}}, "data", "shop", {"gp2": "gp3"})

        assert claim["spec"] == {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "1Gi"}}}
