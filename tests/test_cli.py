"""Tests for the command-line interface."""

import json
import os
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from kube_migration import __version__
from kube_migration.cli.context import BridgeContext
from kube_migration.cli.main import cli
from kube_migration.client.exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidResourceError,
    ServerError,
)

from tests.conftest import FakeCluster, deployment, write_manifest
from tests.test_transfer import simulate_pods
from tests.test_transformer import write_plugin


@pytest.fixture
def runner():
    return CliRunner()


def clusters(*fakes):
    """Patch the client factory to hand out the given fake clusters in order."""
    return patch.object(BridgeContext, "cluster_client", side_effect=list(fakes))


class TestGlobalOptions:
    def test_version_command(self, runner):
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert f"kube-bridge {__version__}" in result.output

    def test_version_option(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "version"])

        assert result.exit_code == 2

    def test_invalid_config_file_is_a_configuration_error(self, runner, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text("performance:\n  qps: -1\n", encoding="utf-8")

        result = runner.invoke(cli, ["--config", str(config), "export", "-n", "shop"])

        assert result.exit_code == 2

    def test_log_file_is_written(self, runner, tmp_path, shop_namespace):
        log_file = tmp_path / "logs" / "run.log"

        with clusters(shop_namespace):
            result = runner.invoke(
                cli,
                ["--log-file", str(log_file), "export", "-n", "shop", "-e", str(tmp_path / "export")],
            )

        assert result.exit_code == 0
        assert log_file.exists()


class TestExportCommand:
    def test_exports_namespace(self, runner, tmp_path, shop_namespace):
        report = tmp_path / "export-report.json"

        with clusters(shop_namespace):
            result = runner.invoke(
                cli, ["export", "-n", "shop", "-e", str(tmp_path / "export"), "--report", str(report)]
            )

        assert result.exit_code == 0, result.output
        assert (tmp_path / "export/resources/shop/Deployment.apps-web.yaml").exists()
        assert shop_namespace.closed
        assert json.loads(report.read_text())["summary"]["succeeded"] is True

    def test_reports_step_progress(self, runner, tmp_path, shop_namespace):
        with clusters(shop_namespace):
            result = runner.invoke(cli, ["export", "-n", "shop", "-e", str(tmp_path / "export")])

        assert result.exit_code == 0, result.output
        assert "✓ Exporting namespace 'shop'" in result.output

    def test_help_describes_the_command(self, runner):
        result = runner.invoke(cli, ["export", "--help"])

        assert result.exit_code == 0
        assert "Export the namespace resources." in result.output

    def test_all_failures_exit_one(self, runner, tmp_path, shop_namespace):
        for kind in ("ConfigMap", "Deployment", "ReplicaSet", "Service", "Pod", "Secret",
                     "ServiceAccount", "PersistentVolumeClaim", "Endpoints",
                     "ControllerRevision", "Role", "RoleBinding"):
            shop_namespace.fail("list", kind, ServerError("Server error", 500))

        with clusters(shop_namespace):
            result = runner.invoke(cli, ["export", "-n", "shop", "-e", str(tmp_path / "export")])

        assert result.exit_code == 1

    @pytest.mark.parametrize(
        "error,exit_code",
        [
            (AuthenticationError("Authentication failed", 401), 3),
            (ServerError("Server error", 503), 4),
        ],
    )
    def test_api_errors_map_to_exit_codes(self, runner, tmp_path, shop_namespace, error, exit_code):
        shop_namespace.group_failures["v1"] = error

        with clusters(shop_namespace):
            result = runner.invoke(cli, ["export", "-n", "shop", "-e", str(tmp_path / "export")])

        assert result.exit_code == exit_code

    def test_unresolvable_context(self, runner, tmp_path):
        with patch.object(BridgeContext, "cluster_client", side_effect=ConfigurationError("no context 'x'")):
            result = runner.invoke(cli, ["export", "-n", "shop", "--context", "x"])

        assert result.exit_code == 2
        assert "no context 'x'" in result.output

    def test_namespace_is_required(self, runner):
        result = runner.invoke(cli, ["export"])

        assert result.exit_code == 2


GUARDED_BUMP = """
    import json, sys
    if sys.argv[1] == "metadata":
        print(json.dumps({"name": "guarded-bump", "kinds": ["ConfigMap"]}))
        sys.exit(0)
    json.load(sys.stdin)
    print(json.dumps({"patches": [{"op": "test", "path": "/data/x", "value": "1"},
                                  {"op": "replace", "path": "/data/x", "value": "2"}]}))
"""


@pytest.fixture
def export_tree(tmp_path):
    root = tmp_path / "export"
    write_manifest(root, "resources/shop/Deployment.apps-web.yaml", deployment("web", "shop", imagePullSecrets=[{"name": "old"}]))
    write_manifest(root, "resources/shop/ConfigMap-settings.yaml",
                   {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "settings", "namespace": "shop"}})
    return root


class TestTransformCommand:
    def test_transforms_tree(self, runner, tmp_path, export_tree):
        out = tmp_path / "transform"

        result = runner.invoke(
            cli, ["transform", "-e", str(export_tree), "-t", str(out), "-p", str(tmp_path / "plugins")]
        )

        assert result.exit_code == 0, result.output
        assert (out / "resources/shop/Deployment.apps-web.yaml").exists()
        report = json.loads((out / "report.json").read_text())
        assert report["summary"]["transformed"] == 2
        assert "✓ Running the plugin chain" in result.output

    @pytest.fixture
    def guarded_tree(self, tmp_path):
        root = tmp_path / "export"
        for name, data in (("pinned", {"x": "1"}), ("loose", {"mode": "a"})):
            write_manifest(root, f"resources/shop/ConfigMap-{name}.yaml",
                           {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": name, "namespace": "shop"},
                            "data": data})
        plugins = tmp_path / "plugins"
        plugins.mkdir()
        write_plugin(plugins, "guarded-bump", GUARDED_BUMP)
        return root

    @pytest.mark.skipif(os.name != "posix", reason="external plugins are POSIX executables")
    def test_failed_precondition_is_reported_without_failing(self, runner, tmp_path, guarded_tree):
        out = tmp_path / "transform"

        result = runner.invoke(
            cli, ["transform", "-e", str(guarded_tree), "-t", str(out), "-p", str(tmp_path / "plugins")]
        )

        assert result.exit_code == 0, result.output
        report = json.loads((out / "report.json").read_text())
        assert report["summary"]["errors"] == 1
        assert report["summary"]["succeeded"] is True
        errors = {r["name"]: r["errors"] for r in report["resources"]}
        assert errors["pinned"] == []
        assert errors["loose"][0]["plugin"] == "guarded-bump"
        pinned = yaml.safe_load((out / "resources/shop/ConfigMap-pinned.yaml").read_text())
        assert pinned["data"] == {"x": "2"}
        loose = yaml.safe_load((out / "resources/shop/ConfigMap-loose.yaml").read_text())
        assert loose["data"] == {"mode": "a"}

    @pytest.mark.skipif(os.name != "posix", reason="external plugins are POSIX executables")
    def test_error_ratio_above_threshold_exits_one(self, runner, tmp_path, guarded_tree):
        config = tmp_path / "config.yaml"
        config.write_text("transform:\n  max_failure_ratio: 0.25\n", encoding="utf-8")
        out = tmp_path / "transform"

        result = runner.invoke(
            cli,
            ["--config", str(config), "transform", "-e", str(guarded_tree), "-t", str(out),
             "-p", str(tmp_path / "plugins")],
        )

        assert result.exit_code == 1
        assert json.loads((out / "report.json").read_text())["summary"]["succeeded"] is False

    def test_missing_export_dir(self, runner, tmp_path):
        result = runner.invoke(cli, ["transform", "-e", str(tmp_path / "absent"), "-t", str(tmp_path / "t")])

        assert result.exit_code == 2

    def test_list_plugins(self, runner, tmp_path):
        result = runner.invoke(cli, ["transform", "list-plugins", "-p", str(tmp_path / "plugins")])

        assert result.exit_code == 0
        assert "registry-replacement" in result.output

    def test_apply_optionals(self, runner, tmp_path, export_tree):
        out = tmp_path / "transform"
        flags = tmp_path / "flags.yaml"
        flags.write_text("registry-replacement: registry.old.example=registry.new.example\n", encoding="utf-8")

        result = runner.invoke(
            cli,
            ["transform", "apply-optionals", "-o", "registry-replacement", "-f", str(flags),
             "-e", str(export_tree), "-t", str(out), "-p", str(tmp_path / "plugins")],
        )

        assert result.exit_code == 0, result.output
        manifest = yaml.safe_load((out / "resources/shop/Deployment.apps-web.yaml").read_text())
        pod_spec = manifest["spec"]["template"]["spec"]
        assert pod_spec["containers"][0]["image"] == "registry.new.example/app:1.0"
        assert pod_spec["imagePullSecrets"] == [{"name": "old"}]

    def test_apply_optionals_needs_a_group(self, runner, tmp_path, export_tree):
        result = runner.invoke(cli, ["transform", "apply-optionals", "-e", str(export_tree)])

        assert result.exit_code == 2

    def test_unknown_optional_group(self, runner, tmp_path, export_tree):
        result = runner.invoke(
            cli,
            ["transform", "apply-optionals", "-o", "no-such-group",
             "-e", str(export_tree), "-t", str(tmp_path / "t"), "-p", str(tmp_path / "plugins")],
        )

        assert result.exit_code == 2


@pytest.fixture
def apply_tree(tmp_path):
    root = tmp_path / "transform"
    write_manifest(root, "resources/shop/ConfigMap-settings.yaml",
                   {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "settings", "namespace": "shop"},
                    "data": {"mode": "production"}})
    return root


class TestApplyCommand:
    def test_applies_tree(self, runner, apply_tree):
        destination = FakeCluster("destination")

        with clusters(destination):
            result = runner.invoke(cli, ["apply", "-i", str(apply_tree)])

        assert result.exit_code == 0, result.output
        assert destination.stored("ConfigMap", "settings", "shop") is not None
        assert destination.stored("Namespace", "shop") is not None
        assert "✓ Applying tiers to destination" in result.output

    def test_dry_run(self, runner, apply_tree):
        destination = FakeCluster("destination")

        with clusters(destination):
            result = runner.invoke(cli, ["apply", "-i", str(apply_tree), "--dry-run"])

        assert result.exit_code == 0
        assert destination.mutating_calls() == []

    def test_rejected_resource_exits_one(self, runner, apply_tree, tmp_path):
        destination = FakeCluster("destination")
        destination.fail("create", "ConfigMap", InvalidResourceError("Invalid resource", 422))
        report = tmp_path / "apply-report.json"

        with clusters(destination):
            result = runner.invoke(cli, ["apply", "-i", str(apply_tree), "--report", str(report)])

        assert result.exit_code == 1
        assert json.loads(report.read_text())["summary"]["failed"] == 1

    def test_conflicting_skip_flags(self, runner, apply_tree):
        result = runner.invoke(cli, ["apply", "-i", str(apply_tree), "--skip-namespaced", "--skip-cluster-scoped"])

        assert result.exit_code == 2

    def test_tree_without_resources(self, runner, tmp_path):
        result = runner.invoke(cli, ["apply", "-i", str(tmp_path)])

        assert result.exit_code == 2


class TestTransferCommand:
    @pytest.fixture
    def fast_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("transfer:\n  poll_interval: 0.01\n", encoding="utf-8")
        return path

    @pytest.fixture
    def source(self):
        cluster = FakeCluster("source")
        cluster.add(
            {
                "apiVersion": "v1",
                "kind": "PersistentVolumeClaim",
                "metadata": {"name": "data", "namespace": "shop"},
                "spec": {"storageClassName": "gp2", "resources": {"requests": {"storage": "2Gi"}}},
            }
        )
        simulate_pods(cluster)
        return cluster

    def test_transfers_claim(self, runner, fast_config, source, tmp_path):
        destination = FakeCluster("destination")
        simulate_pods(destination)
        report = tmp_path / "transfer.json"

        with clusters(source, destination):
            result = runner.invoke(
                cli,
                ["--config", str(fast_config), "transfer", "--pvc-name", "data:data-v2",
                 "--pvc-namespace", "shop", "--storage-class-map", "gp2=gp3", "--report", str(report)],
            )

        assert result.exit_code == 0, result.output
        claim = destination.stored("PersistentVolumeClaim", "data-v2", "shop")
        assert claim["spec"]["storageClassName"] == "gp3"
        assert json.loads(report.read_text())["session"]["state"] == "Complete"
        assert source.closed and destination.closed

    def test_failed_transfer_exits_six(self, runner, fast_config, source):
        destination = FakeCluster("destination")
        simulate_pods(destination, checksum="0000")

        with clusters(source, destination):
            result = runner.invoke(
                cli, ["--config", str(fast_config), "transfer", "--pvc-name", "data", "--pvc-namespace", "shop"]
            )

        assert result.exit_code == 6

    def test_bad_storage_class_map(self, runner, fast_config):
        result = runner.invoke(
            cli,
            ["--config", str(fast_config), "transfer", "--pvc-name", "data", "--pvc-namespace", "shop",
             "--storage-class-map", "gp2"],
        )

        assert result.exit_code == 2

    def test_timeout_lower_bound(self, runner):
        result = runner.invoke(
            cli, ["transfer", "--pvc-name", "data", "--pvc-namespace", "shop", "--timeout", "5"]
        )

        assert result.exit_code == 2
