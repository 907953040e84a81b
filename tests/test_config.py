"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from kube_migration.config import (
    BridgeConfig,
    LoggingConfig,
    PerformanceConfig,
    TransferConfig,
    load_config,
    load_config_from_yaml,
    parse_mapping_pairs,
)


class TestDefaults:
    def test_runs_without_a_file(self):
        config = load_config(None)

        assert isinstance(config, BridgeConfig)
        assert config.paths.export_dir == "export"
        assert config.export.owner_reference_policy == "strip-cluster-scoped"
        assert config.transfer.verify_checksum

    def test_worker_pool_follows_burst(self):
        assert PerformanceConfig(burst=7).worker_pool_size == 7


class TestYamlFile:
    def test_loads_nested_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "performance:\n"
            "  qps: 5\n"
            "  burst: 10\n"
            "transfer:\n"
            "  endpoint: route\n"
            "  storage_class_map:\n"
            "    gp2: gp3\n",
            encoding="utf-8",
        )

        config = load_config_from_yaml(path)

        assert config.performance.qps == 5.0
        assert config.performance.burst == 10
        assert config.transfer.endpoint == "route"
        assert config.transfer.storage_class_map == {"gp2": "gp3"}

    def test_expands_environment_variables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SOURCE_CTX", "prod-east")
        path = tmp_path / "config.yaml"
        path.write_text("source_context: ${SOURCE_CTX}\n", encoding="utf-8")

        assert load_config(path).source_context == "prod-east"

    def test_unset_variable_is_an_error(self, tmp_path, monkeypatch):
        monkeypatch.delenv("KB_UNSET_VARIABLE", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("kubeconfig: ${KB_UNSET_VARIABLE}\n", encoding="utf-8")

        with pytest.raises(ValueError, match="KB_UNSET_VARIABLE"):
            load_config(path)

    def test_empty_file_is_an_error(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")

        with pytest.raises(ValueError, match="Empty configuration file"):
            load_config_from_yaml(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_from_yaml(tmp_path / "absent.yaml")

    def test_invalid_value_is_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("export:\n  owner_reference_policy: sometimes\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_config_from_yaml(path)


class TestEnvironment:
    def test_nested_override(self, monkeypatch):
        monkeypatch.setenv("KUBE_BRIDGE_PERFORMANCE__QPS", "2.5")
        monkeypatch.setenv("KUBE_BRIDGE_DESTINATION_CONTEXT", "dr-west")

        config = BridgeConfig()

        assert config.performance.qps == 2.5
        assert config.destination_context == "dr-west"


class TestValidation:
    def test_backoff_window_must_not_be_inverted(self):
        with pytest.raises(ValidationError, match="retry_backoff_min"):
            PerformanceConfig(retry_backoff_min=10, retry_backoff_max=5)

    def test_transfer_timeout_lower_bound(self):
        with pytest.raises(ValidationError):
            TransferConfig(timeout_seconds=1)

    def test_log_level_is_normalised(self):
        assert LoggingConfig(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingConfig(level="chatty")


class TestMappingPairs:
    def test_parses_pairs(self):
        assert parse_mapping_pairs(["gp2=gp3", " standard = premium "]) == {"gp2": "gp3", "standard": "premium"}

    def test_rejects_missing_separator(self):
        with pytest.raises(ValueError, match="OLD=NEW"):
            parse_mapping_pairs(["gp2"])
