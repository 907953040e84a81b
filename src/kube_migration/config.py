"""Configuration management for Kube Bridge using Pydantic.

This module provides type-safe configuration models for every pipeline
stage: client rate limits and retries, export policy, transform plugins,
apply behaviour, volume transfer, paths and logging. Every value has a
default, so the tool runs without a configuration file; CLI flags override
whatever the file provides.
"""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PathConfig(BaseModel):
    """Configuration for file paths."""

    export_dir: str = Field(default="export", description="Directory for exported manifests")
    transform_dir: str = Field(default="transform", description="Directory for transformed manifests")
    plugin_dir: str = Field(default="plugins", description="Directory scanned for external plugins")
    report_dir: str = Field(default="reports", description="Directory for run reports")


class PerformanceConfig(BaseModel):
    """Client rate limiting, retry and concurrency tuning."""

    qps: float = Field(default=20.0, ge=0, le=1000, description="Requests per second per cluster")
    burst: int = Field(default=40, ge=1, le=2000, description="Burst size for the rate limiter")
    timeout: int = Field(default=30, ge=1, le=600, description="API request timeout in seconds")
    max_concurrent: int = Field(
        default=16,
        ge=1,
        le=256,
        description="Maximum resources transformed or applied concurrently",
    )
    page_size: int = Field(default=500, ge=1, le=5000, description="Items per list page")
    retry_attempts: int = Field(
        default=5, ge=1, le=20, description="Maximum attempts per API call (including the first)"
    )
    retry_backoff_min: float = Field(
        default=0.5, ge=0, le=60, description="Minimum backoff time in seconds for retries"
    )
    retry_backoff_max: float = Field(
        default=30.0, ge=1, le=600, description="Maximum backoff time in seconds for retries"
    )

    @model_validator(mode="after")
    def validate_backoff_window(self) -> "PerformanceConfig":
        """Ensure the backoff window is not inverted."""
        if self.retry_backoff_min > self.retry_backoff_max:
            raise ValueError("retry_backoff_min must not exceed retry_backoff_max")
        return self

    @property
    def worker_pool_size(self) -> int:
        """Size of the export/discovery worker pool, derived from the burst."""
        return max(1, self.burst)


class ExportConfig(BaseModel):
    """Export policy options."""

    owner_reference_policy: Literal["keep", "strip-cluster-scoped", "strip-all"] = Field(
        default="strip-cluster-scoped",
        description="Which metadata.ownerReferences survive sanitization",
    )
    max_failure_ratio: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description=(
            "Fail the run when failed/total exceeds this ratio. "
            "A run where every resource failed always fails."
        ),
    )
    deny_kinds: list[str] = Field(
        default_factory=list,
        description="Kinds excluded in addition to the built-in deny-list",
    )


class TransformConfig(BaseModel):
    """Transform phase configuration options."""

    plugin_timeout: int = Field(
        default=30, ge=1, le=600, description="Seconds allowed for one external plugin call"
    )
    max_failure_ratio: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Fail the run when the share of resources with plugin errors exceeds this ratio",
    )
    extras: dict[str, str] = Field(
        default_factory=dict,
        description="Default plugin flag values (overridden by the flags file)",
    )


class ApplyConfig(BaseModel):
    """Apply phase configuration options."""

    crd_establish_timeout: int = Field(
        default=60,
        ge=1,
        le=900,
        description="Seconds to wait for applied CustomResourceDefinitions to be Established",
    )
    poll_interval: float = Field(default=1.0, gt=0, le=30)


class TransferConfig(BaseModel):
    """Volume transfer configuration."""

    transfer_image: str = Field(
        default="quay.io/konveyor/rsync-transfer:latest",
        description="Image providing rsync, stunnel and coreutils",
    )
    endpoint: Literal["load-balancer", "route"] = Field(
        default="load-balancer", description="How the destination exposes the tunnel"
    )
    tunnel_port: int = Field(default=8443, ge=1, le=65535)
    storage_class_map: dict[str, str] = Field(
        default_factory=dict,
        description="Storage class remapping used when the destination claim is created",
    )
    timeout_seconds: int = Field(
        default=3600, ge=10, le=86400, description="Overall deadline for one transfer session"
    )
    poll_interval: float = Field(default=2.0, gt=0, le=60)
    verify_checksum: bool = Field(default=True, description="Compare content checksums after copy")
    rsync_options: list[str] = Field(
        default_factory=lambda: ["--archive", "--delete", "--hard-links", "--partial"],
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="Log file format (json or console)")
    file: str | None = Field(default=None, description="Log file path")
    log_payloads: bool = Field(
        default=False,
        description="Log request bodies at DEBUG level (secrets are redacted)",
    )
    max_payload_size: int = Field(default=10000, ge=100, le=1000000)

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class BridgeConfig(BaseSettings):
    """Main Kube Bridge configuration."""

    model_config = SettingsConfigDict(
        env_prefix="KUBE_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    kubeconfig: str | None = Field(default=None, description="Default kubeconfig path")
    source_context: str | None = Field(default=None, description="Default source context")
    destination_context: str | None = Field(default=None, description="Default destination context")

    paths: PathConfig = Field(default_factory=PathConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    transform: TransformConfig = Field(default_factory=TransformConfig)
    apply: ApplyConfig = Field(default_factory=ApplyConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config_from_yaml(config_path: str | Path) -> BridgeConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is empty or references unset variables
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return BridgeConfig(**config_data)


def load_config(config_path: str | Path | None = None) -> BridgeConfig:
    """Load configuration from a file, or defaults plus environment when absent."""
    if config_path is None:
        return BridgeConfig()
    return load_config_from_yaml(config_path)


def _expand_env_vars(data):
    """Recursively expand ``${VAR_NAME}`` references in config values."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data


def parse_mapping_pairs(pairs: tuple[str, ...] | list[str]) -> dict[str, str]:
    """Parse ``old=new`` command-line pairs into a mapping.

    Raises:
        ValueError: If a pair has no ``=``
    """
    mapping: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected OLD=NEW, got '{pair}'")
        old, new = pair.split("=", 1)
        mapping[old.strip()] = new.strip()
    return mapping
