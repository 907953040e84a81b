"""
CLI context for Kube Bridge.

This module provides the context object that is passed to all CLI commands,
holding the lazily loaded configuration and a factory for cluster clients.
"""

from dataclasses import dataclass, field
from pathlib import Path

from kube_migration.client.exceptions import ConfigurationError
from kube_migration.client.kube_client import ClusterClient
from kube_migration.client.kubeconfig import resolve_cluster
from kube_migration.config import BridgeConfig, PerformanceConfig, load_config
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BridgeContext:
    """
    Context object for CLI commands.

    Attributes:
        config_path: Path to configuration file (defaults + environment when absent)
        log_level: Console logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str = "WARNING"
    log_file: Path | None = None

    _config: BridgeConfig | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> BridgeConfig:
        """Get or load configuration.

        Raises:
            ConfigurationError: If the file cannot be loaded or validated
        """
        if self._config is None:
            logger.debug("loading_configuration", config_path=str(self.config_path) if self.config_path else None)
            try:
                self._config = load_config(self.config_path)
            except (OSError, ValueError) as e:
                raise ConfigurationError(f"Cannot load configuration: {e}") from e
        return self._config

    def performance(self, qps: float | None = None, burst: int | None = None) -> PerformanceConfig:
        """Performance settings with command-line overrides applied."""
        overrides = {}
        if qps is not None:
            overrides["qps"] = qps
        if burst is not None:
            overrides["burst"] = burst
        return self.config.performance.model_copy(update=overrides)

    def cluster_client(
        self,
        context: str | None,
        kubeconfig: str | None = None,
        qps: float | None = None,
        burst: int | None = None,
    ) -> ClusterClient:
        """Create a client for one cluster context."""
        settings = resolve_cluster(
            context=context,
            kubeconfig=kubeconfig or self.config.kubeconfig,
            performance=self.performance(qps, burst),
        )
        return ClusterClient(
            settings,
            log_payloads=self.config.logging.log_payloads,
            max_payload_size=self.config.logging.max_payload_size,
        )
