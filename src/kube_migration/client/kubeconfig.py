"""Kubeconfig and context resolution.

Credentials are resolved by the official ``kubernetes`` package, which
understands every kubeconfig flavour (tokens, client certificates, exec and
auth-provider plugins, in-cluster service accounts). The result is folded
into an explicit ``ClusterSettings`` object that is threaded through every
component; no global client configuration is kept.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from kubernetes import config as kube_config
from kubernetes.client import Configuration

from kube_migration.client.exceptions import ConfigurationError
from kube_migration.config import PerformanceConfig
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ClusterSettings:
    """Connection and client-behaviour settings for one cluster.

    Attributes:
        name: Context name (identity of the cluster in logs and reports)
        host: API server URL
        token_provider: Callable returning the current ``Authorization`` header value
        cert_file: Client certificate path
        key_file: Client key path
        ca_file: CA bundle path
        verify_ssl: Whether to verify the API server certificate
        performance: Rate limit, retry and timeout configuration
    """

    name: str
    host: str
    token_provider: Callable[[], str | None] | None = None
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    verify_ssl: bool = True
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    def authorization(self) -> str | None:
        """Return the Authorization header value, refreshing exec credentials."""
        return self.token_provider() if self.token_provider else None


def resolve_cluster(
    context: str | None = None,
    kubeconfig: str | None = None,
    performance: PerformanceConfig | None = None,
) -> ClusterSettings:
    """Resolve a kubeconfig context into ``ClusterSettings``.

    Falls back to in-cluster service-account credentials when neither a
    context nor a kubeconfig is given and no kubeconfig can be loaded.

    Args:
        context: Context name (defaults to the kubeconfig's current context)
        kubeconfig: Path to kubeconfig (defaults to $KUBECONFIG / ~/.kube/config)
        performance: Client tuning to attach to the settings

    Returns:
        Resolved cluster settings

    Raises:
        ConfigurationError: If no usable credentials are found
    """
    configuration = Configuration()
    context_name = context

    try:
        kube_config.load_kube_config(
            config_file=kubeconfig,
            context=context,
            client_configuration=configuration,
            persist_config=False,
        )
        if context_name is None:
            _, active = kube_config.list_kube_config_contexts(config_file=kubeconfig)
            context_name = active["name"] if active else "current"
    except (kube_config.ConfigException, FileNotFoundError, TypeError) as e:
        if context is not None or kubeconfig is not None:
            raise ConfigurationError(f"Cannot load kubeconfig context '{context}': {e}") from e
        try:
            kube_config.load_incluster_config(client_configuration=configuration)
            context_name = "in-cluster"
        except kube_config.ConfigException as inner:
            raise ConfigurationError(
                "No kubeconfig found and not running inside a cluster"
            ) from inner

    def token_provider() -> str | None:
        # Runs the refresh hook for exec/oidc credentials when one is installed
        return configuration.get_api_key_with_prefix("authorization") or None

    settings = ClusterSettings(
        name=context_name or "current",
        host=configuration.host,
        token_provider=token_provider,
        cert_file=configuration.cert_file,
        key_file=configuration.key_file,
        ca_file=configuration.ssl_ca_cert,
        verify_ssl=configuration.verify_ssl,
        performance=performance or PerformanceConfig(),
    )

    logger.debug("cluster_resolved", context=settings.name, host=settings.host)
    return settings
