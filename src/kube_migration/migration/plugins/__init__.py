"""Transform plugins: the plugin contract, built-ins and external executables."""

from kube_migration.migration.plugins.base import PluginMetadata, PluginResponse, TransformPlugin
from kube_migration.migration.plugins.builtin import builtin_plugins
from kube_migration.migration.plugins.external import ExternalPlugin, discover_plugins

__all__ = [
    "PluginMetadata",
    "PluginResponse",
    "TransformPlugin",
    "ExternalPlugin",
    "builtin_plugins",
    "discover_plugins",
]
