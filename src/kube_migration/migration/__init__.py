"""
Migration pipeline for Kube Bridge.

This package holds the export, transform and apply stages and the volume
transfer subsystem.
"""

from kube_migration.migration.applier import ApplyEngine, ApplyPlan
from kube_migration.migration.discovery import DiscoveryResult, KindResolver, discover
from kube_migration.migration.exporter import NamespaceExporter
from kube_migration.migration.manifest import ManifestTree
from kube_migration.migration.models import (
    ApplyAction,
    ApplyItemResult,
    ApplyResult,
    ExportResult,
    ExportUnit,
    TransformOutcome,
)
from kube_migration.migration.transformer import TransformEngine, TransformReport, build_plugin_chain

__all__ = [
    # Discovery
    "discover",
    "DiscoveryResult",
    "KindResolver",
    # Export
    "NamespaceExporter",
    "ManifestTree",
    "ExportUnit",
    "ExportResult",
    # Transform
    "TransformEngine",
    "TransformReport",
    "TransformOutcome",
    "build_plugin_chain",
    # Apply
    "ApplyEngine",
    "ApplyPlan",
    "ApplyAction",
    "ApplyItemResult",
    "ApplyResult",
]
