"""Transform engine.

Runs the ordered plugin chain over every exported manifest and writes the
mirrored transform tree plus ``report.json``. Resources are processed
concurrently; the chain for one resource is strictly sequential, each
plugin's patch being applied atomically to the output of the previous one.
"""

import asyncio
import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonpatch

from kube_migration.client.exceptions import PluginError, SerializationError
from kube_migration.migration.manifest import ManifestTree, read_yaml, write_atomic
from kube_migration.migration.models import TransformOutcome
from kube_migration.migration.plugins.base import TransformPlugin
from kube_migration.migration.plugins.builtin import builtin_plugins
from kube_migration.migration.plugins.external import discover_plugins
from kube_migration.resources import qualified_kind_of
from kube_migration.utils.logging import get_logger, log_pipeline_progress

logger = get_logger(__name__)

REPORT_FILE = "report.json"


def build_plugin_chain(
    plugin_dir: str | Path | None = None, timeout: float = 30.0
) -> tuple[list[TransformPlugin], dict[str, str]]:
    """Assemble built-in and external plugins in chain order.

    An external plugin reusing the name of an already loaded plugin is
    rejected and reported as a load error.

    Returns:
        Sorted plugin chain and a map of plugin file/name to load error
    """
    chain: list[TransformPlugin] = builtin_plugins()
    errors: dict[str, str] = {}
    if plugin_dir is not None:
        external, errors = discover_plugins(plugin_dir, timeout=timeout)
        names = {plugin.name for plugin in chain}
        for plugin in external:
            if plugin.name in names:
                errors[plugin.executable.name] = f"duplicate plugin name '{plugin.name}'"
                logger.warning("plugin_name_conflict", plugin=plugin.name, path=str(plugin.executable))
                continue
            names.add(plugin.name)
            chain.append(plugin)
    return sorted(chain, key=lambda p: p.sort_key()), errors


@dataclass
class TransformReport:
    """Aggregated outcome of one transform run."""

    plugins: list[dict[str, Any]] = field(default_factory=list)
    enabled_optionals: list[str] = field(default_factory=list)
    outcomes: list[TransformOutcome] = field(default_factory=list)
    plugin_load_errors: dict[str, str] = field(default_factory=dict)

    @property
    def transformed(self) -> int:
        return sum(1 for o in self.outcomes if not o.whiteout)

    @property
    def whiteouts(self) -> int:
        return sum(1 for o in self.outcomes if o.whiteout)

    @property
    def errors(self) -> int:
        return sum(1 for o in self.outcomes if o.failed)

    @property
    def failure_ratio(self) -> float:
        return self.errors / len(self.outcomes) if self.outcomes else 0.0

    def succeeded(self, max_failure_ratio: float = 1.0) -> bool:
        """Aggregate exit policy, the same one the export applies.

        Plugin errors are recorded per resource and do not fail the run on
        their own. A run fails when every resource had an error, or when the
        share of resources with errors exceeds the threshold.
        """
        if not self.outcomes:
            return True
        if self.errors == len(self.outcomes):
            return False
        return self.failure_ratio <= max_failure_ratio

    def to_dict(self) -> dict[str, Any]:
        return {
            "plugins": self.plugins,
            "enabled_optionals": self.enabled_optionals,
            "plugin_load_errors": self.plugin_load_errors,
            "summary": {
                "resources": len(self.outcomes),
                "transformed": self.transformed,
                "whiteouts": self.whiteouts,
                "errors": self.errors,
            },
            "resources": [o.to_dict() for o in self.outcomes],
        }


class TransformEngine:
    """Applies an ordered plugin chain to manifests."""

    def __init__(
        self,
        plugins: Iterable[TransformPlugin],
        extras: dict[str, str] | None = None,
        enabled_optionals: Iterable[str] | None = None,
        max_concurrent: int = 16,
    ):
        """Initialize the engine.

        Args:
            plugins: Plugins to run (sorted into chain order here)
            extras: Flag values passed to every plugin
            enabled_optionals: Optional patch groups to apply
            max_concurrent: Resources transformed concurrently
        """
        self.plugins = sorted(plugins, key=lambda p: p.sort_key())
        self.extras = dict(extras or {})
        self.enabled_optionals = list(dict.fromkeys(enabled_optionals or ()))
        self.max_concurrent = max_concurrent

    def optional_groups(self) -> list[str]:
        return [group for plugin in self.plugins for group in plugin.metadata.optional_groups]

    async def transform_document(
        self, resource: dict[str, Any], outcome: TransformOutcome
    ) -> dict[str, Any] | None:
        """Run the chain over one document.

        Returns:
            The transformed document, or None when a plugin whiteouts it
        """
        current = resource
        for plugin in self.plugins:
            if not plugin.applies_to(current):
                continue
            try:
                response = await plugin.run(copy.deepcopy(current), self.extras)
            except PluginError as e:
                self._record_error(outcome, plugin.name, str(e))
                continue

            outcome.plugins.append(plugin.name)
            if response.whiteout:
                outcome.whiteout = True
                outcome.whiteout_by = plugin.name
                logger.debug("resource_whiteout", path=outcome.path, plugin=plugin.name)
                return None

            operations = list(response.patches)
            for group in self.enabled_optionals:
                operations.extend(response.optional_patches.get(group, []))
            if not operations:
                continue

            try:
                current = jsonpatch.apply_patch(current, operations, in_place=False)
            except (jsonpatch.JsonPatchException, jsonpatch.JsonPointerException) as e:
                # The whole contribution of this plugin is discarded
                self._record_error(outcome, plugin.name, f"patch failed: {e}")
                continue
            outcome.applied_ops += len(operations)

        return current

    @staticmethod
    def _record_error(outcome: TransformOutcome, plugin: str, error: str) -> None:
        outcome.errors.append({"plugin": plugin, "error": error})
        logger.warning("plugin_failed", path=outcome.path, plugin=plugin, error=error)

    async def run(self, export_dir: str | Path, transform_dir: str | Path) -> TransformReport:
        """Transform a whole export tree into the transform tree.

        Raises:
            OutputError: If the transform directory is not writable
        """
        source = ManifestTree(export_dir)
        target = ManifestTree(transform_dir)
        target.ensure_writable()
        for subtree in (target.resources_root, target.failures_root):
            if subtree.exists():
                target.reset_tree(subtree)

        files = list(source.iter_resource_files())
        total = len(files)
        semaphore = asyncio.Semaphore(self.max_concurrent)
        completed = 0
        lock = asyncio.Lock()

        logger.info(
            "transform_started",
            resources=total,
            plugins=[p.name for p in self.plugins],
            enabled_optionals=self.enabled_optionals,
        )

        async def process(path: Path) -> TransformOutcome:
            nonlocal completed
            async with semaphore:
                outcome = await self._process_file(source, target, path)
            async with lock:
                completed += 1
                if completed % 100 == 0 or completed == total:
                    log_pipeline_progress(logger, "transform", completed, total)
            return outcome

        outcomes = await asyncio.gather(*(process(path) for path in files))

        for failure in source.iter_failure_files():
            write_atomic(target.root / source.relative(failure), failure.read_text(encoding="utf-8"))

        report = TransformReport(
            plugins=[
                {
                    "name": p.name,
                    "source": p.source,
                    "priority": p.priority,
                    "version": p.metadata.version,
                    "labels": dict(p.metadata.labels),
                    "optional_fields": p.metadata.optional_groups,
                }
                for p in self.plugins
            ],
            enabled_optionals=self.enabled_optionals,
            outcomes=sorted(outcomes, key=lambda o: o.path),
        )

        logger.info(
            "transform_completed",
            resources=total,
            transformed=report.transformed,
            whiteouts=report.whiteouts,
            errors=report.errors,
        )
        return report

    async def _process_file(
        self, source: ManifestTree, target: ManifestTree, path: Path
    ) -> TransformOutcome:
        relative = source.relative(path)
        namespace = relative.parts[1] if len(relative.parts) > 2 else ""
        outcome = TransformOutcome(path=str(relative), kind="", namespace=namespace, name=path.stem)

        try:
            document = read_yaml(path)
        except SerializationError as e:
            outcome.errors.append({"plugin": "", "error": str(e)})
            logger.warning("manifest_unreadable", path=str(relative), error=str(e))
            failure = Path("failures", *relative.parts[1:])
            target.write_document(failure, {"error": str(e), "source": str(relative)})
            return outcome

        outcome.kind = qualified_kind_of(document)
        outcome.name = (document.get("metadata") or {}).get("name", path.stem)

        transformed = await self.transform_document(document, outcome)
        if transformed is not None:
            target.write_document(relative, transformed)
        return outcome
