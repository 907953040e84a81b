"""Export/transform manifest tree layout and YAML file I/O.

Layout (the transform tree mirrors it)::

    <dir>/resources/<namespace>/<Kind[.group]>-<name>.yaml
    <dir>/resources/<namespace>/_cluster/<Kind[.group]>-<name>.yaml
    <dir>/failures/<namespace>/<Kind[.group]>-<name>.yaml

YAML is written with sorted keys so identical cluster state produces
byte-identical files. Every write goes through a temporary file in the
target directory followed by a rename.
"""

import os
import shutil
import tempfile
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import yaml

from kube_migration.client.exceptions import OutputError, SerializationError
from kube_migration.migration.models import ExportUnit, UnitStatus
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)

RESOURCES_DIR = "resources"
FAILURES_DIR = "failures"
CLUSTER_DIR = "_cluster"


def manifest_filename(kind_token: str, name: str) -> str:
    """File name of one object; ``/`` never appears in Kubernetes names."""
    return f"{kind_token}-{name}.yaml"


def dump_yaml(document: Any) -> str:
    """Serialize a document deterministically."""
    try:
        return yaml.safe_dump(
            _plain(document),
            default_flow_style=False,
            sort_keys=True,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        raise SerializationError(f"Cannot serialize document: {e}") from e


def _plain(value: Any) -> Any:
    # MappingProxyType and other read-only mappings are not representable
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def write_atomic(path: Path, content: str) -> None:
    """Write a file through a temporary sibling and a rename.

    Raises:
        OutputError: If the directory cannot be created or written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as temp_file:
            temp_file.write(content)
            temp_path = temp_file.name
        os.replace(temp_path, path)
    except OSError as e:
        raise OutputError(f"Cannot write {path}: {e}") from e


def read_yaml(path: Path) -> dict[str, Any]:
    """Load one manifest file.

    Raises:
        SerializationError: If the file is not a single YAML mapping
    """
    try:
        with open(path, encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SerializationError(f"Cannot read {path}: {e}") from e
    if not isinstance(document, dict):
        raise SerializationError(f"{path} does not contain a YAML mapping")
    return document


class ManifestTree:
    """A manifest tree rooted at an export or transform directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    @property
    def resources_root(self) -> Path:
        return self.root / RESOURCES_DIR

    @property
    def failures_root(self) -> Path:
        return self.root / FAILURES_DIR

    def resources_dir(self, namespace: str, cluster_scoped: bool = False) -> Path:
        path = self.resources_root / namespace
        return path / CLUSTER_DIR if cluster_scoped else path

    def failures_dir(self, namespace: str) -> Path:
        return self.failures_root / namespace

    def ensure_writable(self) -> None:
        """Create the root and check that it can be written.

        Raises:
            OutputError: If the directory is not writable
        """
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryFile(dir=self.root):
                pass
        except OSError as e:
            raise OutputError(f"Output directory {self.root} is not writable: {e}") from e

    def reset_namespace(self, namespace: str) -> None:
        """Replace a namespace's resources and failures subtrees with empty ones.

        Both directories exist after a run, even when nothing failed.
        """
        for path in (self.resources_dir(namespace), self.failures_dir(namespace)):
            if path.exists():
                self.reset_tree(path)
            try:
                path.mkdir(parents=True)
            except OSError as e:
                raise OutputError(f"Cannot create {path}: {e}") from e

    def reset_tree(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise OutputError(f"Cannot clear {path}: {e}") from e
        logger.debug("previous_tree_removed", path=str(path))

    def unit_path(self, unit: ExportUnit) -> Path:
        filename = manifest_filename(unit.descriptor.qualified_kind, unit.name)
        if unit.status == UnitStatus.FAILED:
            return self.failures_dir(unit.namespace) / filename
        return self.resources_dir(unit.namespace, unit.cluster_scoped) / filename

    def write_unit(self, unit: ExportUnit) -> Path:
        """Write an export unit into its subtree and return the file path."""
        path = self.unit_path(unit)
        if unit.status == UnitStatus.FAILED:
            document = failure_document(unit)
        else:
            document = unit.body
        write_atomic(path, dump_yaml(document))
        return path

    def write_document(self, relative: Path, document: Any) -> Path:
        path = self.root / relative
        write_atomic(path, dump_yaml(document))
        return path

    def iter_resource_files(self) -> Iterator[Path]:
        """Yield every manifest under ``resources/`` in sorted order."""
        if not self.resources_root.is_dir():
            return
        yield from sorted(self.resources_root.rglob("*.yaml"))

    def iter_failure_files(self) -> Iterator[Path]:
        if not self.failures_root.is_dir():
            return
        yield from sorted(self.failures_root.rglob("*.yaml"))

    def relative(self, path: Path) -> Path:
        return path.relative_to(self.root)


def failure_document(unit: ExportUnit) -> dict[str, Any]:
    """Build the content of a failures/ file."""
    document: dict[str, Any] = {
        "apiVersion": unit.descriptor.api_version,
        "kind": unit.descriptor.kind,
        "metadata": {"name": unit.name, "namespace": unit.namespace},
        "error": unit.reason or "unknown error",
    }
    if unit.body:
        document["resource"] = unit.body
    return document
