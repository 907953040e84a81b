"""
Data models passed between pipeline stages.

Export units, transform outcomes and apply results are plain dataclasses;
they are written to disk as YAML/JSON and never persisted anywhere else.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from kube_migration.resources import ResourceDescriptor


class UnitStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class ExportUnit:
    """One exported resource instance (or one kind-level list failure).

    Attributes:
        descriptor: Resource type of the instance
        namespace: Namespace the instance was exported from
        name: Object name ("_list" for a kind-level failure)
        body: Sanitized manifest (read-only view)
        status: ok or failed
        reason: Failure reason when status is failed
        cluster_scoped: Written under the ``_cluster`` subtree
    """

    descriptor: ResourceDescriptor
    namespace: str
    name: str
    body: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
    status: UnitStatus = UnitStatus.OK
    reason: str | None = None
    cluster_scoped: bool = False

    @classmethod
    def ok(
        cls,
        descriptor: ResourceDescriptor,
        namespace: str,
        body: dict[str, Any],
        cluster_scoped: bool = False,
    ) -> "ExportUnit":
        return cls(
            descriptor=descriptor,
            namespace=namespace,
            name=body["metadata"]["name"],
            body=MappingProxyType(body),
            cluster_scoped=cluster_scoped,
        )

    @classmethod
    def failed(
        cls,
        descriptor: ResourceDescriptor,
        namespace: str,
        name: str,
        reason: str,
        body: dict[str, Any] | None = None,
    ) -> "ExportUnit":
        return cls(
            descriptor=descriptor,
            namespace=namespace,
            name=name,
            body=MappingProxyType(body or {}),
            status=UnitStatus.FAILED,
            reason=reason,
        )

    @property
    def is_list_failure(self) -> bool:
        return self.status == UnitStatus.FAILED and self.name == LIST_FAILURE_NAME

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.descriptor.qualified_kind, self.namespace, self.name)


LIST_FAILURE_NAME = "_list"


@dataclass
class ExportResult:
    """Outcome of exporting one namespace."""

    namespace: str
    units: list[ExportUnit] = field(default_factory=list)
    failed_groups: dict[str, str] = field(default_factory=dict)
    kinds_listed: int = 0

    @property
    def exported(self) -> list[ExportUnit]:
        return [u for u in self.units if u.status == UnitStatus.OK]

    @property
    def failures(self) -> list[ExportUnit]:
        return [u for u in self.units if u.status == UnitStatus.FAILED]

    @property
    def total(self) -> int:
        return len(self.units)

    @property
    def failure_ratio(self) -> float:
        return len(self.failures) / self.total if self.total else 0.0

    def succeeded(self, max_failure_ratio: float = 1.0) -> bool:
        """Aggregate exit policy.

        An empty namespace is a success. A run fails when instances existed
        but none exported, or when the failure ratio exceeds the threshold.
        """
        if self.total == 0:
            return True
        if not self.exported:
            return False
        return self.failure_ratio <= max_failure_ratio

    def counts_by_kind(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {}
        for unit in self.units:
            entry = counts.setdefault(unit.descriptor.qualified_kind, {"exported": 0, "failed": 0})
            entry["exported" if unit.status == UnitStatus.OK else "failed"] += 1
        return dict(sorted(counts.items()))


@dataclass
class TransformOutcome:
    """Per-resource record written to the transform report."""

    path: str
    kind: str
    namespace: str
    name: str
    plugins: list[str] = field(default_factory=list)
    applied_ops: int = 0
    whiteout: bool = False
    whiteout_by: str | None = None
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "plugins": list(self.plugins),
            "applied_ops": self.applied_ops,
            "whiteout": self.whiteout,
            "whiteout_by": self.whiteout_by,
            "errors": list(self.errors),
        }


class ApplyAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ApplyItemResult:
    """Outcome of applying one manifest."""

    kind: str
    namespace: str | None
    name: str
    tier: int
    action: ApplyAction
    diff_paths: list[str] = field(default_factory=list)
    error: str | None = None
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "tier": self.tier,
            "action": self.action.value,
            "diff_paths": list(self.diff_paths),
            "error": self.error,
            "source": self.source,
        }


@dataclass
class ApplyResult:
    """Outcome of one apply run."""

    dry_run: bool = False
    items: list[ApplyItemResult] = field(default_factory=list)

    def count(self, action: ApplyAction) -> int:
        return sum(1 for item in self.items if item.action == action)

    @property
    def failed(self) -> list[ApplyItemResult]:
        return [item for item in self.items if item.action == ApplyAction.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failed

    def summary(self) -> dict[str, int]:
        return {action.value: self.count(action) for action in ApplyAction}
