"""Transform plugin contract.

A plugin inspects one resource and answers with JSON Patch operations, an
optional whiteout decision and named groups of optional operations. Plugins
never modify the document they are given; the engine applies their patch.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

BUILTIN_SOURCE = "builtin"
EXTERNAL_SOURCE = "external"

# Built-ins sort before external plugins of equal priority
SOURCE_RANK = {BUILTIN_SOURCE: 0, EXTERNAL_SOURCE: 1}

DEFAULT_EXTERNAL_PRIORITY = 100


@dataclass
class PluginResponse:
    """What a plugin wants done to one resource.

    Attributes:
        patches: JSON Patch operations always applied
        whiteout: Drop the resource from the output
        optional_patches: Operations applied only when their group is enabled
    """

    patches: list[dict[str, Any]] = field(default_factory=list)
    whiteout: bool = False
    optional_patches: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PluginResponse":
        """Build a response from a plugin's JSON output.

        Raises:
            ValueError: If the output does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ValueError("plugin output must be a JSON object")
        patches = data.get("patches") or []
        optional = data.get("optional_patches") or {}
        if not isinstance(patches, list) or not all(isinstance(op, dict) for op in patches):
            raise ValueError("'patches' must be a list of JSON Patch operations")
        if not isinstance(optional, dict) or not all(isinstance(ops, list) for ops in optional.values()):
            raise ValueError("'optional_patches' must map group names to operation lists")
        return cls(
            patches=patches,
            whiteout=bool(data.get("whiteout", False)),
            optional_patches=optional,
        )


@dataclass
class PluginMetadata:
    """Identity and scheduling information of a plugin."""

    name: str
    version: str = "v1"
    priority: int = DEFAULT_EXTERNAL_PRIORITY
    kinds: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    optional_fields: list[dict[str, str]] = field(default_factory=list)
    source: str = EXTERNAL_SOURCE

    @property
    def optional_groups(self) -> list[str]:
        return [entry["name"] for entry in self.optional_fields if "name" in entry]


class TransformPlugin(ABC):
    """Base class for built-in and external transform plugins."""

    metadata: PluginMetadata

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def priority(self) -> int:
        return self.metadata.priority

    @property
    def source(self) -> str:
        return self.metadata.source

    def sort_key(self) -> tuple[int, int, str]:
        return (self.priority, SOURCE_RANK.get(self.source, 1), self.name)

    def applies_to(self, resource: dict[str, Any]) -> bool:
        """Whether the plugin runs for a resource.

        An empty ``kinds`` list matches every kind. Every entry of ``labels``
        must be present with the same value in the resource's labels.
        """
        if self.metadata.kinds and resource.get("kind") not in self.metadata.kinds:
            return False
        if not self.metadata.labels:
            return True
        labels = (resource.get("metadata") or {}).get("labels") or {}
        return all(labels.get(key) == value for key, value in self.metadata.labels.items())

    @abstractmethod
    async def run(self, resource: dict[str, Any], extras: dict[str, str]) -> PluginResponse:
        """Compute the patch for one resource.

        Args:
            resource: Current document (must not be modified)
            extras: Flag values from the flags file

        Raises:
            PluginError: If the plugin cannot produce a response
        """
