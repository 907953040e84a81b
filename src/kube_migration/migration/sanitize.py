"""Reduce live objects to a redeployable form.

Server-populated metadata and the ``status`` stanza are removed so the
exported manifest can be created on another cluster. Owner references are
filtered according to the configured policy.
"""

import copy
from collections.abc import Collection
from typing import Any, Literal

from kube_migration.client.exceptions import SerializationError
from kube_migration.resources import CLUSTER_SCOPED_KINDS

OwnerReferencePolicy = Literal["keep", "strip-cluster-scoped", "strip-all"]

SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "selfLink",
    "creationTimestamp",
    "generation",
    "managedFields",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
)

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


def sanitize(
    resource: dict[str, Any],
    owner_reference_policy: OwnerReferencePolicy = "strip-cluster-scoped",
    cluster_scoped_kinds: Collection[str] = CLUSTER_SCOPED_KINDS,
) -> dict[str, Any]:
    """Return a sanitized deep copy of a live object.

    Args:
        resource: Object as returned by the API server
        owner_reference_policy: Which owner references survive
        cluster_scoped_kinds: Kinds treated as cluster-scoped owners

    Returns:
        The sanitized copy (the input is not modified)

    Raises:
        SerializationError: If the object has no ``metadata.name``
    """
    metadata = resource.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise SerializationError("Object has no metadata.name")

    cleaned = copy.deepcopy(resource)
    cleaned.pop("status", None)

    metadata = cleaned["metadata"]
    for key in SERVER_METADATA_FIELDS:
        metadata.pop(key, None)

    annotations = metadata.get("annotations")
    if isinstance(annotations, dict):
        annotations.pop(LAST_APPLIED_ANNOTATION, None)
        if not annotations:
            metadata.pop("annotations")

    owners = metadata.get("ownerReferences")
    if owners is not None:
        kept = filter_owner_references(owners, owner_reference_policy, cluster_scoped_kinds)
        if kept:
            metadata["ownerReferences"] = kept
        else:
            metadata.pop("ownerReferences")

    return cleaned


def filter_owner_references(
    owners: list[dict[str, Any]],
    policy: OwnerReferencePolicy,
    cluster_scoped_kinds: Collection[str] = CLUSTER_SCOPED_KINDS,
) -> list[dict[str, Any]]:
    """Return the owner references that survive the policy."""
    if policy == "strip-all":
        return []

    kept = []
    for owner in owners:
        if policy == "strip-cluster-scoped" and owner.get("kind") in cluster_scoped_kinds:
            continue
        kept.append(owner)
    return kept


def is_controlled(resource: dict[str, Any], kinds: Collection[str] | None = None) -> bool:
    """Whether the object has a controller owner (optionally of given kinds)."""
    for owner in resource.get("metadata", {}).get("ownerReferences") or []:
        if owner.get("controller") and (kinds is None or owner.get("kind") in kinds):
            return True
    return False
