"""Built-in transform plugins.

``kubernetes`` always runs and removes what a destination cluster would
reject or reassign; ``image-registry`` and ``pull-secrets`` only offer
optional patch groups that ``apply-optionals`` can enable.
"""

from typing import Any

from kube_migration.migration.plugins.base import (
    BUILTIN_SOURCE,
    PluginMetadata,
    PluginResponse,
    TransformPlugin,
)
from kube_migration.migration.sanitize import SERVER_METADATA_FIELDS, is_controlled

WORKLOAD_POD_SPEC_PATHS: dict[str, tuple[str, ...]] = {
    "Pod": ("spec",),
    "Deployment": ("spec", "template", "spec"),
    "DeploymentConfig": ("spec", "template", "spec"),
    "StatefulSet": ("spec", "template", "spec"),
    "DaemonSet": ("spec", "template", "spec"),
    "ReplicaSet": ("spec", "template", "spec"),
    "ReplicationController": ("spec", "template", "spec"),
    "Job": ("spec", "template", "spec"),
    "CronJob": ("spec", "jobTemplate", "spec", "template", "spec"),
}

PVC_BIND_ANNOTATIONS = (
    "pv.kubernetes.io/bind-completed",
    "pv.kubernetes.io/bound-by-controller",
    "volume.beta.kubernetes.io/storage-provisioner",
    "volume.kubernetes.io/storage-provisioner",
    "volume.kubernetes.io/selected-node",
)

GENERATED_CONFIG_MAPS = frozenset({"kube-root-ca.crt", "openshift-service-ca.crt"})

REGISTRY_REPLACEMENT = "registry-replacement"
STRIP_PULL_SECRETS = "strip-pull-secrets"


def escape_pointer(token: str) -> str:
    """Escape one JSON Pointer reference token."""
    return token.replace("~", "~0").replace("/", "~1")


def pointer(*tokens: Any) -> str:
    return "".join(f"/{escape_pointer(str(token))}" for token in tokens)


def get_path(document: dict[str, Any], tokens: tuple[str, ...]) -> Any:
    current: Any = document
    for token in tokens:
        if not isinstance(current, dict) or token not in current:
            return None
        current = current[token]
    return current


def pod_spec_tokens(resource: dict[str, Any]) -> tuple[str, ...] | None:
    """Location of the pod spec inside a workload, if the kind has one."""
    tokens = WORKLOAD_POD_SPEC_PATHS.get(resource.get("kind", ""))
    if tokens is None or not isinstance(get_path(resource, tokens), dict):
        return None
    return tokens


class KubernetesPlugin(TransformPlugin):
    """Remove cluster-assigned fields and drop objects the destination regenerates."""

    metadata = PluginMetadata(name="kubernetes", version="v1", priority=0, source=BUILTIN_SOURCE)

    async def run(self, resource: dict[str, Any], extras: dict[str, str]) -> PluginResponse:
        if self._should_whiteout(resource):
            return PluginResponse(whiteout=True)

        patches: list[dict[str, Any]] = []
        metadata = resource.get("metadata") or {}
        for key in SERVER_METADATA_FIELDS:
            if key in metadata:
                patches.append({"op": "remove", "path": pointer("metadata", key)})
        if "status" in resource:
            patches.append({"op": "remove", "path": "/status"})

        kind = resource.get("kind")
        if kind == "Service":
            patches.extend(self._service_patches(resource))
        elif kind == "Pod" and "nodeName" in (resource.get("spec") or {}):
            patches.append({"op": "remove", "path": "/spec/nodeName"})
        elif kind == "PersistentVolumeClaim":
            patches.extend(self._claim_patches(resource))
        elif kind == "ServiceAccount":
            patches.extend(self._service_account_patches(resource))

        return PluginResponse(patches=patches)

    @staticmethod
    def _should_whiteout(resource: dict[str, Any]) -> bool:
        kind = resource.get("kind")
        if kind in ("Pod", "ReplicaSet", "Job") and is_controlled(resource):
            return True
        if kind == "Secret" and resource.get("type") == "kubernetes.io/service-account-token":
            return True
        if kind == "ConfigMap" and resource.get("metadata", {}).get("name") in GENERATED_CONFIG_MAPS:
            return True
        return False

    @staticmethod
    def _service_patches(service: dict[str, Any]) -> list[dict[str, Any]]:
        spec = service.get("spec") or {}
        patches = []
        if spec.get("clusterIP") and spec["clusterIP"] != "None":
            patches.append({"op": "remove", "path": "/spec/clusterIP"})
            if "clusterIPs" in spec:
                patches.append({"op": "remove", "path": "/spec/clusterIPs"})
        for index, port in enumerate(spec.get("ports") or []):
            if "nodePort" in port:
                patches.append({"op": "remove", "path": pointer("spec", "ports", index, "nodePort")})
        if "healthCheckNodePort" in spec:
            patches.append({"op": "remove", "path": "/spec/healthCheckNodePort"})
        return patches

    @staticmethod
    def _claim_patches(claim: dict[str, Any]) -> list[dict[str, Any]]:
        patches = []
        if "volumeName" in (claim.get("spec") or {}):
            patches.append({"op": "remove", "path": "/spec/volumeName"})
        annotations = claim.get("metadata", {}).get("annotations") or {}
        for key in PVC_BIND_ANNOTATIONS:
            if key in annotations:
                patches.append({"op": "remove", "path": pointer("metadata", "annotations", key)})
        return patches

    @staticmethod
    def _service_account_patches(account: dict[str, Any]) -> list[dict[str, Any]]:
        name = account.get("metadata", {}).get("name", "")
        generated = (f"{name}-token-", f"{name}-dockercfg-")
        patches = []
        for field_name in ("secrets", "imagePullSecrets"):
            refs = account.get(field_name) or []
            # Reverse order keeps the remaining indices valid
            for index in reversed(range(len(refs))):
                if str(refs[index].get("name", "")).startswith(generated):
                    patches.append({"op": "remove", "path": pointer(field_name, index)})
        return patches


class ImageRegistryPlugin(TransformPlugin):
    """Offer container image registry rewrites (``registry-replacement``).

    The flags file supplies ``registry-replacement: old=new[,old=new]``.
    """

    metadata = PluginMetadata(
        name="image-registry",
        version="v1",
        priority=10,
        kinds=sorted(WORKLOAD_POD_SPEC_PATHS),
        optional_fields=[
            {
                "name": REGISTRY_REPLACEMENT,
                "help": "Rewrite image registry prefixes (old=new, comma separated)",
                "example": "registry.old.example=registry.new.example",
            }
        ],
        source=BUILTIN_SOURCE,
    )

    async def run(self, resource: dict[str, Any], extras: dict[str, str]) -> PluginResponse:
        replacements = parse_replacements(extras.get(REGISTRY_REPLACEMENT, ""))
        tokens = pod_spec_tokens(resource)
        if not replacements or tokens is None:
            return PluginResponse()

        pod_spec = get_path(resource, tokens)
        operations = []
        for container_field in ("initContainers", "containers"):
            for index, container in enumerate(pod_spec.get(container_field) or []):
                image = container.get("image", "")
                rewritten = rewrite_image(image, replacements)
                if rewritten != image:
                    operations.append(
                        {
                            "op": "replace",
                            "path": pointer(*tokens, container_field, index, "image"),
                            "value": rewritten,
                        }
                    )

        if not operations:
            return PluginResponse()
        return PluginResponse(optional_patches={REGISTRY_REPLACEMENT: operations})


class PullSecretsPlugin(TransformPlugin):
    """Offer removal of ``imagePullSecrets`` (``strip-pull-secrets``)."""

    metadata = PluginMetadata(
        name="pull-secrets",
        version="v1",
        priority=20,
        kinds=sorted(WORKLOAD_POD_SPEC_PATHS) + ["ServiceAccount"],
        optional_fields=[
            {
                "name": STRIP_PULL_SECRETS,
                "help": "Remove imagePullSecrets from workloads and service accounts",
                "example": "",
            }
        ],
        source=BUILTIN_SOURCE,
    )

    async def run(self, resource: dict[str, Any], extras: dict[str, str]) -> PluginResponse:
        if resource.get("kind") == "ServiceAccount":
            tokens: tuple[str, ...] | None = ()
            holder = resource
        else:
            tokens = pod_spec_tokens(resource)
            holder = get_path(resource, tokens) if tokens is not None else None

        if tokens is None or not holder or "imagePullSecrets" not in holder:
            return PluginResponse()

        operation = {"op": "remove", "path": pointer(*tokens, "imagePullSecrets")}
        return PluginResponse(optional_patches={STRIP_PULL_SECRETS: [operation]})


def parse_replacements(value: str) -> list[tuple[str, str]]:
    """Parse ``old=new,old2=new2`` into ordered pairs (malformed entries ignored)."""
    pairs = []
    for entry in value.split(","):
        if "=" not in entry:
            continue
        old, new = entry.split("=", 1)
        if old.strip():
            pairs.append((old.strip(), new.strip()))
    return pairs


def rewrite_image(image: str, replacements: list[tuple[str, str]]) -> str:
    """Replace the first matching registry prefix of an image reference."""
    for old, new in replacements:
        if image == old or image.startswith(old.rstrip("/") + "/"):
            return new.rstrip("/") + image[len(old.rstrip("/")):]
    return image


BUILTIN_PLUGINS: tuple[type[TransformPlugin], ...] = (
    KubernetesPlugin,
    ImageRegistryPlugin,
    PullSecretsPlugin,
)


def builtin_plugins() -> list[TransformPlugin]:
    return [plugin_class() for plugin_class in BUILTIN_PLUGINS]
