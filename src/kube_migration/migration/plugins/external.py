"""External transform plugins.

An external plugin is any executable file in the plugin directory that
speaks a two-command JSON protocol:

- ``<exe> metadata`` prints ``{"name", "version", "priority"?, "kinds"?,
  "labels"?, "optional_fields"?}``; ``labels`` is a match-labels map a
  resource must carry for the plugin to run on it
- ``<exe> run`` reads ``{"resource": {...}, "extras": {...}}`` on stdin and
  prints ``{"whiteout": bool, "patches": [...], "optional_patches": {...}}``

Each call runs in a worker thread with a timeout so plugins never block
the event loop.
"""

import asyncio
import json
import os
import subprocess
from pathlib import Path
from typing import Any

from kube_migration.client.exceptions import PluginError
from kube_migration.migration.plugins.base import (
    DEFAULT_EXTERNAL_PRIORITY,
    EXTERNAL_SOURCE,
    PluginMetadata,
    PluginResponse,
    TransformPlugin,
)
from kube_migration.utils.logging import get_logger

logger = get_logger(__name__)


class ExternalPlugin(TransformPlugin):
    """A transform plugin backed by an executable."""

    def __init__(self, executable: Path, metadata: PluginMetadata, timeout: float = 30.0):
        self.executable = executable
        self.metadata = metadata
        self.timeout = timeout

    @classmethod
    def load(cls, executable: Path, timeout: float = 30.0) -> "ExternalPlugin":
        """Query an executable's metadata and build the plugin.

        Raises:
            PluginError: If the executable does not answer ``metadata`` correctly
        """
        output = _invoke(executable, "metadata", None, timeout, plugin=executable.name)
        try:
            data = json.loads(output)
            metadata = PluginMetadata(
                name=str(data["name"]),
                version=str(data.get("version", "v1")),
                priority=int(data.get("priority", DEFAULT_EXTERNAL_PRIORITY)),
                kinds=list(data.get("kinds") or []),
                labels=_match_labels(data.get("labels")),
                optional_fields=list(data.get("optional_fields") or []),
                source=EXTERNAL_SOURCE,
            )
        except (ValueError, KeyError, TypeError) as e:
            raise PluginError(f"Invalid metadata from {executable}: {e}", plugin=executable.name) from e
        return cls(executable, metadata, timeout=timeout)

    async def run(self, resource: dict[str, Any], extras: dict[str, str]) -> PluginResponse:
        payload = json.dumps({"resource": resource, "extras": extras})
        output = await asyncio.to_thread(
            _invoke, self.executable, "run", payload, self.timeout, self.name
        )
        try:
            return PluginResponse.from_dict(json.loads(output))
        except ValueError as e:
            raise PluginError(f"Invalid response: {e}", plugin=self.name) from e


def _match_labels(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError("'labels' must map label keys to values")
    return {str(key): str(label) for key, label in value.items()}


def _invoke(
    executable: Path, command: str, stdin: str | None, timeout: float, plugin: str
) -> str:
    try:
        result = subprocess.run(  # nosec B603
            [str(executable), command],
            input=stdin,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise PluginError(f"'{command}' timed out after {timeout}s", plugin=plugin) from e
    except OSError as e:
        raise PluginError(f"Cannot execute '{command}': {e}", plugin=plugin) from e

    if result.returncode != 0:
        stderr_snippet = (result.stderr or "").strip()[:500]
        raise PluginError(
            f"'{command}' exited with {result.returncode}: {stderr_snippet}", plugin=plugin
        )
    return result.stdout


def discover_plugins(plugin_dir: str | Path, timeout: float = 30.0) -> tuple[list[ExternalPlugin], dict[str, str]]:
    """Load every executable in a plugin directory.

    Returns:
        Loaded plugins and a map of file name to load error for the rest
    """
    directory = Path(plugin_dir)
    plugins: list[ExternalPlugin] = []
    errors: dict[str, str] = {}
    if not directory.is_dir():
        logger.debug("plugin_dir_missing", plugin_dir=str(directory))
        return plugins, errors

    for path in sorted(directory.iterdir()):
        if not path.is_file() or not os.access(path, os.X_OK):
            continue
        try:
            plugin = ExternalPlugin.load(path, timeout=timeout)
        except PluginError as e:
            logger.warning("plugin_load_failed", plugin=path.name, error=str(e))
            errors[path.name] = str(e)
            continue
        logger.info(
            "plugin_loaded",
            plugin=plugin.name,
            version=plugin.metadata.version,
            priority=plugin.priority,
        )
        plugins.append(plugin)
    return plugins, errors
