"""Detect the Node.js runtime that will execute the managed application."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass

from .versioning import coerce_version

LOGGER = logging.getLogger(__name__)

NODE_VERSION_CHECK_ENV = "GHOSTCTL_NODE_VERSION_CHECK"


@dataclass(frozen=True, slots=True)
class NodeVersionInfo:
    """Parsed Node version details."""

    raw: str
    version: str

    @property
    def major(self) -> int:
        """Return the major component of the Node version."""
        return int(self.version.split(".", 1)[0])


def detect_node_version(node_bin: str = "node") -> NodeVersionInfo | None:
    """Return the Node version reported by *node_bin*, or ``None``."""
    try:
        result = subprocess.run(  # noqa: S603,S607
            [node_bin, "--version"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        LOGGER.debug("Node binary %s not found", node_bin)
        return None
    output = (result.stdout or result.stderr or "").strip()
    if result.returncode != 0 or not output:
        return None
    version = coerce_version(output)
    if version is None:
        return None
    return NodeVersionInfo(raw=output, version=version)


def node_version_check_enabled(env: Mapping[str, str] | None = None) -> bool:
    """Return False when the engine check was disabled via the environment."""
    values = os.environ if env is None else env
    return values.get(NODE_VERSION_CHECK_ENV, "").strip().lower() != "false"


__all__ = [
    "NODE_VERSION_CHECK_ENV",
    "NodeVersionInfo",
    "detect_node_version",
    "node_version_check_enabled",
]
