"""npm registry lookups for Ghost releases."""
from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SKIP_NPM_ENV = "GHOSTCTL_SKIP_NPM"
VERSIONS_CACHE_ENV = "GHOSTCTL_VERSIONS_CACHE"


@dataclass(frozen=True, slots=True)
class DistInfo:
    """Download coordinates of a published release."""

    version: str
    tarball: str
    shasum: str | None = None


class VersionProvider:
    """Query published versions of an npm package, with JSON cache fallbacks."""

    def __init__(self, cache_path: Path | None = None, *, npm_bin: str = "npm") -> None:
        """Configure the optional cache file and the npm binary."""
        self.cache_path = cache_path.expanduser() if cache_path else None
        self.npm_bin = npm_bin

    def list_remote_versions(self, package: str) -> list[str]:
        """Return published versions of *package*, oldest first as npm reports them."""
        if os.environ.get(SKIP_NPM_ENV):
            return []

        if self.cache_path is not None:
            cached = self._from_cache(self.cache_path)
            if cached:
                return cached

        env_cache = os.environ.get(VERSIONS_CACHE_ENV)
        if env_cache:
            cached = self._from_cache(Path(env_cache))
            if cached:
                return cached

        versions = self._from_npm(package)
        if versions:
            self._write_cache(versions)
        return versions

    def refresh_cache(self, package: str) -> list[str]:
        """Query npm and rewrite the cache file."""
        versions = self._from_npm(package)
        if versions:
            self._write_cache(versions)
        return versions

    def dist_info(self, package: str, version: str) -> DistInfo | None:
        """Return the tarball URL and shasum of ``package@version``."""
        payload = self._npm_view(f"{package}@{version}", "dist")
        if not isinstance(payload, Mapping):
            return None
        tarball = payload.get("tarball")
        if not isinstance(tarball, str) or not tarball:
            return None
        shasum = payload.get("shasum")
        return DistInfo(
            version=version,
            tarball=tarball,
            shasum=shasum if isinstance(shasum, str) else None,
        )

    def engines(self, package: str, version: str) -> dict[str, str]:
        """Return the ``engines`` declared by ``package@version``."""
        if os.environ.get(SKIP_NPM_ENV):
            return {}
        payload = self._npm_view(f"{package}@{version}", "engines")
        if not isinstance(payload, Mapping):
            return {}
        return {str(key): str(value) for key, value in payload.items()}

    # ------------------------------------------------------------------
    def _from_cache(self, path: Path) -> list[str]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return []
        if not isinstance(data, list):
            return []
        return [str(item) for item in data]

    def _from_npm(self, package: str) -> list[str]:
        payload = self._npm_view(package, "versions")
        if isinstance(payload, str):
            return [payload]
        if not isinstance(payload, list):
            return []
        return [str(item) for item in payload]

    def _npm_view(self, spec: str, field: str) -> object | None:
        try:
            result = subprocess.run(  # noqa: S603,S607
                [self.npm_bin, "view", spec, field, "--json"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            LOGGER.debug("npm binary %s not found", self.npm_bin)
            return None
        if result.returncode != 0:
            LOGGER.debug("npm view %s %s failed: %s", spec, field, (result.stderr or "").strip())
            return None
        try:
            return json.loads(result.stdout or "null")
        except json.JSONDecodeError:
            return None

    def _write_cache(self, versions: list[str]) -> None:
        if self.cache_path is None:
            return
        with suppress(OSError):
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(versions), encoding="utf-8")


__all__ = ["DistInfo", "SKIP_NPM_ENV", "VERSIONS_CACHE_ENV", "VersionProvider"]
