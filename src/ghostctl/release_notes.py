"""Fetch release notes for a Ghost version from GitHub."""
from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

LOGGER = logging.getLogger(__name__)


class ReleaseNotesUnavailable(RuntimeError):
    """Raised when release notes cannot be fetched."""


def fetch_release_notes(
    version: str,
    *,
    url: str,
    timeout: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> str | None:
    """Return the release notes body for *version*, or ``None`` if unpublished."""
    try:
        with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = client.get(url, headers={"Accept": "application/vnd.github+json"})
            response.raise_for_status()
            releases = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise ReleaseNotesUnavailable(f"Unable to fetch release notes: {exc}") from exc

    if not isinstance(releases, list):
        raise ReleaseNotesUnavailable("Unable to fetch release notes: unexpected response.")

    tags = {version, f"v{version}"}
    for release in releases:
        if isinstance(release, Mapping) and release.get("tag_name") in tags:
            body = release.get("body")
            return str(body) if body else None
    LOGGER.debug("No release notes published for %s", version)
    return None


__all__ = ["ReleaseNotesUnavailable", "fetch_release_notes"]
