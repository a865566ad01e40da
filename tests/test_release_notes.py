"""Release notes lookup."""
from __future__ import annotations

import httpx
import pytest

from ghostctl.release_notes import ReleaseNotesUnavailable, fetch_release_notes

URL = "https://api.github.com/repos/TryGhost/Ghost/releases"


def _transport(response: httpx.Response) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: response)


def _releases(payload: object) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(200, json=payload))


def test_returns_body_for_tagged_release() -> None:
    """Both bare and ``v``-prefixed tags match."""
    releases = [
        {"tag_name": "v5.3.0", "body": "newer"},
        {"tag_name": "v5.2.0", "body": "## Highlights"},
    ]

    notes = fetch_release_notes("5.2.0", url=URL, transport=_releases(releases))

    assert notes == "## Highlights"


def test_unpublished_release_returns_none() -> None:
    """Missing releases and empty bodies are not errors."""
    releases = [{"tag_name": "5.1.0", "body": ""}]
    transport = _releases(releases)

    assert fetch_release_notes("5.1.0", url=URL, transport=transport) is None
    assert fetch_release_notes("5.0.0", url=URL, transport=transport) is None


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503),
        httpx.Response(200, content=b"<html>"),
        httpx.Response(200, json={"message": "API rate limit exceeded"}),
    ],
)
def test_unavailable_notes(response: httpx.Response) -> None:
    """HTTP errors and unexpected payloads raise ReleaseNotesUnavailable."""
    with pytest.raises(ReleaseNotesUnavailable, match="Unable to fetch release notes"):
        fetch_release_notes("5.2.0", url=URL, transport=_transport(response))
