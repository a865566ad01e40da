"""Coverage for VersionProvider npm/cache behaviours."""
from __future__ import annotations

import json
from pathlib import Path
from subprocess import CompletedProcess

import pytest

from ghostctl.providers.registry import DistInfo, VersionProvider


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _npm_response(payload: object, returncode: int = 0) -> CompletedProcess[str]:
    return CompletedProcess(args=["npm"], returncode=returncode, stdout=json.dumps(payload), stderr="")


def test_list_remote_versions_skip_env_short_circuits(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """GHOSTCTL_SKIP_NPM bypasses cache lookups and npm calls."""
    provider = VersionProvider(cache_path=tmp_path / "remote.json")

    monkeypatch.setenv("GHOSTCTL_SKIP_NPM", "1")

    def _fail_cache(path: Path) -> list[str]:
        raise AssertionError("cache should not be consulted")

    def _fail_npm(package: str) -> list[str]:
        raise AssertionError("npm should not be invoked")

    monkeypatch.setattr(provider, "_from_cache", _fail_cache)
    monkeypatch.setattr(provider, "_from_npm", _fail_npm)

    assert provider.list_remote_versions("ghost") == []


def test_list_remote_versions_prefers_instance_cache(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The configured cache_path takes precedence over the environment cache."""
    local_cache = tmp_path / "cache" / "local.json"
    env_cache = tmp_path / "cache" / "env.json"
    _write_json(local_cache, ["5.2.0", "5.1.0"])
    _write_json(env_cache, ["4.48.0"])

    provider = VersionProvider(cache_path=local_cache)
    monkeypatch.delenv("GHOSTCTL_SKIP_NPM", raising=False)
    monkeypatch.setenv("GHOSTCTL_VERSIONS_CACHE", str(env_cache))

    assert provider.list_remote_versions("ghost") == ["5.2.0", "5.1.0"]


def test_list_remote_versions_env_cache_fallback(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An invalid cache falls back to GHOSTCTL_VERSIONS_CACHE."""
    local_cache = tmp_path / "cache" / "local.json"
    local_cache.parent.mkdir(parents=True, exist_ok=True)
    local_cache.write_text("{not-valid-json", encoding="utf-8")

    env_cache = tmp_path / "cache" / "env.json"
    _write_json(env_cache, ["4.48.0"])

    provider = VersionProvider(cache_path=local_cache)
    monkeypatch.delenv("GHOSTCTL_SKIP_NPM", raising=False)
    monkeypatch.setenv("GHOSTCTL_VERSIONS_CACHE", str(env_cache))

    assert provider.list_remote_versions("ghost") == ["4.48.0"]


def test_list_remote_versions_queries_npm_and_writes_cache(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """npm results are cached for later invocations."""
    cache_path = tmp_path / "cache" / "remote.json"
    provider = VersionProvider(cache_path=cache_path)
    monkeypatch.delenv("GHOSTCTL_SKIP_NPM", raising=False)
    monkeypatch.delenv("GHOSTCTL_VERSIONS_CACHE", raising=False)
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: object) -> CompletedProcess[str]:
        calls.append(args)
        return _npm_response(["5.0.0", "5.1.0"])

    monkeypatch.setattr("ghostctl.providers.registry.subprocess.run", fake_run)

    assert provider.list_remote_versions("ghost") == ["5.0.0", "5.1.0"]
    assert calls == [["npm", "view", "ghost", "versions", "--json"]]
    assert json.loads(cache_path.read_text(encoding="utf-8")) == ["5.0.0", "5.1.0"]


def test_npm_failures_degrade_to_empty(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Missing npm or a failing query yields no versions."""
    provider = VersionProvider(npm_bin="npm-missing")
    monkeypatch.delenv("GHOSTCTL_SKIP_NPM", raising=False)
    monkeypatch.delenv("GHOSTCTL_VERSIONS_CACHE", raising=False)

    def missing(args: list[str], **kwargs: object) -> CompletedProcess[str]:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("ghostctl.providers.registry.subprocess.run", missing)
    assert provider.list_remote_versions("ghost") == []

    monkeypatch.setattr(
        "ghostctl.providers.registry.subprocess.run",
        lambda args, **kwargs: _npm_response({"error": "E404"}, returncode=1),
    )
    assert provider.list_remote_versions("ghost") == []
    assert provider.dist_info("ghost", "5.0.0") is None


def test_dist_info_and_engines(monkeypatch: pytest.MonkeyPatch) -> None:
    """Release coordinates and engine ranges come from ``npm view``."""
    provider = VersionProvider()
    monkeypatch.delenv("GHOSTCTL_SKIP_NPM", raising=False)
    responses = {
        "dist": {"tarball": "https://registry.npmjs.org/ghost/-/ghost-5.0.0.tgz", "shasum": "abc"},
        "engines": {"node": "^14.17.0 || ^16.13.0", "cli": ">=1.18.0"},
    }

    def fake_run(args: list[str], **kwargs: object) -> CompletedProcess[str]:
        return _npm_response(responses[args[3]])

    monkeypatch.setattr("ghostctl.providers.registry.subprocess.run", fake_run)

    assert provider.dist_info("ghost", "5.0.0") == DistInfo(
        version="5.0.0",
        tarball="https://registry.npmjs.org/ghost/-/ghost-5.0.0.tgz",
        shasum="abc",
    )
    assert provider.engines("ghost", "5.0.0") == {"node": "^14.17.0 || ^16.13.0", "cli": ">=1.18.0"}


def test_refresh_cache_bypasses_existing_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """refresh_cache always asks npm and rewrites the cache file."""
    cache_path = tmp_path / "remote.json"
    _write_json(cache_path, ["4.0.0"])
    provider = VersionProvider(cache_path=cache_path)
    monkeypatch.setattr(
        "ghostctl.providers.registry.subprocess.run",
        lambda args, **kwargs: _npm_response(["5.0.0", "5.1.0"]),
    )

    assert provider.refresh_cache("ghost") == ["5.0.0", "5.1.0"]
    assert json.loads(cache_path.read_text(encoding="utf-8")) == ["5.0.0", "5.1.0"]
