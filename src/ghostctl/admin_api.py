"""Client for the Ghost admin HTTP API.

The admin API moved several times across Ghost majors, so every call takes the
version the instance is running and resolves the matching base path first.
Authentication differs as well: 1.x uses an OAuth password grant, later
releases use a session cookie.
"""
from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType

import httpx

from .errors import SystemEnvironmentError, ValidationError
from .versioning import major

LOGGER = logging.getLogger(__name__)

BASE_PATHS: dict[int, str] = {
    1: "/ghost/api/v0.1",
    2: "/ghost/api/v2/admin",
    3: "/ghost/api/v3/admin",
    4: "/ghost/api/v4/admin",
    5: "/ghost/api/admin",
}

_TAG_RE = re.compile(r"<[^>]+>")


class AdminApiError(SystemEnvironmentError):
    """Raised when the admin API rejects or cannot serve a request."""


@dataclass(frozen=True, slots=True)
class AdminCredentials:
    """Staff user credentials for the admin API."""

    username: str
    password: str


@dataclass(frozen=True, slots=True)
class ThemeIssue:
    """A single failed theme validation rule."""

    file: str
    rule: str
    fatal: bool = False


@dataclass(frozen=True, slots=True)
class CompatibilityReport:
    """Theme validation results against a target Ghost major."""

    error_count: int = 0
    warning_count: int = 0
    has_fatal_errors: bool = False
    errors: tuple[ThemeIssue, ...] = field(default_factory=tuple)
    warnings: tuple[ThemeIssue, ...] = field(default_factory=tuple)

    @property
    def clean(self) -> bool:
        """Return True when the theme raised no errors or warnings."""
        return not self.error_count and not self.warning_count and not self.has_fatal_errors

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> CompatibilityReport:
        """Build a report from a gscan-formatted JSON payload."""
        results = payload.get("results", payload)
        if not isinstance(results, Mapping):
            raise AdminApiError("Theme compatibility report is malformed.")
        errors = _issues(results.get("error"))
        warnings = _issues(results.get("warning"))
        error_count = _count(results.get("error"), len(errors))
        warning_count = _count(results.get("warning"), len(warnings))
        fatal = bool(results.get("hasFatalErrors")) or any(issue.fatal for issue in errors)
        return cls(
            error_count=error_count,
            warning_count=warning_count,
            has_fatal_errors=fatal,
            errors=tuple(errors),
            warnings=tuple(warnings),
        )


def _count(section: object, fallback: int) -> int:
    if isinstance(section, Mapping):
        entries = section.get("all")
        if isinstance(entries, list):
            return len(entries)
    return fallback


def _issues(section: object) -> list[ThemeIssue]:
    if not isinstance(section, Mapping):
        return []
    by_files = section.get("byFiles")
    if not isinstance(by_files, Mapping):
        return []
    issues: list[ThemeIssue] = []
    for file_name, entries in by_files.items():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            rule = _TAG_RE.sub("", str(entry.get("rule", ""))).strip()
            issues.append(ThemeIssue(file=str(file_name), rule=rule, fatal=bool(entry.get("fatal"))))
    return issues


@dataclass(frozen=True, slots=True)
class ExportOwner:
    """Owner account and blog title recorded in a content export."""

    name: str | None = None
    email: str | None = None
    blog_title: str | None = None


def _find(rows: object, **match: object) -> Mapping[str, object]:
    if isinstance(rows, list):
        for row in rows:
            if isinstance(row, Mapping) and all(row.get(key) == value for key, value in match.items()):
                return row
    return {}


def _text(value: object) -> str | None:
    return str(value) if value else None


def read_export_owner(export_file: Path) -> ExportOwner:
    """Return the owner details needed to set up a blog from *export_file*."""
    try:
        content = json.loads(export_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValidationError("Import file not found or is not valid JSON") from exc
    if not isinstance(content, Mapping):
        raise ValidationError("Import file not found or is not valid JSON")

    # Ghost 1.x nests the export under db[0].
    db = content.get("db")
    holder = db[0] if isinstance(db, list) and db and isinstance(db[0], Mapping) else content
    data = holder.get("data")
    if not isinstance(data, Mapping):
        return ExportOwner()

    role_id = _find(data.get("roles"), name="Owner").get("id")
    user_id = _find(data.get("roles_users"), role_id=role_id).get("user_id") if role_id else None
    user = _find(data.get("users"), id=user_id) if user_id else {}
    title = _find(data.get("settings"), key="title").get("value")
    return ExportOwner(name=_text(user.get("name")), email=_text(user.get("email")), blog_title=_text(title))


class AdminApiClient:
    """Synchronous admin API client bound to one instance URL."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        theme_check_path: str = "/themes/active/check/",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Create a client for the blog served at *url*."""
        self.url = url.rstrip("/")
        self.theme_check_path = theme_check_path
        self._client = httpx.Client(timeout=timeout, transport=transport, follow_redirects=True)

    def __enter__(self) -> AdminApiClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        self._client.close()

    def base_url(self, version: str) -> str:
        """Return the admin API root for an instance running *version*."""
        base_path = BASE_PATHS.get(major(version))
        if base_path is None:
            raise AdminApiError(f"Unsupported version: {version}")
        return f"{self.url}{base_path}"

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def is_setup(self, version: str) -> bool:
        """Return True when the blog owner account has been created."""
        payload = self._json("GET", f"{self.base_url(version)}/authentication/setup/")
        setup = payload.get("setup") if isinstance(payload, Mapping) else None
        if isinstance(setup, list) and setup and isinstance(setup[0], Mapping):
            return bool(setup[0].get("status", False))
        return False

    def setup(self, version: str, *, name: str, email: str, password: str, blog_title: str) -> None:
        """Create the blog owner account."""
        body = {"setup": [{"name": name, "email": email, "password": password, "blogTitle": blog_title}]}
        self._request("POST", f"{self.base_url(version)}/authentication/setup/", json=body)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def authenticate(self, version: str, credentials: AdminCredentials) -> dict[str, str]:
        """Log in and return the headers to send with authenticated requests."""
        base = self.base_url(version)
        try:
            if major(version) == 1:
                return self._password_grant(base, credentials)
            return self._session(base, credentials)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 404:
                raise AdminApiError("There is no user with that email address.") from exc
            if status == 422:
                raise AdminApiError("Your password is incorrect.") from exc
            raise AdminApiError(f"Authentication failed (HTTP {status}).") from exc

    def _password_grant(self, base: str, credentials: AdminCredentials) -> dict[str, str]:
        config = self._json("GET", f"{base}/configuration/", raise_http=True)
        entries = config.get("configuration") if isinstance(config, Mapping) else None
        client = entries[0] if isinstance(entries, list) and entries else {}
        if not isinstance(client, Mapping):
            client = {}
        token = self._json(
            "POST",
            f"{base}/authentication/token/",
            raise_http=True,
            data={
                "grant_type": "password",
                "client_id": str(client.get("clientId", "")),
                "client_secret": str(client.get("clientSecret", "")),
                "username": credentials.username,
                "password": credentials.password,
            },
        )
        access_token = token.get("access_token") if isinstance(token, Mapping) else None
        if not access_token:
            raise AdminApiError("Ghost did not return an access token.")
        return {"Authorization": f"Bearer {access_token}"}

    def _session(self, base: str, credentials: AdminCredentials) -> dict[str, str]:
        headers = {"Origin": self.url}
        # The session cookie is kept in the client's cookie jar.
        self._request(
            "POST",
            f"{base}/session/",
            raise_http=True,
            headers=headers,
            json={"username": credentials.username, "password": credentials.password},
        )
        return headers

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------
    def export_content(self, version: str, credentials: AdminCredentials, output_file: Path) -> Path:
        """Download the content export to *output_file*."""
        headers = self.authenticate(version, credentials)
        url = f"{self.base_url(version)}/db/"
        try:
            with self._client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                with output_file.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
        except httpx.HTTPError as exc:
            output_file.unlink(missing_ok=True)
            raise AdminApiError(f"Failed to download content export: {exc}") from exc
        return output_file

    def import_content(self, version: str, credentials: AdminCredentials, export_file: Path) -> None:
        """Upload a content export file."""
        headers = self.authenticate(version, credentials)
        with export_file.open("rb") as handle:
            self._request(
                "POST",
                f"{self.base_url(version)}/db/",
                headers=headers,
                files={"importfile": (export_file.name, handle, "application/json")},
            )

    def theme_report(
        self,
        version: str,
        target_version: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> CompatibilityReport:
        """Validate the active theme against *target_version*'s ruleset."""
        payload = self._json(
            "GET",
            f"{self.base_url(version)}{self.theme_check_path}",
            headers=dict(headers or {}),
            params={"checkVersion": f"v{major(target_version)}"},
        )
        if not isinstance(payload, Mapping):
            raise AdminApiError("Theme compatibility report is malformed.")
        return CompatibilityReport.from_payload(payload)

    # ------------------------------------------------------------------
    def _request(self, method: str, url: str, *, raise_http: bool = False, **kwargs: object) -> httpx.Response:
        LOGGER.debug("%s %s", method, url)
        try:
            response = self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            if raise_http:
                raise
            raise AdminApiError(
                f"Ghost responded with HTTP {exc.response.status_code} for {url}."
            ) from exc
        except httpx.HTTPError as exc:
            raise AdminApiError(f"Could not reach Ghost at {self.url}: {exc}") from exc
        return response

    def _json(self, method: str, url: str, *, raise_http: bool = False, **kwargs: object) -> object:
        response = self._request(method, url, raise_http=raise_http, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise AdminApiError(f"Ghost returned invalid JSON for {url}.") from exc


__all__ = [
    "AdminApiClient",
    "AdminApiError",
    "AdminCredentials",
    "BASE_PATHS",
    "CompatibilityReport",
    "ExportOwner",
    "ThemeIssue",
    "read_export_owner",
]
