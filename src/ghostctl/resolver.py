"""Decide which Ghost version an install or update should target.

Resolution returns either a concrete version string or ``None`` meaning the
instance is already up to date. All failures happen before anything on disk
changes, so none of them are rollback-eligible.
"""
from __future__ import annotations

import json
import logging
import zipfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import SystemEnvironmentError, ValidationError
from .versioning import coerce_version, is_valid, major, parse_version, satisfies

LOGGER = logging.getLogger(__name__)

CHANNELS = ("stable", "next")
CLI_ENGINE_KEY = "cli"


@dataclass(frozen=True, slots=True)
class ResolveOptions:
    """Flags that influence version resolution."""

    v1: bool = False
    force: bool = False
    zip: bool = False
    channel: str = "stable"
    min_release: str = "1.0.0"


@dataclass(frozen=True, slots=True)
class VersionCatalog:
    """Published versions, newest first, with the newest release of each major."""

    all: tuple[str, ...] = ()
    latest_major: dict[int, str] = field(default_factory=dict)

    @property
    def latest(self) -> str | None:
        """Return the newest published version."""
        return self.all[0] if self.all else None

    @classmethod
    def from_versions(
        cls,
        versions: Iterable[str],
        *,
        min_release: str = "1.0.0",
        include_prerelease: bool = False,
    ) -> VersionCatalog:
        """Filter and sort raw registry versions."""
        floor = parse_version(min_release)
        parsed = []
        for value in versions:
            if not is_valid(value):
                continue
            version = parse_version(value)
            if version.prerelease and not include_prerelease:
                continue
            if version < floor:
                continue
            parsed.append(version)
        parsed.sort(reverse=True)
        latest_major: dict[int, str] = {}
        for version in parsed:
            latest_major.setdefault(version.major, str(version))
        return cls(all=tuple(str(version) for version in parsed), latest_major=latest_major)


def resolve_version(
    catalog: VersionCatalog,
    requested: str | None,
    active: str | None,
    options: ResolveOptions | None = None,
) -> str | None:
    """Return the version to install, or ``None`` when already up to date."""
    opts = options or ResolveOptions()
    if opts.channel not in CHANNELS:
        raise ValidationError(
            f"Unknown release channel '{opts.channel}'.",
            help=f"Use one of: {', '.join(CHANNELS)}.",
        )
    if not catalog.all and not opts.zip:
        raise SystemEnvironmentError(
            "Unable to load Ghost versions from the npm registry.",
            help="Check network access to registry.npmjs.org and that npm is installed.",
        )

    if requested:
        target = check_custom_version(requested, catalog, active, opts)
    else:
        target = _default_target(catalog, active, opts)
        if target is None:
            return None

    if not active:
        return target
    return check_active_version(active, target, catalog, opts)


def _default_target(catalog: VersionCatalog, active: str | None, opts: ResolveOptions) -> str | None:
    if opts.v1:
        return catalog.latest_major.get(1)
    if not active:
        return catalog.latest
    active_major = major(active)
    latest_of_line = catalog.latest_major.get(active_major)
    if latest_of_line and parse_version(latest_of_line) > parse_version(active):
        # Finish the current major line before offering the next one.
        return latest_of_line
    next_major = catalog.latest_major.get(active_major + 1)
    return next_major or catalog.latest


def check_custom_version(
    requested: str,
    catalog: VersionCatalog,
    active: str | None,
    options: ResolveOptions,
) -> str:
    """Validate an explicitly requested version."""
    coerced = coerce_version(requested)
    if coerced is None:
        raise ValidationError(f"Invalid custom version specified: {requested}")
    if parse_version(coerced) < parse_version(options.min_release):
        raise ValidationError(
            f"ghostctl cannot install versions of Ghost less than {options.min_release}"
        )
    if not options.zip and coerced not in catalog.all:
        raise ValidationError(f"Version {coerced} does not exist")
    if not options.zip and options.v1 and major(coerced) > 1:
        raise ValidationError(
            "The --v1 flag was provided, but the custom version specified was v2 or greater",
            help="Either remove the --v1 flag, or don't specify a custom version",
        )
    if active and parse_version(coerced) < parse_version(active):
        label = "Version in zip file" if options.zip else "The custom version specified"
        raise ValidationError(
            f"{label}: {requested}, is less than the current active version: {active}"
        )
    return coerced


def check_active_version(
    active: str,
    target: str,
    catalog: VersionCatalog,
    options: ResolveOptions,
) -> str | None:
    """Apply the rules that depend on the currently installed version."""
    active_major = major(active)
    if options.v1 and active_major > 1:
        raise ValidationError(
            "The --v1 flag was provided, but the current version of Ghost is v2 or greater",
            help="Re-run the command without the --v1 flag",
        )

    if parse_version(target) <= parse_version(active) and not options.force:
        return None

    target_major = major(target)
    if target_major > active_major and not (options.zip and options.force):
        latest_of_line = catalog.latest_major.get(active_major)
        if latest_of_line and parse_version(active) != parse_version(latest_of_line):
            raise ValidationError(
                f"You are trying to update to Ghost v{target_major}, but your blog is not on "
                f"the latest Ghost {active_major}.0 version ({latest_of_line}).",
                help=f"Migrate to the latest {active_major}.x release first: "
                f"run 'ghostctl update {latest_of_line}'.",
            )
    return target


def read_zip_manifest(zip_path: Path) -> dict[str, object]:
    """Return the ``package.json`` manifest inside a release archive."""
    if not zip_path.is_file() or zip_path.suffix != ".zip":
        raise SystemEnvironmentError("Zip file could not be found.")
    try:
        with zipfile.ZipFile(zip_path) as archive:
            names = set(archive.namelist())
            member = "package.json" if "package.json" in names else "package/package.json"
            manifest = json.loads(archive.read(member).decode("utf-8"))
    except (KeyError, OSError, ValueError, zipfile.BadZipFile) as exc:
        raise SystemEnvironmentError("Zip file does not contain a valid package.json.") from exc
    if not isinstance(manifest, dict):
        raise SystemEnvironmentError("Zip file does not contain a valid package.json.")
    return manifest


def check_engines(
    engines: Mapping[str, object],
    *,
    node_version: str | None,
    cli_version: str,
    node_check: bool = True,
    source: str = "Ghost release",
) -> None:
    """Reject releases whose ``engines`` exclude the local Node or ghostctl version."""
    node_range = engines.get("node")
    if node_check and node_range and node_version and not satisfies(node_version, str(node_range)):
        raise SystemEnvironmentError(
            f"{source} is incompatible with the current Node version.",
            help=f"Required: {node_range}, current: v{node_version}",
        )
    cli_range = engines.get(CLI_ENGINE_KEY)
    if cli_range and not satisfies(cli_version, str(cli_range), include_prerelease=True):
        raise SystemEnvironmentError(
            f"{source} is incompatible with this version of ghostctl.",
            help=f"Required: v{cli_range}, current: v{cli_version}",
            suggestion="pip install --upgrade ghostctl",
        )


def version_from_zip(
    zip_path: Path,
    active: str | None,
    catalog: VersionCatalog,
    options: ResolveOptions,
    *,
    package_name: str = "ghost",
    node_version: str | None,
    cli_version: str,
    node_check: bool = True,
) -> str | None:
    """Resolve the target version from a local release archive."""
    manifest = read_zip_manifest(zip_path)
    if manifest.get("name") != package_name:
        raise SystemEnvironmentError("Zip file does not contain a Ghost release.")

    version = str(manifest.get("version", ""))
    if not is_valid(version) or parse_version(version) < parse_version(options.min_release):
        raise SystemEnvironmentError(
            f"Zip file contains a version of Ghost older than {options.min_release}."
        )

    engines = manifest.get("engines")
    if isinstance(engines, Mapping):
        check_engines(
            engines,
            node_version=node_version,
            cli_version=cli_version,
            node_check=node_check,
            source="Zip file contains a Ghost version that",
        )

    zip_options = ResolveOptions(
        v1=options.v1,
        force=options.force,
        zip=True,
        channel=options.channel,
        min_release=options.min_release,
    )
    return resolve_version(catalog, version, active, zip_options)


__all__ = [
    "CHANNELS",
    "ResolveOptions",
    "VersionCatalog",
    "check_active_version",
    "check_custom_version",
    "check_engines",
    "read_zip_manifest",
    "resolve_version",
    "version_from_zip",
]
