"""Download and unpack Ghost releases into version directories."""
from __future__ import annotations

import hashlib
import io
import logging
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import httpx

from ..errors import FilesystemError, ProcessError, SystemEnvironmentError
from ..runner import CommandRunner
from .registry import VersionProvider

LOGGER = logging.getLogger(__name__)

ARCHIVE_PREFIX = "package/"


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a fetch request."""

    version: str
    path: Path
    skipped: bool
    source: str

    @property
    def message(self) -> str:
        """Return a one-line summary suitable for step details."""
        if self.skipped:
            return "Version already installed"
        return f"Installed {self.version} from {self.source}"


class ReleaseFetcher:
    """Place a complete release at a version's install path.

    The release is assembled in a staging directory next to the target and is
    only moved into place once download, unpacking and dependency installation
    have all succeeded, so a version directory never looks complete when it is
    not.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner,
        provider: VersionProvider,
        package_name: str = "ghost",
        yarn_bin: str = "yarn",
        npm_bin: str = "npm",
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialise the fetcher with its collaborators."""
        self.runner = runner
        self.provider = provider
        self.package_name = package_name
        self.yarn_bin = yarn_bin
        self.npm_bin = npm_bin
        self.timeout = timeout
        self._client = client

    def fetch(
        self,
        version: str,
        install_path: Path,
        *,
        force: bool = False,
        zip_path: Path | None = None,
    ) -> FetchResult:
        """Ensure *version* is unpacked at *install_path*."""
        source = str(zip_path) if zip_path else "registry"
        if install_path.exists():
            if not force:
                return FetchResult(version=version, path=install_path, skipped=True, source=source)
            LOGGER.debug("Removing existing install at %s", install_path)
            try:
                shutil.rmtree(install_path)
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to remove the existing install at {install_path}: {exc}",
                    help=f"Check the permissions of {install_path.parent}.",
                ) from exc

        try:
            install_path.parent.mkdir(parents=True, exist_ok=True)
            staging_dir = Path(
                tempfile.mkdtemp(prefix=f".ghostctl-fetch-{version}-", dir=str(install_path.parent))
            )
        except OSError as exc:
            raise FilesystemError(
                f"Unable to create a staging directory in {install_path.parent}: {exc}",
                help=f"Check the permissions of {install_path.parent}.",
            ) from exc
        staging_to_cleanup: Path | None = staging_dir
        try:
            if zip_path is not None:
                self._unpack_zip(zip_path, staging_dir)
            else:
                self._unpack_tarball(self._download(version), staging_dir)
            self._install_dependencies(staging_dir)
            try:
                shutil.move(str(staging_dir), str(install_path))
            except OSError as exc:
                raise FilesystemError(
                    f"Unable to move the release into {install_path}: {exc}",
                    help=f"Check the permissions of {install_path.parent}.",
                ) from exc
            staging_to_cleanup = None
        finally:
            if staging_to_cleanup and staging_to_cleanup.exists():
                shutil.rmtree(staging_to_cleanup, ignore_errors=True)

        return FetchResult(version=version, path=install_path, skipped=False, source=source)

    # ------------------------------------------------------------------
    def _download(self, version: str) -> bytes:
        dist = self.provider.dist_info(self.package_name, version)
        if dist is None:
            raise ProcessError("Ghost download information could not be read correctly.")

        try:
            if self._client is not None:
                response = self._client.get(dist.tarball)
            else:
                with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                    response = client.get(dist.tarball)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProcessError(f"Failed to download {dist.tarball}: {exc}") from exc

        data = response.content
        if dist.shasum and hashlib.sha1(data).hexdigest() != dist.shasum:  # noqa: S324
            raise ProcessError(
                "Ghost download integrity compromised. "
                "Cancelling install because of potential security issues."
            )
        return data

    def _unpack_tarball(self, data: bytes, destination: Path) -> None:
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
                for member in archive.getmembers():
                    relative = _strip_prefix(member.name)
                    if relative is None or not (member.isfile() or member.isdir()):
                        continue
                    target = _safe_target(destination, relative)
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    extracted = archive.extractfile(member)
                    if extracted is None:
                        continue
                    with extracted, target.open("wb") as handle:
                        shutil.copyfileobj(extracted, handle)
                    target.chmod(member.mode & 0o755 or 0o644)
        except tarfile.TarError as exc:
            raise ProcessError(f"Failed to unpack Ghost release: {exc}") from exc

    def _unpack_zip(self, zip_path: Path, destination: Path) -> None:
        try:
            with zipfile.ZipFile(zip_path) as archive:
                for info in archive.infolist():
                    relative = _strip_prefix(info.filename)
                    if relative is None:
                        continue
                    target = _safe_target(destination, relative)
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(info) as source, target.open("wb") as handle:
                        shutil.copyfileobj(source, handle)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ProcessError(f"Failed to unpack {zip_path}: {exc}") from exc

    def _install_dependencies(self, cwd: Path) -> None:
        env = {"NODE_ENV": "production"}
        try:
            self.runner.run(
                [self.yarn_bin, "install", "--production", "--no-emoji", "--no-progress"],
                cwd=cwd,
                env=env,
            )
        except SystemEnvironmentError:
            LOGGER.debug("%s unavailable, falling back to %s", self.yarn_bin, self.npm_bin)
            self.runner.run([self.npm_bin, "install", "--omit=dev"], cwd=cwd, env=env)


def _strip_prefix(name: str) -> str | None:
    cleaned = name
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    if cleaned.startswith(ARCHIVE_PREFIX):
        cleaned = cleaned[len(ARCHIVE_PREFIX) :]
    cleaned = cleaned.rstrip("/")
    return cleaned or None


def _safe_target(root: Path, relative: str) -> Path:
    pure = PurePosixPath(relative)
    if pure.is_absolute() or ".." in pure.parts:
        raise ProcessError(f"Refusing to unpack unsafe archive entry '{relative}'.")
    return root.joinpath(*pure.parts)


__all__ = ["FetchResult", "ReleaseFetcher"]
