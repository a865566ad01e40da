"""Persisted metadata for a single Ghost instance.

Each instance directory carries a ``.ghostctl.yml`` file recording the installed
version, the version it replaced, the ghostctl version that last touched it and
how its process is managed. Writes are atomic (temp file + ``os.replace``);
callers use :meth:`InstanceStore.mutate` to load, change in memory and persist in
one step.

No locking is performed. Running two mutating commands against the same
instance directory at once is unsupported.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage ghostctl state. Install with `pip install ghostctl`."
    ) from exc

from ..errors import FilesystemError

METADATA_FILE = ".ghostctl.yml"
SCHEMA_VERSION = 1
PROCESS_MANAGERS = ("local", "systemd")


class InstanceStateError(FilesystemError):
    """Raised when instance metadata cannot be read or written."""


@dataclass(slots=True)
class InstanceState:
    """Mutable view of an instance's metadata."""

    name: str
    version: str | None = None
    previous_version: str | None = None
    cli_version: str | None = None
    process_manager: str = "local"
    url: str = "http://localhost:2368"
    host: str = "localhost"
    port: int = 2368
    node_version: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        return {
            "schema_version": SCHEMA_VERSION,
            "name": self.name,
            "version": self.version,
            "previous_version": self.previous_version,
            "cli_version": self.cli_version,
            "process_manager": self.process_manager,
            "url": self.url,
            "host": self.host,
            "port": self.port,
            "node_version": self.node_version,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object], *, default_name: str) -> InstanceState:
        """Build state from a parsed metadata mapping."""
        schema = data.get("schema_version", SCHEMA_VERSION)
        if schema != SCHEMA_VERSION:
            raise InstanceStateError(
                f"Unsupported instance metadata schema version: {schema!r}.",
                help="Upgrade ghostctl to manage this instance.",
            )
        process_manager = str(data.get("process_manager") or "local")
        if process_manager not in PROCESS_MANAGERS:
            raise InstanceStateError(
                f"Unknown process manager '{process_manager}'.",
                help=f"Supported process managers: {', '.join(PROCESS_MANAGERS)}.",
            )
        port = data.get("port", 2368)
        if isinstance(port, bool) or not isinstance(port, int):
            raise InstanceStateError(f"Instance port must be an integer, got {port!r}.")
        return cls(
            name=str(data.get("name") or default_name),
            version=_optional_str(data.get("version")),
            previous_version=_optional_str(data.get("previous_version")),
            cli_version=_optional_str(data.get("cli_version")),
            process_manager=process_manager,
            url=str(data.get("url") or f"http://localhost:{port}"),
            host=str(data.get("host") or "localhost"),
            port=port,
            node_version=_optional_str(data.get("node_version")),
        )


@dataclass(frozen=True)
class InstanceStore:
    """Read and write the metadata file of the instance rooted at *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser().absolute())

    @property
    def path(self) -> Path:
        """Return the metadata file path."""
        return self.root / METADATA_FILE

    @property
    def versions_dir(self) -> Path:
        """Return the directory holding one subdirectory per installed version."""
        return self.root / "versions"

    @property
    def current_link(self) -> Path:
        """Return the symlink designating the active version."""
        return self.root / "current"

    def version_dir(self, version: str) -> Path:
        """Return the install path for *version*."""
        return self.versions_dir / version

    def exists(self) -> bool:
        """Return True when the metadata file is present."""
        return self.path.exists()

    def load(self) -> InstanceState:
        """Load the instance metadata."""
        if not self.path.exists():
            raise InstanceStateError(
                f"No Ghost instance found in {self.root}.",
                help="Run ghostctl from an instance directory or pass --dir.",
            )
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise InstanceStateError(f"Failed to read instance metadata {self.path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise InstanceStateError(f"Instance metadata {self.path} must contain a mapping.")
        return InstanceState.from_mapping(data, default_name=self.root.name)

    def save(self, state: InstanceState) -> None:
        """Atomically write *state* to disk."""
        self.root.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f"{METADATA_FILE}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(state.to_dict(), handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise InstanceStateError(
                f"Failed to write instance metadata {self.path}: {exc}",
                help="Check that the current user owns the instance directory.",
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    @contextmanager
    def mutate(self) -> Iterator[InstanceState]:
        """Yield a copy of the state and persist it only if the block succeeds."""
        state = replace(self.load())
        yield state
        self.save(state)

    def active_version_dir(self) -> Path | None:
        """Return the directory ``current`` points at, if any."""
        if not self.current_link.is_symlink():
            return None
        target = Path(os.readlink(self.current_link))
        if not target.is_absolute():
            target = self.current_link.parent / target
        return target


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "InstanceState",
    "InstanceStateError",
    "InstanceStore",
    "METADATA_FILE",
    "PROCESS_MANAGERS",
    "SCHEMA_VERSION",
]
