"""Update and rollback orchestration.

An update walks a fixed sequence of states::

    resolving -> fetching -> (gating_major) -> stopping -> migrating
              -> relinking -> starting -> pruning -> done

Guards decide which optional states run (see :meth:`UpdateOrchestrator._execute`).
When a rollback-eligible error escapes one of the mutating states, the
rollback policy decides whether the same machine is entered again with the
pre-update version as target and ``rollback=True``. A failing rollback is
never rolled back itself.

Only one orchestrator may run against an instance directory at a time; this is
not enforced.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import AppConfig
from .errors import CliError, FilesystemError, SystemEnvironmentError, ValidationError
from .gate import MajorVersionGate
from .logging import OperationScope
from .migrations import MigrationRunner
from .providers import ProcessManager, ReleaseFetcher, VersionProvider
from .resolver import (
    ResolveOptions,
    VersionCatalog,
    check_engines,
    resolve_version,
    version_from_zip,
)
from .state import InstanceStore
from .ui import Prompter
from .versioning import is_valid, major, parse_version

LOGGER = logging.getLogger(__name__)

CURRENT_TMP_LINK = ".ghostctl-current.tmp"


class UpdateState(str, Enum):
    """States of the update machine, in execution order."""

    RESOLVING = "resolving"
    FETCHING = "fetching"
    GATING_MAJOR = "gating_major"
    STOPPING = "stopping"
    MIGRATING = "migrating"
    RELINKING = "relinking"
    STARTING = "starting"
    PRUNING = "pruning"
    DONE = "done"


# Failures in these states leave the instance half-updated.
MUTATING_STATES = frozenset(
    {UpdateState.STOPPING, UpdateState.MIGRATING, UpdateState.RELINKING, UpdateState.STARTING}
)


class RollbackPolicy(str, Enum):
    """What to do when an update fails part-way."""

    CONFIRM = "confirm"
    ALWAYS = "always"
    NEVER = "never"


@dataclass(slots=True)
class UpdateRequest:
    """User-supplied inputs of one ``update`` invocation."""

    version: str | None = None
    zip_path: Path | None = None
    rollback: bool = False
    force: bool = False
    restart: bool | None = None
    v1: bool = False
    channel: str = "stable"


@dataclass(slots=True)
class UpdateContext:
    """Transient state threaded through one pass of the machine."""

    instance_dir: Path
    active_version: str
    target_version: str | None = None
    rollback: bool = False
    force: bool = False
    zip_path: Path | None = None
    v1: bool = False
    channel: str = "stable"
    restart: bool = False
    was_running: bool = False
    install_path: Path | None = None
    rollback_from: str | None = None
    state: UpdateState = UpdateState.RESOLVING
    history: list[UpdateState] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of :meth:`UpdateOrchestrator.run`."""

    status: str
    version: str
    previous_version: str | None = None
    history: tuple[UpdateState, ...] = ()
    removed_versions: tuple[str, ...] = ()
    error: CliError | None = None

    @property
    def up_to_date(self) -> bool:
        """Return True when nothing needed to change."""
        return self.status == "up_to_date"

    @property
    def rolled_back(self) -> bool:
        """Return True when a failed update was reverted."""
        return self.status == "rolled_back"


def prune_versions(versions_dir: Path, *, keep: int, protect: Iterable[Path] = ()) -> list[str]:
    """Delete all but the *keep* highest semver-named version directories."""
    if not versions_dir.is_dir():
        return []
    protected = {path.resolve() for path in protect}
    candidates = [entry for entry in versions_dir.iterdir() if entry.is_dir() and is_valid(entry.name)]
    candidates.sort(key=lambda entry: parse_version(entry.name), reverse=True)
    removed: list[str] = []
    for entry in candidates[keep:]:
        if entry.resolve() in protected:
            continue
        shutil.rmtree(entry)
        removed.append(entry.name)
    return removed


def relink_current(root: Path, install_path: Path) -> Path:
    """Atomically point ``<root>/current`` at *install_path*."""
    current_link = root / "current"
    temp_link = root / CURRENT_TMP_LINK
    try:
        if temp_link.exists() or temp_link.is_symlink():
            temp_link.unlink()
        temp_link.symlink_to(install_path)
        temp_link.replace(current_link)
    except OSError as exc:
        raise FilesystemError(
            f"Unable to point {current_link} at {install_path}: {exc}",
            help=f"Make sure {root} is writable and '{current_link.name}' is a symlink, not a directory.",
        ) from exc
    finally:
        if temp_link.is_symlink():
            with suppress(OSError):
                temp_link.unlink()
    return current_link


@dataclass
class UpdateOrchestrator:
    """Sequence resolution, fetch, gate, migrations and restarts for one instance."""

    store: InstanceStore
    config: AppConfig
    provider: VersionProvider
    fetcher: ReleaseFetcher
    migrations: MigrationRunner
    manager: ProcessManager
    gate: MajorVersionGate
    prompter: Prompter
    policy: RollbackPolicy = RollbackPolicy.CONFIRM
    cli_version: str = "0.0.0"
    node_version: str | None = None
    node_check: bool = True
    release_notes: Callable[[str], None] | None = None
    op: OperationScope | None = None

    def run(self, request: UpdateRequest) -> UpdateResult:
        """Run the update described by *request*."""
        ctx = self._build_context(request)
        try:
            return self._execute(ctx)
        except CliError as exc:
            if not self._should_roll_back(ctx, exc):
                raise
            return self._roll_back(ctx, exc)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------
    def _build_context(self, request: UpdateRequest) -> UpdateContext:
        state = self.store.load()
        if not state.version:
            raise SystemEnvironmentError(
                "No active Ghost version is recorded for this instance.",
                help="Install Ghost before running update.",
            )
        was_running = self.manager.is_running()
        ctx = UpdateContext(
            instance_dir=self.store.root,
            active_version=state.version,
            target_version=request.version,
            force=request.force,
            zip_path=request.zip_path,
            v1=request.v1,
            channel=request.channel,
            restart=was_running if request.restart is None else request.restart,
            was_running=was_running,
        )
        if request.rollback:
            if not state.previous_version:
                raise ValidationError(
                    "No previous version found",
                    help="Rollback is only possible after an update.",
                )
            ctx.rollback = True
            ctx.target_version = state.previous_version
            ctx.rollback_from = state.version
        return ctx

    # ------------------------------------------------------------------
    # Machine
    # ------------------------------------------------------------------
    def _execute(self, ctx: UpdateContext) -> UpdateResult:
        self._enter(ctx, UpdateState.RESOLVING)
        target = self._resolve(ctx)
        if target is None:
            self._step("update.resolve", "skipped", "All up to date")
            return UpdateResult(
                status="up_to_date",
                version=ctx.active_version,
                history=tuple(ctx.history),
            )
        ctx.target_version = target
        install_path = self.store.version_dir(target)
        ctx.install_path = install_path

        self._enter(ctx, UpdateState.FETCHING)
        self._fetch(ctx, target, install_path)

        if not ctx.rollback and major(target) > major(ctx.active_version):
            self._enter(ctx, UpdateState.GATING_MAJOR)
            self.gate.check(ctx.active_version, target)
            self._step("update.gate", "success", f"confirmed migration to {target}")

        if ctx.was_running:
            self._enter(ctx, UpdateState.STOPPING)
            stopped = self.manager.stop()
            self._step("process.stop", "success" if stopped else "skipped", self.manager.name)

        if major(target) < self.config.migration_threshold_major:
            self._enter(ctx, UpdateState.MIGRATING)
            self._migrate(ctx, target, install_path)

        self._enter(ctx, UpdateState.RELINKING)
        previous = self._relink(ctx, target, install_path)

        if ctx.restart:
            self._enter(ctx, UpdateState.STARTING)
            self.manager.start()
            self._step("process.start", "success", f"{self.manager.name} {target}")

        removed: list[str] = []
        if not ctx.rollback:
            self._enter(ctx, UpdateState.PRUNING)
            removed = self._prune(install_path)

        self._enter(ctx, UpdateState.DONE)
        return UpdateResult(
            status="rolled_back" if ctx.rollback else "updated",
            version=target,
            previous_version=previous,
            history=tuple(ctx.history),
            removed_versions=tuple(removed),
        )

    def _enter(self, ctx: UpdateContext, state: UpdateState) -> None:
        LOGGER.debug("update state -> %s", state.value)
        ctx.state = state
        ctx.history.append(state)

    def _step(self, name: str, status: str, detail: str = "") -> None:
        if self.op is not None:
            self.op.add_step(name, status=status, detail=detail)

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------
    def _resolve(self, ctx: UpdateContext) -> str | None:
        if ctx.rollback:
            if ctx.target_version is None:
                raise ValidationError("No previous version found")
            self._step("update.resolve", "success", f"rollback to {ctx.target_version}")
            return ctx.target_version

        catalog = VersionCatalog.from_versions(
            self.provider.list_remote_versions(self.config.package_name),
            min_release=self.config.min_release,
            include_prerelease=ctx.channel == "next",
        )
        options = ResolveOptions(
            v1=ctx.v1,
            force=ctx.force,
            zip=ctx.zip_path is not None,
            channel=ctx.channel,
            min_release=self.config.min_release,
        )
        if ctx.zip_path is not None:
            target = version_from_zip(
                ctx.zip_path,
                ctx.active_version,
                catalog,
                options,
                package_name=self.config.package_name,
                node_version=self.node_version,
                cli_version=self.cli_version,
                node_check=self.node_check,
            )
        else:
            target = resolve_version(catalog, ctx.target_version, ctx.active_version, options)
            if target is not None:
                check_engines(
                    self.provider.engines(self.config.package_name, target),
                    node_version=self.node_version,
                    cli_version=self.cli_version,
                    node_check=self.node_check,
                    source=f"Ghost {target}",
                )

        if target is not None:
            self._step("update.resolve", "success", f"{ctx.active_version} -> {target}")
            if self.release_notes is not None:
                self.release_notes(target)
        return target

    def _fetch(self, ctx: UpdateContext, target: str, install_path: Path) -> None:
        if ctx.rollback:
            if not install_path.is_dir():
                raise SystemEnvironmentError(
                    f"Cannot roll back: {install_path} is missing.",
                    help=f"Reinstall with 'ghostctl update {target} --force'.",
                )
            self._step("release.fetch", "skipped", "rollback uses the installed release")
            return
        result = self.fetcher.fetch(
            target,
            install_path,
            force=ctx.force,
            zip_path=ctx.zip_path,
        )
        self._step("release.fetch", "skipped" if result.skipped else "success", result.message)

    def _migrate(self, ctx: UpdateContext, target: str, install_path: Path) -> None:
        if not ctx.rollback:
            self.migrations.migrate(install_path)
            self._step("database.migrate", "success", target)
            return
        source = ctx.rollback_from
        source_path = self.store.version_dir(source) if source else None
        if source is None or source_path is None or not source_path.is_dir():
            self._step("database.rollback", "skipped", "no release to roll back from")
            return
        self.migrations.rollback(source_path, from_version=source, to_version=target)
        self._step("database.rollback", "success", f"{source} -> {target}")

    def _relink(self, ctx: UpdateContext, target: str, install_path: Path) -> str | None:
        current = relink_current(self.store.root, install_path)
        self._step("symlink.update", "success", str(current))
        with self.store.mutate() as state:
            # A rollback that starts from the recorded version keeps its history.
            if not ctx.rollback:
                state.previous_version = ctx.active_version
            elif state.version != target:
                state.previous_version = None
            state.version = target
            if self.node_version:
                state.node_version = self.node_version
            previous = state.previous_version
        self._step("metadata.update", "success", f"version={target}")
        return previous

    def _prune(self, install_path: Path) -> list[str]:
        try:
            removed = prune_versions(
                self.store.versions_dir,
                keep=self.config.keep_versions,
                protect=[install_path],
            )
        except OSError as exc:
            LOGGER.warning("Removing old Ghost versions failed: %s", exc)
            self._step("versions.prune", "warning", str(exc))
            return []
        self._step("versions.prune", "success" if removed else "skipped", ", ".join(removed))
        return removed

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def _should_roll_back(self, ctx: UpdateContext, exc: CliError) -> bool:
        if ctx.rollback or not exc.triggers_rollback or ctx.state not in MUTATING_STATES:
            return False
        if self.policy is RollbackPolicy.NEVER:
            return False
        if self.policy is RollbackPolicy.ALWAYS:
            return True
        self.prompter.log(exc.message, "error")
        question = (
            f"Unable to upgrade Ghost from v{ctx.active_version} to v{ctx.target_version}. "
            f"Would you like to revert back to v{ctx.active_version}?"
        )
        return self.prompter.confirm(question, default=True)

    def _roll_back(self, failed: UpdateContext, exc: CliError) -> UpdateResult:
        self._step("update.rollback", "info", f"{failed.state.value}: {exc.message}")
        self.prompter.log(f"Rolling back to Ghost {failed.active_version}", "warning")
        recorded = self.store.load().version or failed.active_version
        rollback_ctx = UpdateContext(
            instance_dir=failed.instance_dir,
            active_version=recorded,
            target_version=failed.active_version,
            rollback=True,
            force=True,
            restart=failed.restart,
            was_running=self.manager.is_running(),
            rollback_from=failed.target_version,
        )
        result = self._execute(rollback_ctx)
        return UpdateResult(
            status="rolled_back",
            version=result.version,
            previous_version=result.previous_version,
            history=tuple(failed.history) + result.history,
            error=exc,
        )


__all__ = [
    "CURRENT_TMP_LINK",
    "MUTATING_STATES",
    "RollbackPolicy",
    "UpdateContext",
    "UpdateOrchestrator",
    "UpdateRequest",
    "UpdateResult",
    "UpdateState",
    "prune_versions",
    "relink_current",
]
