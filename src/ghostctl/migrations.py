"""Database and system migrations.

Two kinds of migrations exist:

* Database migrations belong to Ghost and are executed with ``knex-migrator``.
  Releases from :data:`~ghostctl.config.IN_PROCESS_MIGRATION_MAJOR` onwards run
  them on boot, so ghostctl only drives them for older releases (and for
  rollbacks onto older releases).
* System migrations belong to ghostctl. They adjust the instance layout and are
  keyed by the ghostctl version that introduced them.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import (
    ApplicationError,
    CliError,
    InstanceConfigError,
    ProcessError,
    SystemEnvironmentError,
)
from .runner import CommandRunner
from .versioning import major, parse_version

LOGGER = logging.getLogger(__name__)

UPGRADE_HELP_URL = "https://ghost.org/docs/faq/upgrade-to-ghost-2-0/#what-to-do-when-an-upgrade-fails"


@dataclass(frozen=True, slots=True)
class SystemMigration:
    """A layout change applied once to instances last touched before *before*."""

    before: str
    title: str
    task: Callable[[Path], None]


def _ensure_settings_folder(root: Path) -> None:
    (root / "content" / "settings").mkdir(parents=True, exist_ok=True)


def _ensure_logs_folder(root: Path) -> None:
    (root / "content" / "logs").mkdir(parents=True, exist_ok=True)


SYSTEM_MIGRATIONS: tuple[SystemMigration, ...] = (
    SystemMigration("0.2.0", "Create content/settings directory", _ensure_settings_folder),
    SystemMigration("0.3.0", "Create content/logs directory", _ensure_logs_folder),
)


def needed_migrations(
    recorded_cli_version: str | None,
    migrations: Sequence[SystemMigration] = SYSTEM_MIGRATIONS,
) -> list[SystemMigration]:
    """Return the migrations an instance recorded at *recorded_cli_version* still needs."""
    if not recorded_cli_version:
        return list(migrations)
    recorded = parse_version(recorded_cli_version)
    return [item for item in migrations if recorded < parse_version(item.before)]


def run_system_migrations(root: Path, migrations: Sequence[SystemMigration]) -> list[str]:
    """Apply *migrations* in order and return their titles."""
    applied: list[str] = []
    for migration in migrations:
        LOGGER.debug("Running system migration: %s", migration.title)
        try:
            migration.task(root)
        except OSError as exc:
            raise SystemEnvironmentError(
                f"System migration '{migration.title}' failed: {exc}",
                help="Check that the current user owns the instance directory.",
            ) from exc
        applied.append(migration.title)
    return applied


class MigrationRunner:
    """Drive ``knex-migrator`` for a version transition."""

    def __init__(self, root: Path, *, runner: CommandRunner, in_update: bool = True) -> None:
        """Bind the runner to the instance rooted at *root*."""
        self.root = root
        self.runner = runner
        self.in_update = in_update

    def migrate(self, mgpath: Path) -> None:
        """Apply forward migrations shipped with the release at *mgpath*."""
        args = [self._binary(mgpath, "knex-migrator-migrate"), "--init", "--mgpath", str(mgpath)]
        self._execute(args)

    def rollback(self, mgpath: Path, *, from_version: str, to_version: str) -> None:
        """Undo the migrations of *from_version* so *to_version* can run again."""
        args = [self._binary(mgpath, "knex-migrator-rollback"), "--force"]
        # knex-migrator 3 (Ghost 2.x) needs to be told which version to return to.
        if major(from_version) == 2:
            args.extend(["--v", to_version])
        args.extend(["--mgpath", str(mgpath)])
        self._execute(args)

    # ------------------------------------------------------------------
    def _binary(self, mgpath: Path, name: str) -> str:
        local = mgpath / "node_modules" / ".bin" / name
        return str(local) if local.exists() else name

    def _execute(self, args: list[str]) -> None:
        try:
            self.runner.run(args, cwd=self.root)
        except ProcessError as exc:
            classified = self.classify(exc)
            if classified is None:
                return
            raise classified from exc

    def classify(self, error: ProcessError) -> CliError | None:
        """Translate a knex-migrator failure; ``None`` means it is harmless."""
        if "No migrations available to rollback" in error.stderr:
            return None
        if "CODE: ENOTFOUND" in error.stderr:
            return InstanceConfigError(
                "Invalid database host",
                help="Check database.connection.host in the Ghost configuration.",
            )
        if "CODE: ER_ACCESS_DENIED_ERROR" in error.stderr:
            return InstanceConfigError(
                "Invalid database username or password",
                help="Check database.connection.user and database.connection.password.",
            )
        if "npm install sqlite3 --save" in error.stdout:
            return SystemEnvironmentError(
                "It appears that sqlite3 did not install properly with this Ghost release.",
                help="Reinstall the release with 'ghostctl update --force' or switch to MySQL.",
            )
        return ApplicationError(
            "The database migration in Ghost encountered an error.",
            help=UPGRADE_HELP_URL,
            suggestion="ghostctl update --rollback" if self.in_update else None,
        )


__all__ = [
    "MigrationRunner",
    "SYSTEM_MIGRATIONS",
    "SystemMigration",
    "needed_migrations",
    "run_system_migrations",
]
