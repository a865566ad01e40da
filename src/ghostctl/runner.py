"""Process spawn facility shared by providers, migrations and process managers."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType

from .errors import ProcessError, SystemEnvironmentError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status 0."""
        return self.returncode == 0


@dataclass(slots=True)
class CommandRunner:
    """Run external commands, tracking children so they can be cleaned up."""

    env: Mapping[str, str] | None = None
    _children: set[subprocess.Popen[str]] = field(default_factory=set, init=False, repr=False)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *args* to completion and return the captured output."""
        command = [str(part) for part in args]
        env_vars = os.environ.copy()
        if self.env:
            env_vars.update(self.env)
        if env:
            env_vars.update(env)

        LOGGER.debug("Running %s (cwd=%s)", " ".join(command), cwd)
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=str(cwd) if cwd else None,
                env=env_vars,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise SystemEnvironmentError(
                f"Command '{command[0]}' not found.",
                help=f"Install {command[0]} or make sure it is on PATH.",
            ) from exc

        self._children.add(process)
        try:
            stdout, stderr = process.communicate()
        finally:
            self._children.discard(process)

        result = CommandResult(
            args=command,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )
        if check and not result.ok:
            raise ProcessError(
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                killed=result.returncode == -signal.SIGKILL,
            )
        return result

    def kill_children(self) -> None:
        """Terminate every child process that is still running."""
        for process in list(self._children):
            if process.poll() is None:
                LOGGER.debug("Killing child process %s", process.pid)
                process.kill()
        self._children.clear()

    @property
    def active_children(self) -> int:
        """Return the number of tracked child processes."""
        return len(self._children)


def install_signal_handlers(runner: CommandRunner) -> None:
    """Kill *runner*'s children and exit when SIGINT or SIGTERM arrives."""

    def _handler(signum: int, _frame: FrameType | None) -> None:
        runner.kill_children()
        sys.exit(128 + signum)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


__all__ = ["CommandResult", "CommandRunner", "install_signal_handlers"]
