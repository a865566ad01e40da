"""Local process manager: a detached child tracked through a pidfile."""
from __future__ import annotations

import os
import signal
import subprocess
import time
from contextlib import suppress
from pathlib import Path

from ..errors import CliError, FilesystemError, SystemEnvironmentError
from .process_manager import ProcessManager

PID_FILE = ".ghostpid"
STOP_GRACE_SECONDS = 10.0


class LocalProcessManager(ProcessManager):
    """Run Ghost as a detached ``node current/index.js`` process."""

    name = "local"
    node_bin = "node"

    @property
    def pidfile(self) -> Path:
        """Return the pidfile path."""
        return self.root / PID_FILE

    def is_running(self) -> bool:
        """Return True when the recorded pid is alive; stale pidfiles are removed."""
        pid = self._read_pid()
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            self.pidfile.unlink(missing_ok=True)
            return False
        except PermissionError:
            return True
        return True

    def _start(self) -> None:
        entrypoint = self.root / "current" / "index.js"
        if not entrypoint.exists():
            raise SystemEnvironmentError(
                f"Ghost entrypoint {entrypoint} is missing.",
                help="Run 'ghostctl update --force' to reinstall the active version.",
            )
        env = os.environ.copy()
        env["NODE_ENV"] = "production"
        try:
            process = subprocess.Popen(  # noqa: S603
                [self.node_bin, str(entrypoint)],
                cwd=str(self.root),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise CliError(f"An error occurred while starting Ghost: {exc}") from exc
        try:
            self.pidfile.write_text(str(process.pid), encoding="utf-8")
        except OSError as exc:
            process.kill()
            raise FilesystemError(
                f"Unable to write the pidfile {self.pidfile}: {exc}",
                help=f"Check the permissions of {self.root}.",
            ) from exc

    def _stop(self) -> None:
        pid = self._read_pid()
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self.pidfile.unlink(missing_ok=True)
            return
        except PermissionError as exc:
            raise CliError(f"An unexpected error occurred while stopping Ghost: {exc}") from exc

        deadline = time.monotonic() + STOP_GRACE_SECONDS
        while time.monotonic() < deadline:
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                break
            time.sleep(0.2)
        else:
            with suppress(ProcessLookupError):
                os.kill(pid, signal.SIGKILL)
        self.pidfile.unlink(missing_ok=True)

    def _read_pid(self) -> int | None:
        try:
            raw = self.pidfile.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CliError(f"An unexpected error occurred when reading the pidfile: {exc}") from exc
        try:
            return int(raw)
        except ValueError:
            self.pidfile.unlink(missing_ok=True)
            return None


__all__ = ["LocalProcessManager", "PID_FILE"]
