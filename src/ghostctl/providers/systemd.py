"""Systemd process manager for Ghost instances."""
from __future__ import annotations

from ..errors import ProcessError
from ..runner import CommandResult
from .process_manager import ProcessManager

# ``systemctl is-active``/``is-enabled`` report "inactive"/"disabled" with these codes.
INACTIVE_EXIT_CODES = {3}
DISABLED_EXIT_CODES = {1}


class SystemdProcessManager(ProcessManager):
    """Manage the ``ghost_<name>`` systemd unit of an instance."""

    name = "systemd"
    systemctl_bin = "systemctl"
    unit_prefix = "ghost_"

    @property
    def unit_name(self) -> str:
        """Return the systemd unit name for the instance."""
        safe = self.state.name.replace("/", "-")
        return f"{self.unit_prefix}{safe}"

    def is_running(self) -> bool:
        """Return True when the unit is active."""
        result = self._systemctl("is-active", check=False)
        if result.ok:
            return True
        if result.returncode in INACTIVE_EXIT_CODES:
            return False
        raise self._error("is-active", result)

    def restart(self) -> None:
        """Restart the unit natively and wait for the port to answer."""
        self._systemctl("restart")
        self.ensure_started()

    @property
    def supports_enable_behavior(self) -> bool:
        """Systemd units can be enabled on boot."""
        return True

    def is_enabled(self) -> bool:
        """Return True when the unit is enabled."""
        result = self._systemctl("is-enabled", check=False)
        if result.ok:
            return True
        if result.returncode in DISABLED_EXIT_CODES:
            return False
        raise self._error("is-enabled", result)

    def enable(self) -> None:
        """Enable the unit."""
        self._systemctl("enable")

    def disable(self) -> None:
        """Disable the unit."""
        self._systemctl("disable")

    # ------------------------------------------------------------------
    def _start(self) -> None:
        self._systemctl("start")

    def _stop(self) -> None:
        self._systemctl("stop")

    def _systemctl(self, command: str, *, check: bool = True) -> CommandResult:
        result = self.runner.run([self.systemctl_bin, command, self.unit_name], check=False)
        if check and not result.ok:
            raise self._error(command, result)
        return result

    def _error(self, command: str, result: CommandResult) -> ProcessError:
        message = result.stderr.strip() or result.stdout.strip() or "no output"
        return ProcessError(
            f"{self.systemctl_bin} {command} {self.unit_name} failed (exit {result.returncode}): {message}",
            command=result.args,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )


__all__ = ["SystemdProcessManager"]
