"""Capability interface shared by process manager implementations."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import ClassVar

from ..config import PollingConfig
from ..errors import CliError, StartTimeoutError, SystemEnvironmentError
from ..liveness import wait_for_port
from ..runner import CommandRunner
from ..state import InstanceState

LOGGER = logging.getLogger(__name__)


class ProcessManager(ABC):
    """Start, stop and inspect the Ghost process of one instance.

    Subclasses implement :meth:`_start`, :meth:`_stop` and :meth:`is_running`.
    The public :meth:`start` and :meth:`stop` are idempotent and :meth:`start`
    only returns once the application answers on its port.
    """

    name: ClassVar[str] = "base"

    def __init__(
        self,
        root: Path,
        state: InstanceState,
        *,
        runner: CommandRunner,
        polling: PollingConfig | None = None,
    ) -> None:
        """Bind the manager to the instance rooted at *root*."""
        self.root = root
        self.state = state
        self.runner = runner
        self.polling = polling or PollingConfig()

    # ------------------------------------------------------------------
    # Required capabilities
    # ------------------------------------------------------------------
    @abstractmethod
    def is_running(self) -> bool:
        """Return True when the application process is running."""

    @abstractmethod
    def _start(self) -> None:
        """Launch the application process."""

    @abstractmethod
    def _stop(self) -> None:
        """Terminate the application process."""

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def start(self) -> bool:
        """Start the application; return False if it was already running."""
        if self.is_running():
            return False
        self._start()
        self.ensure_started()
        return True

    def stop(self) -> bool:
        """Stop the application; return False if it was not running."""
        if not self.is_running():
            return False
        self._stop()
        return True

    def restart(self) -> None:
        """Stop then start the application."""
        self.stop()
        self.start()

    def ensure_started(self) -> None:
        """Poll the instance port; stop the process again if it never comes up."""
        try:
            wait_for_port(
                self.state.host,
                self.state.port,
                max_tries=self.polling.max_tries,
                retry_interval=self.polling.retry_interval,
                socket_timeout=self.polling.socket_timeout,
                delay_on_connect=self.polling.delay_on_connect,
            )
        except StartTimeoutError:
            try:
                self._stop()
            except CliError as stop_exc:
                LOGGER.warning("Stopping %s after failed start also failed: %s", self.state.name, stop_exc)
            raise

    # ------------------------------------------------------------------
    # Optional enable-on-boot capabilities
    # ------------------------------------------------------------------
    @property
    def supports_enable_behavior(self) -> bool:
        """Return True when enable/disable/is_enabled are implemented."""
        return False

    def is_enabled(self) -> bool:
        """Return True when the application starts on boot."""
        raise self._unsupported("is_enabled")

    def enable(self) -> None:
        """Start the application on boot."""
        raise self._unsupported("enable")

    def disable(self) -> None:
        """Do not start the application on boot."""
        raise self._unsupported("disable")

    def _unsupported(self, operation: str) -> SystemEnvironmentError:
        return SystemEnvironmentError(
            f"Process manager '{self.name}' does not support '{operation}'.",
            help="Switch the instance to the systemd process manager to manage boot behaviour.",
        )


__all__ = ["ProcessManager"]
