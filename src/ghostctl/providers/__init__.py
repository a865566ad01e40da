"""Provider interfaces for ghostctl."""
from __future__ import annotations

from pathlib import Path

from ..config import AppConfig
from ..errors import SystemEnvironmentError
from ..runner import CommandRunner
from ..state import InstanceState
from .fetcher import FetchResult, ReleaseFetcher
from .local import LocalProcessManager
from .process_manager import ProcessManager
from .registry import DistInfo, VersionProvider
from .systemd import SystemdProcessManager

PROCESS_MANAGERS: dict[str, type[ProcessManager]] = {
    LocalProcessManager.name: LocalProcessManager,
    SystemdProcessManager.name: SystemdProcessManager,
}


def get_process_manager(
    root: Path,
    state: InstanceState,
    *,
    config: AppConfig,
    runner: CommandRunner,
) -> ProcessManager:
    """Instantiate the process manager recorded in the instance metadata."""
    try:
        manager_cls = PROCESS_MANAGERS[state.process_manager]
    except KeyError:
        raise SystemEnvironmentError(
            f"Unknown process manager '{state.process_manager}'.",
            help=f"Supported process managers: {', '.join(sorted(PROCESS_MANAGERS))}.",
        ) from None
    manager = manager_cls(root, state, runner=runner, polling=config.polling)
    if isinstance(manager, LocalProcessManager):
        manager.node_bin = config.node_bin
    if isinstance(manager, SystemdProcessManager):
        manager.systemctl_bin = config.systemd.systemctl_bin
        manager.unit_prefix = config.systemd.unit_prefix
    return manager


__all__ = [
    "DistInfo",
    "FetchResult",
    "LocalProcessManager",
    "PROCESS_MANAGERS",
    "ProcessManager",
    "ReleaseFetcher",
    "SystemdProcessManager",
    "VersionProvider",
    "get_process_manager",
]
