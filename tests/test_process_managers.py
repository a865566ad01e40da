"""Process manager behaviour for systemd and local instances."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import FakeRunner
from ghostctl.config import load_config
from ghostctl.errors import FilesystemError, ProcessError, StartTimeoutError, SystemEnvironmentError
from ghostctl.providers import LocalProcessManager, SystemdProcessManager, get_process_manager
from ghostctl.runner import CommandResult
from ghostctl.state import InstanceState


def _systemd(runner: FakeRunner, tmp_path: Path, **state: object) -> SystemdProcessManager:
    return SystemdProcessManager(
        tmp_path,
        InstanceState(name="blog", process_manager="systemd", **state),  # type: ignore[arg-type]
        runner=runner,  # type: ignore[arg-type]
    )


def _exit(code: int, stderr: str = "") -> object:
    return lambda args: CommandResult(args=args, returncode=code, stderr=stderr)


@pytest.mark.parametrize(("returncode", "expected"), [(0, True), (3, False)])
def test_systemd_is_running(tmp_path: Path, returncode: int, expected: bool) -> None:
    """``is-active`` exit 3 means inactive."""
    runner = FakeRunner(responses={"systemctl": _exit(returncode)})  # type: ignore[dict-item]
    manager = _systemd(runner, tmp_path)

    assert manager.is_running() is expected
    assert runner.commands() == [["systemctl", "is-active", "ghost_blog"]]


def test_systemd_unexpected_status_is_an_error(tmp_path: Path) -> None:
    """Other exit codes surface the systemctl output."""
    runner = FakeRunner(responses={"systemctl": _exit(4, "Access denied")})  # type: ignore[dict-item]

    with pytest.raises(ProcessError, match="Access denied"):
        _systemd(runner, tmp_path).is_running()


def test_systemd_start_waits_for_port(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """start runs ``systemctl start`` then polls the instance port."""
    states = iter([3, 0])
    runner = FakeRunner(
        responses={
            "systemctl": lambda args: CommandResult(
                args=args, returncode=next(states) if args[1] == "is-active" else 0
            )
        }
    )
    polled: list[tuple[str, int]] = []
    monkeypatch.setattr(
        "ghostctl.providers.process_manager.wait_for_port",
        lambda host, port, **kwargs: polled.append((host, port)),
    )
    manager = _systemd(runner, tmp_path, port=2370)

    assert manager.start() is True
    assert runner.commands() == [
        ["systemctl", "is-active", "ghost_blog"],
        ["systemctl", "start", "ghost_blog"],
    ]
    assert polled == [("localhost", 2370)]

    assert manager.start() is False


def test_failed_start_stops_the_process(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A start that never answers is stopped again before the error propagates."""
    runner = FakeRunner(
        responses={
            "systemctl": lambda args: CommandResult(args=args, returncode=3 if args[1] == "is-active" else 0)
        }
    )

    def never_up(host: str, port: int, **kwargs: object) -> None:
        raise StartTimeoutError("Ghost did not start.")

    monkeypatch.setattr("ghostctl.providers.process_manager.wait_for_port", never_up)

    with pytest.raises(StartTimeoutError):
        _systemd(runner, tmp_path).start()

    assert [command[1] for command in runner.commands()] == ["is-active", "start", "stop"]


def test_systemd_enable_behaviour(tmp_path: Path) -> None:
    """Systemd supports boot enablement; the local manager does not."""
    runner = FakeRunner(
        responses={
            "systemctl": lambda args: CommandResult(args=args, returncode=1 if args[1] == "is-enabled" else 0)
        }
    )
    manager = _systemd(runner, tmp_path)

    assert manager.supports_enable_behavior is True
    assert manager.is_enabled() is False
    manager.enable()
    assert runner.commands()[-1] == ["systemctl", "enable", "ghost_blog"]

    local = LocalProcessManager(tmp_path, InstanceState(name="blog"), runner=runner)  # type: ignore[arg-type]
    assert local.supports_enable_behavior is False
    with pytest.raises(SystemEnvironmentError, match="does not support 'enable'"):
        local.enable()


def test_local_stale_pidfile_is_removed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A pidfile pointing at a dead process does not count as running."""
    manager = LocalProcessManager(tmp_path, InstanceState(name="blog"), runner=FakeRunner())  # type: ignore[arg-type]
    manager.pidfile.write_text("424242", encoding="utf-8")

    def dead(pid: int, sig: int) -> None:
        raise ProcessLookupError(pid)

    monkeypatch.setattr(os, "kill", dead)

    assert manager.is_running() is False
    assert not manager.pidfile.exists()
    assert manager.stop() is False


def test_local_garbage_pidfile(tmp_path: Path) -> None:
    """Unparseable pidfiles are discarded."""
    manager = LocalProcessManager(tmp_path, InstanceState(name="blog"), runner=FakeRunner())  # type: ignore[arg-type]
    manager.pidfile.write_text("not-a-pid", encoding="utf-8")

    assert manager.is_running() is False
    assert not manager.pidfile.exists()


def test_local_start_requires_entrypoint(tmp_path: Path) -> None:
    """Starting without an active release explains how to repair it."""
    manager = LocalProcessManager(tmp_path, InstanceState(name="blog"), runner=FakeRunner())  # type: ignore[arg-type]

    with pytest.raises(SystemEnvironmentError, match="entrypoint"):
        manager.start()


def test_local_start_kills_process_when_pidfile_cannot_be_written(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An untracked child is killed instead of being left running."""
    manager = LocalProcessManager(tmp_path, InstanceState(name="blog"), runner=FakeRunner())  # type: ignore[arg-type]
    (tmp_path / "current").mkdir()
    (tmp_path / "current" / "index.js").write_text("// ghost", encoding="utf-8")
    manager.pidfile.mkdir()
    spawned: list[FakeProcess] = []

    class FakeProcess:
        pid = 4242

        def __init__(self, args: list[str], **kwargs: object) -> None:
            self.args = args
            self.killed = False
            spawned.append(self)

        def kill(self) -> None:
            self.killed = True

    monkeypatch.setattr("ghostctl.providers.local.subprocess.Popen", FakeProcess)

    with pytest.raises(FilesystemError, match="Unable to write the pidfile") as excinfo:
        manager._start()

    assert excinfo.value.triggers_rollback is True
    assert [process.killed for process in spawned] == [True]
    assert spawned[0].args == ["node", str(tmp_path / "current" / "index.js")]


def test_factory_applies_config(tmp_path: Path) -> None:
    """The factory honours metadata and configuration overrides."""
    config = load_config(
        tmp_path / "config.yml",
        env={},
        overrides={
            "systemd": {"systemctl_bin": "/bin/systemctl", "unit_prefix": "blog-"},
            "polling": {"max_tries": 3},
        },
    )
    runner = FakeRunner()
    manager = get_process_manager(
        tmp_path,
        InstanceState(name="main", process_manager="systemd"),
        config=config,
        runner=runner,  # type: ignore[arg-type]
    )

    assert isinstance(manager, SystemdProcessManager)
    assert manager.unit_name == "blog-main"
    assert manager.systemctl_bin == "/bin/systemctl"
    assert manager.polling.max_tries == 3

    with pytest.raises(SystemEnvironmentError, match="Unknown process manager"):
        get_process_manager(
            tmp_path,
            InstanceState(name="main", process_manager="pm2"),
            config=config,
            runner=runner,  # type: ignore[arg-type]
        )
