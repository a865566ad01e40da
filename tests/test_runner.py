"""Command runner behaviour."""
from __future__ import annotations

import signal
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType

import pytest

from ghostctl.errors import ProcessError, SystemEnvironmentError
from ghostctl.runner import CommandRunner, install_signal_handlers


def test_run_captures_output_and_env(tmp_path: Path) -> None:
    """Output is captured and per-call env overlays the runner env."""
    runner = CommandRunner(env={"GHOSTCTL_A": "runner"})

    result = runner.run(
        [sys.executable, "-c", "import os; print(os.environ['GHOSTCTL_A'], os.environ['GHOSTCTL_B'], os.getcwd())"],
        cwd=tmp_path,
        env={"GHOSTCTL_B": "call"},
    )

    assert result.ok
    assert result.stdout.split() == ["runner", "call", str(tmp_path.resolve())]
    assert runner.active_children == 0


def test_non_zero_exit_raises_process_error() -> None:
    """check=True converts failures into ProcessError with captured output."""
    runner = CommandRunner()
    script = "import sys; sys.stderr.write('bad things'); sys.exit(3)"

    with pytest.raises(ProcessError) as excinfo:
        runner.run([sys.executable, "-c", script])

    assert excinfo.value.returncode == 3
    assert excinfo.value.stderr == "bad things"
    assert excinfo.value.killed is False

    result = runner.run([sys.executable, "-c", script], check=False)
    assert result.returncode == 3


def test_missing_binary_is_an_environment_error() -> None:
    """Unknown commands explain how to fix PATH."""
    with pytest.raises(SystemEnvironmentError, match="Command 'ghostctl-no-such-binary' not found"):
        CommandRunner().run(["ghostctl-no-such-binary"])


def test_signal_handler_kills_children_and_exits(monkeypatch: pytest.MonkeyPatch) -> None:
    """SIGTERM kills running children and exits with 128 + signum."""
    handlers: dict[int, Callable[[int, FrameType | None], None]] = {}
    monkeypatch.setattr(
        "ghostctl.runner.signal.signal",
        lambda signum, handler: handlers.__setitem__(signum, handler),
    )
    runner = CommandRunner()
    install_signal_handlers(runner)
    assert set(handlers) == {signal.SIGINT, signal.SIGTERM}

    errors: list[ProcessError] = []

    def run_long_child() -> None:
        try:
            runner.run([sys.executable, "-c", "import time; time.sleep(60)"])
        except ProcessError as exc:
            errors.append(exc)

    worker = threading.Thread(target=run_long_child)
    worker.start()
    deadline = time.monotonic() + 10
    while runner.active_children == 0 and time.monotonic() < deadline:
        time.sleep(0.05)
    assert runner.active_children == 1

    with pytest.raises(SystemExit) as excinfo:
        handlers[signal.SIGTERM](signal.SIGTERM, None)
    worker.join(timeout=10)

    assert excinfo.value.code == 128 + signal.SIGTERM
    assert not worker.is_alive()
    assert runner.active_children == 0
    (error,) = errors
    assert error.killed is True
    assert error.returncode == -signal.SIGKILL
