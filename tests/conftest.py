"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ghostctl.errors import ProcessError
from ghostctl.runner import CommandResult
from ghostctl.state import InstanceState, InstanceStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeRunner:
    """Record commands instead of spawning them.

    ``responses`` maps the first argument (or ``"*"``) to a callable returning a
    :class:`CommandResult`; unmatched commands succeed with empty output.
    """

    responses: dict[str, Callable[[list[str]], CommandResult]] = field(default_factory=dict)
    calls: list[tuple[list[str], Path | None]] = field(default_factory=list)

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: object = None,
        check: bool = True,
    ) -> CommandResult:
        command = [str(part) for part in args]
        self.calls.append((command, cwd))
        handler = self.responses.get(Path(command[0]).name) or self.responses.get("*")
        result = handler(command) if handler else CommandResult(args=command, returncode=0)
        if check and not result.ok:
            raise ProcessError(
                command=command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def commands(self) -> list[list[str]]:
        return [command for command, _cwd in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_instance(tmp_path: Path) -> Callable[..., InstanceStore]:
    """Create an instance directory with metadata and installed versions."""

    def _make(
        version: str = "1.2.0",
        *,
        installed: Sequence[str] = (),
        previous_version: str | None = None,
        cli_version: str | None = None,
        process_manager: str = "local",
        root: Path | None = None,
    ) -> InstanceStore:
        store = InstanceStore(root or tmp_path / "blog")
        for name in {*installed, version}:
            (store.version_dir(name)).mkdir(parents=True, exist_ok=True)
        store.current_link.symlink_to(store.version_dir(version))
        store.save(
            InstanceState(
                name="blog",
                version=version,
                previous_version=previous_version,
                cli_version=cli_version,
                process_manager=process_manager,
            )
        )
        return store

    return _make
