"""Structured operation logging for ghostctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. Steps and the final result are collected in memory
and flushed as a single JSON line to ``operations.jsonl`` when the scope exits.
A short human-readable summary is written to ``ghostctl.log`` through the
standard :mod:`logging` machinery.

Logging must never break a command: when the log directory cannot be created or
a write fails, the logger disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "ghostctl.log"

LOGGER = logging.getLogger(__name__)


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _iso_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class OperationScope:
    """Collects steps and the result of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.op_id = uuid.uuid4().hex[:12]
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.started_at = _iso_now()
        self._start = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: str = "") -> None:
        """Record a named step with its status."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] = (),
        errors: Sequence[str] = (),
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=list(warnings),
            errors=list(errors),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "context": {"ghostctl_version": __version__},
            "started_at": self.started_at,
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "steps": _sanitize(self.steps),
            "result": self.result,
        }

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "changed": changed}
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Write operation records and a human log under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it is unusable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        self._human: logging.Logger | None = None
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging: %s", exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{command} failed: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success(f"{command} completed.")
            self._write(scope)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            LOGGER.debug("Disabling structured logging after write failure: %s", exc)
            self._enabled = False
            return

        result = scope.result or {}
        human = self._human_logger()
        if human is None:
            return
        level = logging.ERROR if result.get("status") == "error" else logging.INFO
        human.log(
            level,
            "%s [%s] %s: %s",
            scope.op_id,
            result.get("status", "unknown"),
            scope.command,
            result.get("message", ""),
        )

    def _human_logger(self) -> logging.Logger | None:
        if self._human is not None:
            return self._human
        human = logging.Logger(f"ghostctl.human.{self.logs_dir}")
        try:
            handler = logging.FileHandler(self._human_log_path, encoding="utf-8")
        except OSError as exc:
            LOGGER.debug("Human log unavailable: %s", exc)
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        human.addHandler(handler)
        self._human = human
        return human


__all__ = ["OperationScope", "StructuredLogger"]
