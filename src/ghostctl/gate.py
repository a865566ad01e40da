"""Theme compatibility gate for major-version updates.

Before an instance crosses a major version the active theme is validated
against the target major's ruleset:

================================  ==========================================
Report                            Action
================================  ==========================================
no errors, no warnings            single confirmation (default yes)
warnings and/or non-fatal errors  show details, confirm with default no
fatal errors                      abort, regardless of any confirmation
report unavailable                warn, confirm with default no
================================  ==========================================

Aborts are expected outcomes rather than crashes, so they are raised as
``log_message_only`` errors and never trigger a rollback.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .admin_api import CompatibilityReport, ThemeIssue
from .errors import ApplicationError, CliError
from .ui import Prompter

LOGGER = logging.getLogger(__name__)

THEME_HELP_URL = "https://ghost.org/docs/themes/"


class GateAbortedError(ApplicationError):
    """The update was stopped by the compatibility gate."""

    triggers_rollback = False
    show_stack = False


@dataclass(frozen=True, slots=True)
class GateOutcome:
    """How the gate let the update through."""

    report: CompatibilityReport | None
    confirmed: bool


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class MajorVersionGate:
    """Ask for explicit confirmation before crossing a major version."""

    def __init__(self, prompter: Prompter, report_source: Callable[[str, str], CompatibilityReport]) -> None:
        """*report_source* is called with ``(active, target)`` when the gate runs."""
        self.prompter = prompter
        self.report_source = report_source

    def check(self, active: str, target: str) -> GateOutcome:
        """Return once the update may proceed; raise :class:`GateAbortedError` otherwise."""
        self.prompter.log(f"Checking theme compatibility for Ghost {target}", "info")
        try:
            report = self.report_source(active, target)
        except CliError as exc:
            LOGGER.debug("Theme compatibility report unavailable: %s", exc)
            self.prompter.log(f"Unable to check theme compatibility: {exc.message}", "warning")
            self._confirm_or_abort(active, target, default=False)
            return GateOutcome(report=None, confirmed=True)

        if report.clean:
            self.prompter.log("Your theme is compatible.", "success")
            self._confirm_or_abort(active, target, default=True)
            return GateOutcome(report=report, confirmed=True)

        self.prompter.log(self._summary(report), "error" if report.error_count else "warning")
        self._show_details(report)

        if report.has_fatal_errors:
            raise GateAbortedError(
                "Migration failed. Your theme has fatal errors.",
                help=f"For additional theme help visit {THEME_HELP_URL}",
                log_message_only=True,
            )

        self._confirm_or_abort(active, target, default=False)
        return GateOutcome(report=report, confirmed=True)

    # ------------------------------------------------------------------
    def _confirm_or_abort(self, active: str, target: str, *, default: bool) -> None:
        question = f"Are you sure you want to proceed with migrating to Ghost {target}?"
        if not self.prompter.confirm(question, default=default):
            raise GateAbortedError(
                f"Update aborted. Your blog is still on {active}.",
                log_message_only=True,
            )

    def _summary(self, report: CompatibilityReport) -> str:
        parts = []
        if report.error_count:
            parts.append(_plural(report.error_count, "error"))
        if report.warning_count:
            parts.append(_plural(report.warning_count, "warning"))
        if not parts:
            parts.append("fatal errors")
        return f"Your theme has {' and '.join(parts)}"

    def _show_details(self, report: CompatibilityReport) -> None:
        if report.errors:
            self.prompter.log("Errors", "error")
            self._show_issues(report.errors)
        if report.warnings:
            self.prompter.log("Warnings", "warning")
            self._show_issues(report.warnings)

    def _show_issues(self, issues: tuple[ThemeIssue, ...]) -> None:
        current_file = None
        for issue in issues:
            if issue.file != current_file:
                current_file = issue.file
                self.prompter.log(f"    File: {issue.file}")
            prefix = "Fatal error: " if issue.fatal else ""
            self.prompter.log(f"    - {prefix}{issue.rule}")


__all__ = ["GateAbortedError", "GateOutcome", "MajorVersionGate"]
