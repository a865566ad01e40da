"""Console output and confirmation prompts."""
from __future__ import annotations

import sys
from dataclasses import dataclass, field

import typer
from rich.console import Console

_LEVEL_STYLES = {
    "info": None,
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


@dataclass(slots=True)
class Prompter:
    """Wrap ``typer.confirm`` and a rich console.

    ``auto_confirm`` answers yes to every question (``--yes``). When prompting
    is not allowed (no TTY) each question resolves to its default answer.
    """

    console: Console = field(default_factory=Console)
    auto_confirm: bool = False
    allow_prompt: bool = field(default_factory=lambda: sys.stdin.isatty())

    def confirm(self, question: str, *, default: bool) -> bool:
        """Ask a yes/no question."""
        if self.auto_confirm:
            self.console.print(f"{question} [dim](auto-confirmed)[/dim]")
            return True
        if not self.allow_prompt:
            self.console.print(f"{question} [dim](defaulting to {'yes' if default else 'no'})[/dim]")
            return default
        return typer.confirm(question, default=default)

    def ask(self, question: str, *, secret: bool = False) -> str | None:
        """Prompt for free text; ``None`` when prompting is not possible."""
        if not self.allow_prompt:
            return None
        return typer.prompt(question, hide_input=secret)

    def log(self, message: str, level: str = "info") -> None:
        """Print *message* styled for *level*."""
        style = _LEVEL_STYLES.get(level)
        if style:
            self.console.print(f"[{style}]{message}[/{style}]")
        else:
            self.console.print(message)


__all__ = ["Prompter"]
