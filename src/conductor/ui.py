from __future__ import annotations

from collections.abc import Sequence

import click

from conductor.workflow.interaction import OperatorUI

LEVEL_COLORS = {"info": None, "warning": "yellow", "error": "red", "success": "green"}


class ClickUI(OperatorUI):
    """Terminal operator surface backed by click prompts."""

    def select(self, title: str, options: Sequence[str]) -> str | None:
        click.echo(title)
        for index, option in enumerate(options, start=1):
            click.echo(f"  {index}) {option}")
        try:
            choice = click.prompt("Choice", type=click.IntRange(1, len(options)), default=1)
        except click.Abort:
            return None
        return options[choice - 1]

    def input(self, prompt: str, default: str | None = None) -> str | None:
        try:
            return click.prompt(prompt, default=default, show_default=default is not None)
        except click.Abort:
            return None

    def confirm(self, title: str, message: str) -> bool | None:
        click.echo(title)
        try:
            return click.confirm(message, default=False)
        except click.Abort:
            return None

    def editor(self, title: str, text: str) -> str | None:
        click.echo(title)
        return click.edit(text)

    def notify(self, message: str, level: str = "info") -> None:
        click.secho(message, fg=LEVEL_COLORS.get(level), err=level in {"warning", "error"})

    def set_status(self, key: str, text: str | None) -> None:
        if text:
            click.secho(f"[{key}] {text}", dim=True)

    def set_widget(self, key: str, lines: Sequence[str] | None) -> None:
        for line in lines or ():
            click.secho(line, dim=True)
