"""Capabilities the pipeline needs from whatever shell invokes it.

The orchestrator only ever reports progress and asks yes/no questions, so
those are the two protocols. Console implementations use ``rich``; the
null/scripted ones serve headless runs and tests.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

from rich.console import Console
from rich.prompt import Confirm

logger = logging.getLogger(__name__)

NoticeLevel = Literal["info", "warning", "error"]


class ProgressReporter(Protocol):
    def report(self, percent: int, label: str) -> None: ...


class UserPrompt(Protocol):
    def confirm(self, message: str, accept: str, decline: str) -> bool: ...

    def notify(self, level: NoticeLevel, message: str) -> None: ...


class NullReporter:
    def report(self, percent: int, label: str) -> None:
        logger.debug("[%3d%%] %s", percent, label)


class ScriptedPrompt:
    """Answers every confirmation with a fixed value and records what was asked."""

    def __init__(self, answer: bool = False) -> None:
        self.answer = answer
        self.questions: list[str] = []
        self.notices: list[tuple[str, str]] = []

    def confirm(self, message: str, accept: str, decline: str) -> bool:
        self.questions.append(message)
        return self.answer

    def notify(self, level: NoticeLevel, message: str) -> None:
        self.notices.append((level, message))


_NOTICE_STYLES = {"info": "cyan", "warning": "yellow", "error": "bold red"}


class ConsoleReporter:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def report(self, percent: int, label: str) -> None:
        self.console.print(f"[dim]{percent:3d}%[/dim] {label}")


class ConsolePrompt:
    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def confirm(self, message: str, accept: str, decline: str) -> bool:
        return Confirm.ask(
            f"{message} [green]y[/green]={accept} / [red]n[/red]={decline}",
            console=self.console,
            default=False,
        )

    def notify(self, level: NoticeLevel, message: str) -> None:
        style = _NOTICE_STYLES.get(level, "")
        self.console.print(f"[{style}]{message}[/]" if style else message)
