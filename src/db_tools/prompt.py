"""Interactive prompting behind a small capability interface.

``ConsolePrompter`` asks on the terminal with rich prompts.
``ScriptedPrompter`` answers from a queue and fails fast on any prompt
it was not scripted for, so tests and CI never block on stdin.

Usage:
    from db_tools.prompt import ScriptedPrompter

    prompter = ScriptedPrompter([True, "users"])
    prompter.confirm("Drop table?")   # True
    prompter.ask("Table name")        # "users"
"""

import sys
from collections import deque
from collections.abc import Iterable
from typing import Any, Protocol

from rich.console import Console
from rich.prompt import Confirm, Prompt


class UnexpectedPromptError(RuntimeError):
    """Raised by ``ScriptedPrompter`` when no scripted answer is left."""


class Prompter(Protocol):
    """Source of operator answers."""

    interactive: bool

    def confirm(self, message: str, default: bool = False) -> bool: ...

    def ask(self, message: str, default: str | None = None) -> str: ...

    def choose(self, message: str, choices: list[str]) -> str: ...

    def secret(self, message: str) -> str: ...


class ConsolePrompter:
    """Prompter reading answers from the terminal."""

    def __init__(self, console: Console | None = None, interactive: bool | None = None) -> None:
        self.console = console or Console()
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    def _require_tty(self, message: str) -> None:
        if not self.interactive:
            raise UnexpectedPromptError(f"Cannot prompt in non-interactive mode: {message}")

    def confirm(self, message: str, default: bool = False) -> bool:
        self._require_tty(message)
        return Confirm.ask(message, default=default, console=self.console)

    def ask(self, message: str, default: str | None = None) -> str:
        self._require_tty(message)
        while True:
            answer = Prompt.ask(message, default=default, console=self.console)
            if answer and answer.strip():
                return answer.strip()
            self.console.print("[red]A value is required[/red]")

    def choose(self, message: str, choices: list[str]) -> str:
        self._require_tty(message)
        if not choices:
            raise UnexpectedPromptError(f"No choices available for: {message}")
        for i, choice in enumerate(choices, start=1):
            self.console.print(f"  [cyan]{i}[/cyan]) {choice}", highlight=False)
        numbers = [str(i) for i in range(1, len(choices) + 1)]
        picked = Prompt.ask(message, choices=numbers, console=self.console, show_choices=False)
        return choices[int(picked) - 1]

    def secret(self, message: str) -> str:
        self._require_tty(message)
        return Prompt.ask(message, password=True, console=self.console)


class ScriptedPrompter:
    """Prompter answering from a pre-loaded queue.

    Answers are consumed in order regardless of the prompt kind.  For
    ``choose`` an ``int`` answer is an index into the choices and a
    ``str`` answer must be one of them.

    Args:
        answers: Scripted answers.

    Attributes:
        asked: Messages of every prompt issued, in order.
    """

    interactive = True

    def __init__(self, answers: Iterable[Any] = ()) -> None:
        self._answers: deque[Any] = deque(answers)
        self.asked: list[str] = []

    @property
    def remaining(self) -> int:
        return len(self._answers)

    def _next(self, message: str) -> Any:
        self.asked.append(message)
        if not self._answers:
            raise UnexpectedPromptError(f"Unexpected prompt: {message}")
        return self._answers.popleft()

    def confirm(self, message: str, default: bool = False) -> bool:
        return bool(self._next(message))

    def ask(self, message: str, default: str | None = None) -> str:
        return str(self._next(message))

    def choose(self, message: str, choices: list[str]) -> str:
        answer = self._next(message)
        if isinstance(answer, int):
            return choices[answer]
        if answer not in choices:
            raise UnexpectedPromptError(f"Scripted answer {answer!r} is not a choice for: {message}")
        return answer

    def secret(self, message: str) -> str:
        return str(self._next(message))
