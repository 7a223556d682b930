from __future__ import annotations

import sys
from typing import Optional, Protocol, TextIO


class Prompter(Protocol):
    def ask(self, prompt: str) -> Optional[str]:
        """Read one line of operator input. None means EOF/interrupt."""

    def say(self, text: str) -> None:
        ...


class ConsolePrompter:
    """
    Blocking stdin prompter. Ctrl-D and Ctrl-C at a prompt are both read
    as "no answer".
    """

    def __init__(self, out: Optional[TextIO] = None):
        self._out = out

    def _stream(self) -> TextIO:
        return self._out if self._out is not None else sys.stdout

    def ask(self, prompt: str) -> Optional[str]:
        try:
            return input(prompt)
        except (EOFError, KeyboardInterrupt):
            print("", file=self._stream())
            return None

    def say(self, text: str) -> None:
        print(text, file=self._stream(), flush=True)
