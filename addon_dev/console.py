"""Interactive console for ``addon-dev serve``."""

from __future__ import annotations

import logging
import shlex
import sys
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Sequence

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

if TYPE_CHECKING:  # pragma: no cover
    from .serve import ServeCommand

LOGGER = logging.getLogger("addon_dev.console")


@dataclass
class ConsoleCommand:
    name: str
    description: str
    handler: Callable[[List[str]], bool]
    aliases: Sequence[str] = field(default_factory=tuple)

    def format_help(self) -> str:
        names = ", ".join([self.name, *self.aliases])
        return f"{names:<14} {self.description}"


class ServeConsole:
    """Line console driving a running serve session.

    Handlers return ``True`` to end the session.
    """

    def __init__(self, serve: "ServeCommand", *, stop: Optional[threading.Event] = None) -> None:
        self.serve = serve
        self.stop = stop or threading.Event()
        self._commands: Dict[str, ConsoleCommand] = {}
        self._ordered: List[ConsoleCommand] = []
        for command in (
            ConsoleCommand("reload", "rebuild everything and reload the plugins", self._reload, ("r",)),
            ConsoleCommand("build", "rebuild as if PATH had changed (build PATH)", self._build, ("b",)),
            ConsoleCommand("status", "show the target instance", self._status, ("s",)),
            ConsoleCommand("quit", "stop the target and exit", self._quit, ("q", "exit")),
            ConsoleCommand("help", "list commands", self._help, ("?",)),
        ):
            self.register(command)

    def register(self, command: ConsoleCommand) -> None:
        self._ordered.append(command)
        self._commands[command.name] = command
        for alias in command.aliases:
            self._commands[alias] = command

    def get(self, name: str) -> Optional[ConsoleCommand]:
        return self._commands.get(name)

    def run(self, *, interactive: Optional[bool] = None) -> int:
        if interactive is None:
            interactive = sys.stdin.isatty()
        if not interactive:
            return self._wait_loop()
        session: PromptSession = PromptSession("addon-dev> ", history=InMemoryHistory())
        print("Type 'help' for commands, Ctrl+C to quit.")
        while not self.stop.is_set():
            try:
                with patch_stdout():
                    line = session.prompt()
            except (EOFError, KeyboardInterrupt):
                print()
                return 0
            if self.dispatch(line):
                return 0
        return 0

    def dispatch(self, line: str) -> bool:
        try:
            argv = shlex.split(line)
        except ValueError as exc:
            print(f"Parse error: {exc}")
            return False
        if not argv:
            return False
        name, *args = argv
        command = self.get(name)
        if command is None:
            print(f"Unknown command: {name}")
            return False
        try:
            return bool(command.handler(args))
        except Exception as exc:
            LOGGER.exception("command failed")
            print(f"Command '{name}' failed: {exc}")
            return False

    def _wait_loop(self) -> int:
        try:
            while not self.stop.wait(0.5):
                pass
        except KeyboardInterrupt:
            print()
        return 0

    def _reload(self, args: List[str]) -> bool:
        self.serve.request_rebuild("console")
        print("Rebuild queued")
        return False

    def _build(self, args: List[str]) -> bool:
        self.serve.request_rebuild(args[0] if args else "console")
        print("Build queued")
        return False

    def _status(self, args: List[str]) -> bool:
        print(self.serve.describe())
        return False

    def _quit(self, args: List[str]) -> bool:
        self.stop.set()
        return True

    def _help(self, args: List[str]) -> bool:
        for command in self._ordered:
            print(command.format_help())
        return False


__all__ = ["ConsoleCommand", "ServeConsole"]
