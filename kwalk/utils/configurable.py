from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Literal, Union

from rich.console import Console

if TYPE_CHECKING:
    from kwalk.core.models.config import Config

MessageType = Literal["DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"]

MESSAGE_COLORS: dict[MessageType, str] = {
    "DEBUG": "dim",
    "INFO": "blue",
    "SUCCESS": "green",
    "WARNING": "yellow",
    "ERROR": "red",
}

SEPARATOR = "=" * 66


class Configurable(abc.ABC):
    """
    Base for everything that talks to the operator during a run.

    Progress messages go through the rich console of the config, so `--quiet`, `--verbose`,
    `--logtostderr` and `--width` apply to all of them the same way.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.console: Console = self.config.logging_console

    @property
    def verbose(self) -> bool:
        return self.config.verbose and not self.config.quiet

    @property
    def silent(self) -> bool:
        return self.config.quiet

    def echo(self, message: str = "", *, type: MessageType = "INFO") -> None:
        """Print a message tagged with its type, unless quiet mode is on."""

        if self.silent or (type == "DEBUG" and not self.verbose):
            return

        color = MESSAGE_COLORS[type]
        self.console.print(f"[bold {color}][{type}][/bold {color}] {message}")

    def debug(self, message: str = "") -> None:
        self.echo(message, type="DEBUG")

    def info(self, message: str = "") -> None:
        self.echo(message, type="INFO")

    def success(self, message: str = "") -> None:
        self.echo(message, type="SUCCESS")

    def warning(self, message: str = "") -> None:
        self.echo(message, type="WARNING")

    def error(self, message: Union[str, Exception] = "") -> None:
        self.echo(str(message), type="ERROR")

    def separator(self) -> None:
        if not self.silent:
            self.console.print(f"\n[blue]{SEPARATOR}[/blue]")

    def section(self, title: str, body: str = "") -> None:
        """
        Prints a titled block of raw command output, e.g. the result of `kubectl get ... -o wide`.
        Markup is disabled since kubectl output may contain square brackets.
        """

        if self.silent:
            return

        self.console.print(f"\n=== {title} ===", markup=False, highlight=False)
        if body:
            self.console.print(body.rstrip("\n"), markup=False, highlight=False)
