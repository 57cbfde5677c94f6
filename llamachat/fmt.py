"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.control import Control
from rich.logging import RichHandler
from rich.segment import ControlType
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def log_handler() -> logging.Handler:
    """Return a logging handler that writes through the current console."""
    return RichHandler(
        console=_console,
        show_time=False,
        show_path=False,
        markup=False,
    )


# -- Ephemeral status --------------------------------------------------------


def status(description: str) -> None:
    """Show a one-line status that the next output overwrites."""
    if _console.is_terminal:
        _console.print(Text(f" {description}", style="bright_black"), end="\r")


def clear_status() -> None:
    if _console.is_terminal:
        _console.control(Control((ControlType.ERASE_IN_LINE, 0)))


# -- Session -----------------------------------------------------------------


def model_info(path: str, n_ctx: int, n_ctx_train: int) -> None:
    line = Text()
    line.append("model", style="bold")
    line.append(f": {path}  ")
    line.append(f"(context {n_ctx}, trained {n_ctx_train})", style="dim")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def warning(msg: str) -> None:
    line = Text()
    line.append("warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("error: ", style="bold bright_red")
    line.append(msg, style="bright_red")
    _console.print(line)
