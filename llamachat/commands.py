"""IRC-style session commands typed at the prompt: ``/verb arg1 arg2``."""

from dataclasses import dataclass, field

from prompt_toolkit.completion import Completer, Completion

from .report import diagnostics_enabled

COMPLETIONS = ("/context", "/stats")


@dataclass
class Command:
    name: str
    args: list[str] = field(default_factory=list)


def is_command(line: str) -> bool:
    """A command starts with ``/`` immediately followed by a letter."""
    return (
        len(line) >= 2
        and line[0] == "/"
        and line[1].isascii()
        and line[1].isalpha()
    )


def parse_command(line: str) -> Command:
    words = line[1:].split()
    return Command(words[0], words[1:])


# -- Verbs -------------------------------------------------------------------


def _cmd_stats(session, cmd: Command, out) -> None:
    """Print the engine timing report through the diagnostics logger."""
    with diagnostics_enabled() as log:
        for line in session.engine.perf_report():
            log.info(line)


def _cmd_context(session, cmd: Command, out) -> None:
    window = session.window
    configured = window.capacity()
    print(
        f"{window.n_past} out of {configured} context tokens used "
        f"({window.remaining()} tokens remaining)",
        file=out,
    )
    if configured < window.n_ctx_train:
        print(
            f"use the `-c {window.n_ctx_train}` flag at startup for maximum context",
            file=out,
        )


COMMANDS = {
    "stats": _cmd_stats,
    "context": _cmd_context,
}


def handle_command(session, line: str, out=None) -> bool:
    """Run ``line`` if it is a command.

    Returns False only when the line is chat text. Unknown verbs are reported
    and still count as handled.
    """
    if not is_command(line):
        return False
    cmd = parse_command(line)
    handler = COMMANDS.get(cmd.name)
    if handler is None:
        print(f"{cmd.name}: unrecognized command", file=out)
    else:
        handler(session, cmd, out)
    return True


class CommandCompleter(Completer):
    """Tab-completes command names that start with the text typed so far."""

    def __init__(self, words=COMPLETIONS):
        self.words = tuple(words)

    def get_completions(self, document, complete_event):
        line = document.text_before_cursor
        for word in self.words:
            if word.startswith(line):
                yield Completion(word, start_position=-len(line))
