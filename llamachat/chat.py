import argparse
import logging
import os
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .commands import CommandCompleter, handle_command
from .config import (
    _UNSET,
    DEFAULT_SYSTEM_PROMPT,
    apply_config_to_args,
    default_history_path,
    generate_config,
    load_config,
    sampling_params_from_args,
)
from .report import ChatError, ConfigError, set_diagnostics
from .sampling import CancelToken, StopReason, cancel_on_sigint
from .session import Session

logger = logging.getLogger(__name__)


def build_parser():
    """Build and return the argument parser.

    Defaults are _UNSET so config files can fill in whatever the command
    line leaves out; apply_config_to_args() resolves the rest.
    """
    parser = argparse.ArgumentParser(
        prog="llamachat",
        description="Chat with a local GGUF language model in the terminal.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (llamachat.toml) template.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        metavar="FILE",
        help="Path to the GGUF model file.",
    )
    parser.add_argument(
        "-c",
        "--ctx-size",
        type=int,
        default=_UNSET,
        help="Context window size in tokens, 0 = model's training size (default: 8192).",
    )
    parser.add_argument(
        "-b",
        "--batch-size",
        type=int,
        default=_UNSET,
        help="Maximum tokens per evaluation call (default: 2048).",
    )
    parser.add_argument(
        "-ngl",
        "--n-gpu-layers",
        type=int,
        default=_UNSET,
        help="Number of layers to offload to the GPU (default: 0).",
    )
    parser.add_argument(
        "-n",
        "--n-predict",
        type=int,
        default=_UNSET,
        help="Maximum tokens per reply, -1 = until end of generation (default: -1).",
    )
    parser.add_argument(
        "-p",
        "--system-prompt",
        default=_UNSET,
        help="System prompt evaluated before the first turn.",
    )
    parser.add_argument(
        "--chat-template",
        default=_UNSET,
        help="Jinja chat template overriding the one stored in the model.",
    )
    parser.add_argument(
        "--temp",
        dest="temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.8).",
    )
    parser.add_argument(
        "--top-k",
        type=int,
        default=_UNSET,
        help="Top-k sampling (default: 40).",
    )
    parser.add_argument(
        "--top-p",
        type=float,
        default=_UNSET,
        help="Top-p (nucleus) sampling (default: 0.95).",
    )
    parser.add_argument(
        "--min-p",
        type=float,
        default=_UNSET,
        help="Min-p sampling (default: 0.05).",
    )
    parser.add_argument(
        "--repeat-penalty",
        type=float,
        default=_UNSET,
        help="Penalty for repeating recent tokens, 1.0 = off (default: 1.0).",
    )
    parser.add_argument(
        "--repeat-last-n",
        type=int,
        default=_UNSET,
        help="How many recent tokens the penalties look at, -1 = all (default: 64).",
    )
    parser.add_argument(
        "--frequency-penalty",
        type=float,
        default=_UNSET,
        help="Frequency penalty (default: 0.0).",
    )
    parser.add_argument(
        "--presence-penalty",
        type=float,
        default=_UNSET,
        help="Presence penalty (default: 0.0).",
    )
    parser.add_argument(
        "-s",
        "--seed",
        type=int,
        default=_UNSET,
        help="Random seed for sampling.",
    )
    parser.add_argument(
        "--special",
        action="store_true",
        default=_UNSET,
        help="Print special tokens and the formatted system prompt.",
    )
    parser.add_argument(
        "--history-file",
        default=_UNSET,
        metavar="FILE",
        help="Where to keep prompt history (default: ~/.local/state/llamachat/history).",
    )
    parser.add_argument(
        "--no-history",
        action="store_true",
        default=_UNSET,
        help="Keep prompt history in memory only.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=_UNSET,
        help="Show engine diagnostics on stderr.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _setup_logging(verbose: bool) -> None:
    log = logging.getLogger("llamachat")
    log.handlers[:] = [fmt.log_handler()]
    log.setLevel(logging.DEBUG if verbose else logging.WARNING)
    set_diagnostics(verbose)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("llamachat")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        apply_config_to_args(args, load_config(Path.cwd()))
        fmt.init(color=args.color, no_color=args.no_color)
        _setup_logging(args.verbose)
        if not args.model:
            raise ConfigError(
                "no model given; pass -m FILE or set 'model' in llamachat.toml"
            )
        _run_main(args)
    except ChatError as e:
        print(file=sys.stderr)
        fmt.error(str(e))
        sys.exit(e.exit_code)


def _run_main(args):
    fmt.status("initializing model...")
    try:
        session = Session.open(
            args.model,
            n_ctx=args.ctx_size,
            n_batch=args.batch_size,
            n_gpu_layers=args.n_gpu_layers,
            seed=args.seed,
            chat_template=args.chat_template,
            sampling=sampling_params_from_args(args),
            special=args.special,
            n_predict=args.n_predict,
        )
    finally:
        fmt.clear_status()

    with session:
        n_ctx, n_ctx_train = session.window.capacity(), session.window.n_ctx_train
        if args.verbose:
            fmt.model_info(args.model, n_ctx, n_ctx_train)
        if n_ctx > n_ctx_train:
            fmt.warning(
                f"model was trained on only {n_ctx_train} context tokens "
                f"({n_ctx} specified)"
            )

        system_prompt = args.system_prompt or DEFAULT_SYSTEM_PROMPT
        fmt.status("loading prompt...")
        try:
            msg = session.load_system_prompt(system_prompt)
        finally:
            fmt.clear_status()
        print(msg if args.special else system_prompt)

        if args.no_history:
            history_path = None
        else:
            history_path = args.history_file or str(default_history_path())

        cancel = CancelToken()
        with cancel_on_sigint(cancel):
            repl_loop(session, cancel, history_path=history_path)


# ---------------------------------------------------------------------------
# Turn loop
# ---------------------------------------------------------------------------


def run_turn(session: Session, line: str, cancel: CancelToken, out=None) -> StopReason:
    """Evaluate one chat line and stream the reply, ending with a newline."""
    if out is None:
        out = sys.stdout
    reason = session.ask(line, cancel, out=out)
    print(file=out)
    cancel.clear()
    logger.debug("turn finished: %s (n_past=%d)", reason.value, session.n_past)
    return reason


def _make_prompt_session(history_path: str | None):
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory, InMemoryHistory

    if history_path:
        os.makedirs(os.path.dirname(os.path.abspath(history_path)), exist_ok=True)
        history = FileHistory(history_path)
    else:
        history = InMemoryHistory()
    return PromptSession(
        history=history,
        completer=CommandCompleter(),
        complete_while_typing=False,
    )


def repl_loop(
    session: Session,
    cancel: CancelToken,
    *,
    history_path: str | None = None,
    prompt_session=None,
    out=None,
) -> None:
    """Interactive read-eval-print loop. Returns on EOF (Ctrl-D)."""
    from prompt_toolkit.formatted_text import FormattedText

    if prompt_session is None:
        prompt_session = _make_prompt_session(history_path)
    prompt_text = FormattedText([("fg:ansibrightgreen", ">>> ")])

    while True:
        try:
            line = prompt_session.prompt(prompt_text)
        except KeyboardInterrupt:
            continue  # Ctrl-C at the prompt drops the line
        except EOFError:
            break

        if not line.strip():
            continue
        if handle_command(session, line, out=out):
            continue
        run_turn(session, line, cancel, out=out)


if __name__ == "__main__":
    main()
