"""Configuration file loading and merging for llamachat.

Reads TOML config from ~/.config/llamachat/config.toml (global) and
<base_dir>/llamachat.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError
from .sampling import SamplingParams

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_SYSTEM_PROMPT = (
    "A chat between a curious human and an artificial intelligence assistant. The "
    "assistant gives helpful, detailed, and polite answers to the human's questions."
)


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "ctx_size": int,
    "batch_size": int,
    "n_gpu_layers": int,
    "n_predict": int,
    "temperature": (int, float),
    "top_k": int,
    "top_p": (int, float),
    "min_p": (int, float),
    "repeat_penalty": (int, float),
    "repeat_last_n": int,
    "frequency_penalty": (int, float),
    "presence_penalty": (int, float),
    "seed": int,
    "system_prompt": str,
    "chat_template": str,
    "history_file": str,
    "special": bool,
    "no_history": bool,
    "verbose": bool,
    "color": bool,
}

_PATH_KEYS = ("model", "history_file")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": None,
    "ctx_size": 8192,
    "batch_size": 2048,
    "n_gpu_layers": 0,
    "n_predict": -1,
    "temperature": 0.8,
    "top_k": 40,
    "top_p": 0.95,
    "min_p": 0.05,
    "repeat_penalty": 1.0,
    "repeat_last_n": 64,
    "frequency_penalty": 0.0,
    "presence_penalty": 0.0,
    "seed": None,
    "system_prompt": None,
    "chat_template": None,
    "history_file": None,
    "special": False,
    "no_history": False,
    "verbose": False,
    "color": False,
    "no_color": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "llamachat"
    return Path.home() / ".config" / "llamachat"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    _validate_ranges(config, source)


def _validate_ranges(values: dict, source: str) -> None:
    ctx_size = values.get("ctx_size")
    if ctx_size is not None and ctx_size < 0:
        raise ConfigError(f"{source}: 'ctx_size' must be >= 0, got {ctx_size}")
    batch_size = values.get("batch_size")
    if batch_size is not None and batch_size < 1:
        raise ConfigError(f"{source}: 'batch_size' must be >= 1, got {batch_size}")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    for key in _PATH_KEYS:
        if key in config:
            expanded = Path(config[key]).expanduser()
            if expanded.is_absolute():
                config[key] = str(expanded)
            else:
                config[key] = str(config_dir / config[key])


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    Relative paths are resolved against each config file's parent directory.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "llamachat.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _resolve_paths(project_config, project_path.parent)

    # Project overrides global (shallow)
    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS, then
    checks the ranges of the merged values.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    _validate_ranges(vars(args), "command line")


def sampling_params_from_args(args: argparse.Namespace) -> SamplingParams:
    return SamplingParams(
        temperature=float(args.temperature),
        top_k=args.top_k,
        top_p=float(args.top_p),
        min_p=float(args.min_p),
        repeat_penalty=float(args.repeat_penalty),
        frequency_penalty=float(args.frequency_penalty),
        presence_penalty=float(args.presence_penalty),
        penalty_last_n=args.repeat_last_n,
    )


def default_history_path() -> Path:
    xdg = os.environ.get("XDG_STATE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "state"
    return base / "llamachat" / "history"


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# llamachat configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/llamachat.toml' if project else '~/.config/llamachat/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model ---",
        '# model = "~/models/llama-3.2-3b-instruct.Q4_K_M.gguf"',
        "# n_gpu_layers = 0",
        '# chat_template = "{% for m in messages %}...{% endfor %}"',
        "",
        "# --- Context ---",
        "# ctx_size = 8192            # 0 = the model's training context",
        "# batch_size = 2048",
        "",
        "# --- Generation parameters ---",
        "# n_predict = -1             # -1 = until end of generation",
        "# temperature = 0.8",
        "# top_k = 40",
        "# top_p = 0.95",
        "# min_p = 0.05",
        "# repeat_penalty = 1.0",
        "# repeat_last_n = 64",
        "# frequency_penalty = 0.0",
        "# presence_penalty = 0.0",
        "# seed = 42",
        "",
        "# --- Conversation ---",
        f'# system_prompt = "{DEFAULT_SYSTEM_PROMPT[:40]}..."',
        "# special = false            # print special tokens and the formatted prompt",
        "",
        "# --- UI ---",
        '# history_file = "~/.local/state/llamachat/history"',
        "# no_history = false",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# verbose = false",
        "",
    ]
    return "\n".join(lines)
