"""Error types and the engine performance report shown by /stats."""

import logging
import time
from contextlib import contextmanager

DIAGNOSTICS = logging.getLogger("llamachat.diagnostics")
DIAGNOSTICS.setLevel(logging.INFO)


class ChatError(Exception):
    """Raised for reportable runtime failures.

    ``exit_code`` is the process status main() exits with when the error
    reaches the top level.
    """

    exit_code = 1


class ConfigError(ChatError):
    """Raised for invalid configuration (bad type, missing model, etc.)."""


class EngineError(ChatError):
    """Raised when the inference engine rejects a call."""


class ContextOverflowError(ChatError):
    """Raised when the context window has no room left for more tokens."""

    def __init__(self, n_past: int, n_ctx_train: int):
        self.n_past = n_past
        self.n_ctx_train = n_ctx_train
        super().__init__(
            f"ran out of context window at {n_past} tokens; you can use the maximum "
            f"context window size by passing the flag `-c {n_ctx_train}` to llamachat."
        )


class InitializationError(ChatError):
    """Raised when the model or its context cannot be created at startup."""


class ModelLoadError(InitializationError):
    exit_code = 2


class ContextInitError(InitializationError):
    exit_code = 3


# -- Diagnostics switch ------------------------------------------------------


def set_diagnostics(enabled: bool) -> None:
    DIAGNOSTICS.disabled = not enabled


@contextmanager
def diagnostics_enabled():
    """Enable the diagnostics logger for the block, then restore its prior state."""
    was_disabled = DIAGNOSTICS.disabled
    DIAGNOSTICS.disabled = False
    try:
        yield DIAGNOSTICS
    finally:
        DIAGNOSTICS.disabled = was_disabled


# -- Timings -----------------------------------------------------------------


def _rate(ms: float, n: int) -> str:
    if n <= 0 or ms <= 0:
        return ""
    return f" ({ms / n:8.2f} ms per token, {1e3 * n / ms:8.2f} tokens per second)"


class PerfCounters:
    """Accumulates engine timings in milliseconds.

    Multi-token decodes count as prompt evaluation, single-token decodes as
    generation, the same split llama.cpp uses in its timing report.
    """

    def __init__(self):
        self.t_start = time.monotonic()
        self.load_ms = 0.0
        self.sample_ms = 0.0
        self.n_sample = 0
        self.prompt_eval_ms = 0.0
        self.n_prompt_eval = 0
        self.eval_ms = 0.0
        self.n_eval = 0

    def record_load(self, seconds: float) -> None:
        self.load_ms += seconds * 1e3

    def record_sample(self, seconds: float) -> None:
        self.sample_ms += seconds * 1e3
        self.n_sample += 1

    def record_decode(self, seconds: float, n_tokens: int) -> None:
        if n_tokens > 1:
            self.prompt_eval_ms += seconds * 1e3
            self.n_prompt_eval += n_tokens
        else:
            self.eval_ms += seconds * 1e3
            self.n_eval += n_tokens

    def lines(self) -> list[str]:
        total_ms = (time.monotonic() - self.t_start) * 1e3
        n_total = self.n_prompt_eval + self.n_eval
        return [
            f"       load time = {self.load_ms:10.2f} ms",
            f"     sample time = {self.sample_ms:10.2f} ms / {self.n_sample:5d} runs  "
            + _rate(self.sample_ms, self.n_sample),
            f"prompt eval time = {self.prompt_eval_ms:10.2f} ms / {self.n_prompt_eval:5d} tokens"
            + _rate(self.prompt_eval_ms, self.n_prompt_eval),
            f"       eval time = {self.eval_ms:10.2f} ms / {self.n_eval:5d} runs  "
            + _rate(self.eval_ms, self.n_eval),
            f"      total time = {total_ms:10.2f} ms / {n_total:5d} tokens",
        ]
