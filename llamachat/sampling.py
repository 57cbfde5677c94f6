"""Token sampling: penalty history, cancellation and the streaming loop."""

import codecs
import signal
import sys
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

import numpy as np

from .context import eval_token


@dataclass
class SamplingParams:
    temperature: float = 0.8
    top_k: int = 40
    top_p: float = 0.95
    min_p: float = 0.05
    repeat_penalty: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    penalty_last_n: int = 64  # -1 = whole session


class SamplingState:
    """Recent-token history plus the penalties it drives.

    Only tokens passed to accept() count towards the penalties.
    """

    def __init__(self, params: SamplingParams | None = None):
        self.params = params or SamplingParams()
        n = self.params.penalty_last_n
        self.history: deque[int] = deque(maxlen=None if n < 0 else n)

    def _penalties_active(self) -> bool:
        p = self.params
        return bool(self.history) and (
            p.repeat_penalty != 1.0
            or p.frequency_penalty != 0.0
            or p.presence_penalty != 0.0
        )

    def penalize(self, input_ids, scores):
        """Logits processor applying repeat/frequency/presence penalties."""
        if not self._penalties_active():
            return scores
        p = self.params
        ids, counts = np.unique(np.array(self.history, dtype=np.int64), return_counts=True)
        keep = ids < len(scores)
        ids, counts = ids[keep], counts[keep]

        scores = np.array(scores, copy=True)
        logits = scores[ids]
        logits = np.where(logits <= 0, logits * p.repeat_penalty, logits / p.repeat_penalty)
        logits = logits - (counts * p.frequency_penalty + p.presence_penalty)
        scores[ids] = logits
        return scores

    def sample(self, engine) -> int:
        return engine.sample(self.params, self.penalize)

    def accept(self, token: int) -> None:
        self.history.append(token)

    def reset(self) -> None:
        self.history.clear()


# -- Cancellation ------------------------------------------------------------


class CancelToken:
    """Single-slot cancellation flag.

    set() only flips a bool, so it is safe to call from a signal handler.
    """

    def __init__(self):
        self._cancelled = False

    def set(self) -> None:
        self._cancelled = True

    def clear(self) -> None:
        self._cancelled = False

    def is_set(self) -> bool:
        return self._cancelled


@contextmanager
def cancel_on_sigint(token: CancelToken):
    """Route SIGINT to ``token`` for the duration of the block."""

    def _on_sigint(signum, frame):
        token.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


# -- Sampling loop -----------------------------------------------------------


class StopReason(str, Enum):
    END_OF_GENERATION = "eog"
    CANCELLED = "cancelled"
    LENGTH = "length"


def generate(session, cancel: CancelToken, out=None, max_tokens: int = -1) -> StopReason:
    """Sample and stream tokens until end-of-generation or cancellation.

    Every emitted token is written and flushed, then evaluated so it is part
    of the context before the next one is sampled. The cancellation token is
    polled once per token; an in-flight decode is never interrupted.
    """
    if out is None:
        out = sys.stdout
    engine = session.engine
    sampler = session.sampler
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    n_emitted = 0
    try:
        while True:
            if cancel.is_set():
                return StopReason.CANCELLED
            if 0 <= max_tokens <= n_emitted:
                return StopReason.LENGTH

            token = sampler.sample(engine)
            sampler.accept(token)
            if engine.is_eog(token):
                return StopReason.END_OF_GENERATION

            text = decoder.decode(engine.token_to_piece(token, session.special))
            if text:
                out.write(text)
                out.flush()
            eval_token(session, token)
            n_emitted += 1
    finally:
        tail = decoder.decode(b"", final=True)
        if tail:
            out.write(tail)
            out.flush()
