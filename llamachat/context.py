"""Context window accounting and batched evaluation."""

from .report import ContextOverflowError, EngineError


class ContextWindow:
    """Tracks how many tokens occupy the engine's context.

    ``n_past`` never exceeds ``capacity()``; advance() raises instead.
    """

    def __init__(self, capacity: int, n_ctx_train: int | None = None):
        if capacity <= 0:
            raise ValueError(f"context capacity must be positive, got {capacity}")
        self._capacity = capacity
        self.n_ctx_train = n_ctx_train if n_ctx_train is not None else capacity
        self.n_past = 0

    def capacity(self) -> int:
        return self._capacity

    def remaining(self) -> int:
        return self._capacity - self.n_past

    def advance(self, k: int) -> None:
        if k < 0:
            raise ValueError(f"cannot advance by a negative count ({k})")
        if k > self.remaining():
            raise ContextOverflowError(self.n_past, self.n_ctx_train)
        self.n_past += k


def evaluate(session, tokens: list[int], n_batch: int | None = None) -> None:
    """Push ``tokens`` through the engine in chunks of at most ``n_batch``.

    Each chunk is placed at the current ``n_past`` and the window advances
    after the engine accepts it. Any rejection is a ContextOverflowError.
    """
    if n_batch is None:
        n_batch = session.n_batch
    if n_batch <= 0:
        raise ValueError(f"n_batch must be positive, got {n_batch}")

    window = session.window
    for i in range(0, len(tokens), n_batch):
        chunk = tokens[i : i + n_batch]
        if len(chunk) > window.remaining():
            raise ContextOverflowError(window.n_past, window.n_ctx_train)
        try:
            session.engine.decode(chunk, window.n_past)
        except EngineError as e:
            raise ContextOverflowError(window.n_past, window.n_ctx_train) from e
        window.advance(len(chunk))


def eval_token(session, token: int) -> None:
    evaluate(session, [token], 1)


def eval_string(
    session, text: str, *, add_special: bool, parse_special: bool
) -> list[int]:
    """Tokenize ``text`` and evaluate it. Returns the tokens."""
    tokens = session.engine.tokenize(
        text, add_special=add_special, parse_special=parse_special
    )
    evaluate(session, tokens)
    return tokens
