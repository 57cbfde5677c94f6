"""Shared fixtures: a scripted stand-in for the llama.cpp engine."""

import pytest

from llamachat.report import EngineError
from llamachat.session import Session

EOG = 2


class FakeEngine:
    """Records every call and samples tokens from a fixed script.

    Token ids render as ``pieces[id]`` (default ``<id>``). Once the script
    runs out, sample() returns the end-of-generation token.
    """

    def __init__(self, n_ctx=64, n_ctx_train=128, script=(), pieces=None, add_bos=True):
        self._n_ctx = n_ctx
        self._n_ctx_train = n_ctx_train
        self.script = list(script)
        self.pieces = dict(pieces or {})
        self.add_bos = add_bos
        self.calls: list[tuple] = []
        self.decoded: list[tuple[list[int], int]] = []
        self.closed = False
        self.on_sample = None

    def n_ctx(self):
        return self._n_ctx

    def n_ctx_train(self):
        return self._n_ctx_train

    def should_add_bos(self):
        return self.add_bos

    def tokenize(self, text, *, add_special, parse_special):
        self.calls.append(("tokenize", text, add_special, parse_special))
        return ([1] if add_special else []) + [100 + (ord(c) % 50) for c in text]

    def decode(self, tokens, n_past):
        self.calls.append(("decode", list(tokens), n_past))
        if n_past + len(tokens) > self._n_ctx:
            raise EngineError("no room")
        self.decoded.append((list(tokens), n_past))

    def sample(self, params, logits_processor=None):
        self.calls.append(("sample",))
        if self.on_sample is not None:
            self.on_sample()
        return self.script.pop(0) if self.script else EOG

    def is_eog(self, token):
        return token == EOG

    def token_to_piece(self, token, special=False):
        piece = self.pieces.get(token, f"<{token}>")
        return piece if isinstance(piece, bytes) else piece.encode("utf-8")

    def apply_chat_template(self, role, content, *, add_assistant):
        self.calls.append(("template", role, content, add_assistant))
        return f"[{role}]{content}" + ("[assistant]" if add_assistant else "")

    def perf_report(self):
        self.calls.append(("perf_report",))
        return ["load time = 1.00 ms", "eval time = 2.00 ms / 3 runs"]

    def close(self):
        self.closed = True


@pytest.fixture
def make_session():
    """Factory: make_session(n_batch=..., **FakeEngine kwargs) -> Session."""

    def _make(n_batch=8, sampling=None, special=False, n_predict=-1, **engine_kwargs):
        engine = FakeEngine(**engine_kwargs)
        return Session(
            engine,
            n_batch=n_batch,
            sampling=sampling,
            special=special,
            n_predict=n_predict,
        )

    return _make
