"""Public library API for llamachat: the Session class."""

from .context import ContextWindow, eval_string
from .engine import LlamaEngine
from .sampling import CancelToken, SamplingParams, SamplingState, StopReason, generate


class Session:
    """One chat run over a loaded model.

    Holds the engine, the context window accounting and the sampling state.
    Earlier turns are not stored here; they live in the engine's context.
    Call .ask() once per user turn.
    """

    def __init__(
        self,
        engine,
        *,
        n_batch: int = 2048,
        sampling: SamplingParams | None = None,
        special: bool = False,
        n_predict: int = -1,
    ):
        if n_batch <= 0:
            raise ValueError(f"n_batch must be positive, got {n_batch}")
        self.engine = engine
        self.window = ContextWindow(engine.n_ctx(), engine.n_ctx_train())
        self.sampler = SamplingState(sampling)
        self.n_batch = n_batch
        self.special = special
        self.n_predict = n_predict

    @classmethod
    def open(
        cls,
        model_path: str,
        *,
        n_ctx: int,
        n_batch: int,
        n_gpu_layers: int = 0,
        seed: int | None = None,
        chat_template: str | None = None,
        sampling: SamplingParams | None = None,
        special: bool = False,
        n_predict: int = -1,
    ) -> "Session":
        """Load the model, create its context and initialize sampling."""
        engine = LlamaEngine.load(
            model_path,
            n_ctx=n_ctx,
            n_batch=n_batch,
            n_gpu_layers=n_gpu_layers,
            seed=seed,
            chat_template=chat_template,
        )
        return cls(
            engine,
            n_batch=n_batch,
            sampling=sampling,
            special=special,
            n_predict=n_predict,
        )

    @property
    def n_past(self) -> int:
        return self.window.n_past

    def load_system_prompt(self, prompt: str) -> str:
        """Evaluate ``prompt`` as the system turn. Returns the formatted text."""
        msg = self.engine.apply_chat_template("system", prompt, add_assistant=False)
        eval_string(
            self, msg, add_special=self.engine.should_add_bos(), parse_special=True
        )
        return msg

    def ask(self, line: str, cancel: CancelToken, out=None) -> StopReason:
        """Evaluate ``line`` as a user turn and stream the reply to ``out``."""
        cancel.clear()
        msg = self.engine.apply_chat_template("user", line, add_assistant=True)
        eval_string(self, msg, add_special=False, parse_special=True)
        return generate(self, cancel, out=out, max_tokens=self.n_predict)

    def close(self) -> None:
        self.sampler.reset()
        self.engine.close()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
