"""Inference engine adapter over llama-cpp-python.

Everything the chat loop needs from the model goes through LlamaEngine, so
tests can swap in a fake with the same methods.
"""

import logging
import time
from pathlib import Path

from .report import (
    ContextInitError,
    EngineError,
    ModelLoadError,
    PerfCounters,
)

logger = logging.getLogger(__name__)

CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "{{ '<|im_start|>' + message['role'] + '\n' + message['content'] + '<|im_end|>\n' }}"
    "{% endfor %}"
    "{% if add_generation_prompt %}{{ '<|im_start|>assistant\n' }}{% endif %}"
)


class LlamaEngine:
    """Owns one llama_cpp.Llama (model + context) for the life of the process."""

    def __init__(self, llm, *, chat_template: str | None = None):
        self._llm = llm
        self._chat_template = chat_template
        self._formatters: dict[bool, object] = {}
        self.perf = PerfCounters()
        self.metadata: dict[str, str] = dict(getattr(llm, "metadata", None) or {})

    @classmethod
    def load(
        cls,
        model_path: str,
        *,
        n_ctx: int,
        n_batch: int,
        n_gpu_layers: int = 0,
        seed: int | None = None,
        chat_template: str | None = None,
    ) -> "LlamaEngine":
        """Load the model and create its context.

        Raises ModelLoadError or ContextInitError depending on which phase
        failed, so callers can exit with distinct statuses.
        """
        path = Path(model_path).expanduser()
        if not path.is_file():
            raise ModelLoadError(f"model file not found: {model_path}")

        from llama_cpp import Llama

        kwargs = dict(
            model_path=str(path),
            n_ctx=n_ctx,
            n_batch=n_batch,
            n_gpu_layers=n_gpu_layers,
            verbose=False,
        )
        if seed is not None:
            kwargs["seed"] = seed

        t0 = time.monotonic()
        try:
            llm = Llama(**kwargs)
        except ValueError as e:
            # llama_cpp reports both phases as ValueError; only the context
            # phase names llama_context.
            if "llama_context" in str(e):
                raise ContextInitError(f"failed to create context: {e}") from e
            raise ModelLoadError(f"failed to load model {model_path}: {e}") from e

        engine = cls(llm, chat_template=chat_template)
        engine.perf.record_load(time.monotonic() - t0)
        logger.debug("loaded %s (n_ctx=%d)", path, engine.n_ctx())
        return engine

    # -- Model facts ---------------------------------------------------------

    def n_ctx(self) -> int:
        return self._llm.n_ctx()

    def n_ctx_train(self) -> int:
        """Context length the model was trained with (falls back to n_ctx)."""
        arch = self.metadata.get("general.architecture")
        value = self.metadata.get(f"{arch}.context_length") if arch else None
        try:
            return int(value)
        except (TypeError, ValueError):
            return self.n_ctx()

    def should_add_bos(self) -> bool:
        value = self.metadata.get("tokenizer.ggml.add_bos_token")
        if value is None:
            # SentencePiece vocabularies want BOS unless told otherwise.
            return self.metadata.get("tokenizer.ggml.model") == "llama"
        return value.lower() == "true"

    def is_eog(self, token: int) -> bool:
        """True for any end-of-generation token the vocabulary defines.

        Covers EOS, EOT, EOM and the tokens llama.cpp flags by text, such as
        Phi-3 ``<|end|>``.
        """
        from llama_cpp import llama_vocab_is_eog

        return bool(llama_vocab_is_eog(self._llm._model.vocab, token))

    # -- Text <-> tokens -----------------------------------------------------

    def tokenize(
        self, text: str, *, add_special: bool, parse_special: bool
    ) -> list[int]:
        try:
            return self._llm.tokenize(
                text.encode("utf-8"), add_bos=add_special, special=parse_special
            )
        except RuntimeError as e:
            raise EngineError(f"tokenization failed: {e}") from e

    def token_to_piece(self, token: int, special: bool = False) -> bytes:
        """Raw bytes for one token; may be a partial UTF-8 sequence."""
        return self._llm.detokenize([token], special=special)

    # -- Evaluation ----------------------------------------------------------

    def decode(self, tokens: list[int], n_past: int) -> None:
        """Evaluate ``tokens`` placed at context offset ``n_past``.

        Raises EngineError when the context has no room or llama.cpp rejects
        the batch.
        """
        if n_past != self._llm.n_tokens:
            raise EngineError(
                f"context offset {n_past} does not match engine state {self._llm.n_tokens}"
            )
        if n_past + len(tokens) > self.n_ctx():
            raise EngineError(
                f"no room for {len(tokens)} tokens at offset {n_past} (n_ctx={self.n_ctx()})"
            )
        t0 = time.monotonic()
        try:
            self._llm.eval(tokens)
        except (RuntimeError, ValueError) as e:
            raise EngineError(f"decode failed: {e}") from e
        self.perf.record_decode(time.monotonic() - t0, len(tokens))

    def sample(self, params, logits_processor=None) -> int:
        """Pick the next token from the current logits.

        Repetition penalties are left to ``logits_processor`` so the caller's
        sampling history is the only one that biases the choice.
        """
        from llama_cpp import LogitsProcessorList

        processors = LogitsProcessorList([logits_processor]) if logits_processor else None
        t0 = time.monotonic()
        token = self._llm.sample(
            top_k=params.top_k,
            top_p=params.top_p,
            min_p=params.min_p,
            temp=params.temperature,
            repeat_penalty=1.0,
            frequency_penalty=0.0,
            presence_penalty=0.0,
            logits_processor=processors,
        )
        self.perf.record_sample(time.monotonic() - t0)
        return token

    # -- Chat template -------------------------------------------------------

    def _special_text(self, token: int) -> str:
        if token < 0:
            return ""
        return self._llm.detokenize([token], special=True).decode(
            "utf-8", errors="ignore"
        )

    def _formatter(self, add_assistant: bool):
        formatter = self._formatters.get(add_assistant)
        if formatter is None:
            from llama_cpp.llama_chat_format import Jinja2ChatFormatter

            template = (
                self._chat_template
                or self.metadata.get("tokenizer.chat_template")
                or CHATML_TEMPLATE
            )
            # BOS is the tokenizer's job (add_special), never the template's:
            # every turn is rendered as if it were the first message.
            formatter = Jinja2ChatFormatter(
                template=template,
                eos_token=self._special_text(self._llm.token_eos()),
                bos_token="",
                add_generation_prompt=add_assistant,
            )
            self._formatters[add_assistant] = formatter
        return formatter

    def apply_chat_template(
        self, role: str, content: str, *, add_assistant: bool
    ) -> str:
        """Render one ``role`` turn, optionally followed by the assistant prefix.

        The result never starts with the BOS text, even for templates that
        hard-code it.
        """
        try:
            result = self._formatter(add_assistant)(
                messages=[{"role": role, "content": content}]
            )
        except Exception as e:
            raise EngineError(f"chat template failed: {e}") from e
        prompt = result.prompt
        bos = self._special_text(self._llm.token_bos())
        if bos and prompt.startswith(bos):
            prompt = prompt[len(bos) :]
        return prompt

    # -- Diagnostics / lifetime ----------------------------------------------

    def perf_report(self) -> list[str]:
        return self.perf.lines()

    def close(self) -> None:
        self._llm.close()
