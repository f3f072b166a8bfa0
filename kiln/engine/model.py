"""Synchronous model owner and decode loop.

`LocalModel` wraps a backend and is only ever called from the dispatcher thread,
so it keeps no locks of its own besides the per-session read/write lock taken
for the duration of a decode loop. It contains no asyncio code.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Sequence

from .constraints import ConstraintOracle
from .detokenizer import IncrementalDetokenizer
from .errors import EncodingError, ForwardPassError, SinkError
from .sampler import DEFAULT_TOP_K_LOGITS, Logits
from .types import ConstrainedOutput, GenerationRequest, GenerationResult, Timing, Usage

if TYPE_CHECKING:
    from .adapters.base import BaseBackend
    from .session import Session, SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits."""

    top_k_logits: int = DEFAULT_TOP_K_LOGITS
    max_prompt_tokens: int = 262_144
    default_max_tokens: int | None = None
    dispatcher_name: str = "kiln-dispatcher"

    def __post_init__(self) -> None:
        if self.top_k_logits <= 0:
            raise ValueError(f"top_k_logits must be > 0, got {self.top_k_logits}")
        if self.max_prompt_tokens <= 0:
            raise ValueError(f"max_prompt_tokens must be > 0, got {self.max_prompt_tokens}")
        if self.default_max_tokens is not None and self.default_max_tokens < 0:
            raise ValueError("default_max_tokens must be >= 0")


class _StopTokenGate(ConstraintOracle):
    """Admits the stop token exactly when the wrapped oracle may end."""

    def __init__(self, inner: ConstraintOracle, stop_token_id: int) -> None:
        self._inner = inner
        self._stop_token_id = stop_token_id

    def accepts(self, token_id: int) -> bool:
        if token_id == self._stop_token_id:
            return self._inner.may_end
        return self._inner.accepts(token_id)

    def advance(self, token_id: int) -> None:
        self._inner.advance(token_id)

    @property
    def is_complete(self) -> bool:
        return self._inner.is_complete

    @property
    def may_end(self) -> bool:
        return self._inner.may_end

    def output(self) -> Any:
        return self._inner.output()


class LocalModel:
    """Backend + tokenizer + decode loop. Not thread-safe; the dispatcher is the only caller."""

    def __init__(self, backend: BaseBackend, *, config: EngineConfig | None = None) -> None:
        self._backend = backend
        self._config = config or EngineConfig()

    @property
    def backend(self) -> BaseBackend:
        return self._backend

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tokenizer(self) -> Any:
        return self._backend.tokenizer

    @property
    def stop_token_id(self) -> int:
        return self._backend.stop_token_id

    def encode(self, text: str) -> list[int]:
        try:
            ids = [int(t) for t in self.tokenizer.encode(text, add_special_tokens=False)]
        except Exception as exc:
            raise EncodingError(f"Failed to tokenize prompt: {exc}") from exc
        if len(ids) > self._config.max_prompt_tokens:
            raise EncodingError(
                f"Prompt too long: {len(ids)} tokens (max={self._config.max_prompt_tokens})."
            )
        return ids

    def forward(self, tokens: Sequence[int], state: SessionState) -> Logits:
        """Evaluate `tokens` against the session cache and return the truncated next-token logits.

        The caller must hold the session's write lock. Cache and token history are
        only updated once the backend call succeeds.
        """
        if not tokens:
            raise ForwardPassError("Cannot run model on empty input")
        try:
            scores, cache = self._backend.forward(tokens, state.cache, start_pos=len(state.tokens))
            logits = Logits.from_scores(scores, self._config.top_k_logits)
        except Exception as exc:
            raise ForwardPassError(f"Forward pass failed: {exc}") from exc
        state.cache = cache
        state.tokens.extend(int(t) for t in tokens)
        return logits

    def feed_text(self, session: Session, text: str) -> int:
        """Advance the session over `text` without sampling. Returns the number of tokens fed."""
        tokens = self.encode(text)
        if not tokens:
            return 0
        with session.write() as state:
            self.forward(tokens, state)
        return len(tokens)

    def generate(
        self,
        request: GenerationRequest,
        *,
        is_cancelled: Callable[[], bool],
    ) -> GenerationResult:
        """Run the decode loop for one request, streaming confirmed text to `request.on_token`."""
        return self._decode(request, is_cancelled=is_cancelled, constraint=None)

    def generate_constrained(
        self,
        request: GenerationRequest,
        constraint: ConstraintOracle,
        *,
        is_cancelled: Callable[[], bool],
    ) -> ConstrainedOutput:
        parts: list[str] = []
        sink = request.on_token

        def collect(text: str) -> None:
            parts.append(text)
            sink(text)

        request.on_token = collect
        result = self._decode(request, is_cancelled=is_cancelled, constraint=constraint)
        complete = constraint.is_complete or (result.finish_reason == "stop" and constraint.may_end)
        return ConstrainedOutput(
            value=constraint.output() if complete else None,
            text="".join(parts),
            complete=complete,
            result=result,
        )

    def _decode(
        self,
        request: GenerationRequest,
        *,
        is_cancelled: Callable[[], bool],
        constraint: ConstraintOracle | None,
    ) -> GenerationResult:
        started = time.monotonic()
        if is_cancelled():
            logger.debug("Request abandoned before it started")
            return GenerationResult(
                finish_reason="cancelled",
                usage=Usage(prompt_tokens=0, completion_tokens=0),
                timing=Timing(total_s=0.0),
            )

        prompt_tokens = self.encode(request.prompt)
        if not prompt_tokens:
            raise EncodingError("Prompt encodes to no tokens.")

        def emit(text: str) -> None:
            if not text:
                return
            try:
                request.on_token(text)
            except Exception as exc:
                raise SinkError(f"Token callback failed: {exc}") from exc

        detokenizer = IncrementalDetokenizer(self.tokenizer, stop_on=request.stop_on)
        detokenizer.prime(prompt_tokens)

        max_tokens = request.max_tokens
        stop_token_id = self.stop_token_id
        gate = _StopTokenGate(constraint, stop_token_id) if constraint is not None else None
        completion_tokens = 0
        finish_reason = "stop"
        first_token_at: float | None = None

        with request.session.write() as state:
            logits = self.forward(prompt_tokens, state)
            first_token_at = time.monotonic()

            while True:
                if is_cancelled():
                    finish_reason = "cancelled"
                    break
                if max_tokens is not None and completion_tokens >= max_tokens:
                    finish_reason = "length"
                    break

                token_id = request.sampler.sample(logits, gate)
                if token_id == stop_token_id:
                    logger.debug("Stop token sampled after %d tokens", completion_tokens)
                    finish_reason = "stop"
                    break

                completion_tokens += 1
                step = detokenizer.next_token(token_id)
                emit(step.text)
                if step.stopped:
                    logger.debug("Stop phrase %r matched", request.stop_on)
                    finish_reason = "stop_phrase"
                    break

                if constraint is not None:
                    constraint.advance(token_id)
                    if constraint.is_complete:
                        finish_reason = "stop"
                        break

                logits = self.forward([token_id], state)

            if finish_reason != "cancelled":
                emit(detokenizer.finish())

        ended = time.monotonic()
        decode_s = max(ended - first_token_at, 0.0)
        tok_per_s = completion_tokens / decode_s if decode_s > 0 and completion_tokens > 0 else None
        result = GenerationResult(
            finish_reason=finish_reason,
            usage=Usage(prompt_tokens=len(prompt_tokens), completion_tokens=completion_tokens),
            timing=Timing(
                prefill_s=max(first_token_at - started, 0.0),
                decode_s=decode_s,
                total_s=max(ended - started, 0.0),
                tok_per_s=tok_per_s,
            ),
        )
        logger.debug(
            "Generation finished: reason=%s prompt_tokens=%d completion_tokens=%d total_s=%.3f",
            result.finish_reason,
            result.usage.prompt_tokens,
            result.usage.completion_tokens,
            result.timing.total_s,
        )
        return result
