"""Engine request and result types.

These types are used internally by the engine and backends.
They are independent of any HTTP/API layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Literal

if TYPE_CHECKING:
    from .sampler import Sampler
    from .session import Session


TokenSink = Callable[[str], None]

FinishReason = Literal["stop", "stop_phrase", "length", "cancelled"]


@dataclass
class GenerationRequest:
    """One unconstrained generation call. Consumed once by the dispatcher."""

    prompt: str
    session: Session
    sampler: Sampler
    on_token: TokenSink
    stop_on: str | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Terminal outcome of a successful generation."""

    finish_reason: FinishReason
    usage: Usage
    timing: Timing = field(default_factory=Timing)


@dataclass(frozen=True)
class ConstrainedOutput:
    """Result of constrained generation.

    `value` is the oracle's parsed output, or None if generation ended before
    the oracle was satisfied (`complete=False`).
    """

    value: Any
    text: str
    complete: bool
    result: GenerationResult


@dataclass
class ModelInfo:
    """Information about a loaded model."""

    model_path: str
    model_family: str
    dtype: str
    device: str
    vocab_size: int | None = None
    stop_token_id: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)
