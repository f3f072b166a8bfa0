"""The model contract shared by every engine front end."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .constraints import ConstraintOracle
    from .sampler import Sampler
    from .session import Session
    from .types import ConstrainedOutput, GenerationResult, TokenSink


class LanguageModel(ABC):
    """
    Abstract language model.

    Implementations may run the model in-process (`kiln.engine.llm.LLM`) or talk
    to a remote service; callers only see sessions, text chunks and a terminal
    result.
    """

    @abstractmethod
    def new_session(self) -> Session:
        """Return an empty session (no cache, no token history)."""
        pass

    @abstractmethod
    async def feed_text(self, session: Session, text: str) -> None:
        """Advance the session over `text` without sampling."""
        pass

    @abstractmethod
    async def stream_text_with_callback(
        self,
        session: Session,
        prompt: str,
        sampler: Sampler,
        on_token: TokenSink,
        *,
        stop_on: str | None = None,
        max_tokens: int | None = None,
    ) -> GenerationResult:
        """
        Generate a continuation of `prompt`, passing each confirmed chunk to `on_token`.

        Args:
            session: Session whose cache the prompt and output extend.
            prompt: Text appended to the session before sampling.
            sampler: Sampling strategy (owns its own per-request state).
            on_token: Called zero or more times with confirmed text chunks.
            stop_on: Optional case-insensitive stop phrase; never emitted.
            max_tokens: Optional cap on sampled tokens.

        Returns:
            The terminal `GenerationResult`.
        """
        pass

    @abstractmethod
    async def stream_text_with_callback_and_constraints(
        self,
        session: Session,
        prompt: str,
        sampler: Sampler,
        constraint: ConstraintOracle,
        on_token: TokenSink,
        *,
        max_tokens: int | None = None,
    ) -> ConstrainedOutput:
        """Like `stream_text_with_callback`, but only tokens `constraint` accepts are sampled."""
        pass

    @abstractmethod
    def save_session(self, session: Session) -> bytes:
        pass

    @abstractmethod
    def load_session(self, data: bytes) -> Session:
        pass
