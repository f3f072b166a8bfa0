"""Async front end over a locally loaded model.

Every call is turned into a task on the model's `Dispatcher`; coroutines only
await the task's completion, so the event loop is never blocked by model work.

Example:
    >>> llm = LLM.from_pretrained("Qwen/Qwen2.5-0.5B-Instruct", device="cpu")
    >>> async def main():
    ...     stream = llm.stream_text("The capital of France is", max_tokens=8)
    ...     async for chunk in stream:
    ...         print(chunk, end="", flush=True)
    ...     print((await stream.result()).finish_reason)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from .dispatcher import (
    Completion,
    Dispatcher,
    StructuredGenerationTask,
    UnstructuredGenerationTask,
)
from .interface import LanguageModel
from .model import EngineConfig, LocalModel
from .registry import get_backend
from .sampler import GenerationParameters
from .session import Session
from .types import ConstrainedOutput, GenerationRequest, GenerationResult, ModelInfo

if TYPE_CHECKING:
    from .adapters.base import BaseBackend
    from .constraints import ConstraintOracle
    from .sampler import Sampler
    from .types import TokenSink

T = TypeVar("T")

_END = object()


def _queue_sink(loop: asyncio.AbstractEventLoop, chunks: asyncio.Queue) -> TokenSink:
    def sink(text: str) -> None:
        loop.call_soon_threadsafe(chunks.put_nowait, text)

    return sink


class TextStream:
    """Async iterator over the confirmed text chunks of one generation.

    Iteration ends when generation finishes; a failed generation raises its error
    from the iterator. Closing or dropping the stream abandons the request, and
    the decode loop stops within one step.
    """

    def __init__(self, completion: Completion, chunks: asyncio.Queue) -> None:
        self._completion = completion
        self._chunks = chunks
        self._finished = False
        completion.future.add_done_callback(lambda _: chunks.put_nowait(_END))

    def __aiter__(self) -> "TextStream":
        return self

    async def __anext__(self) -> str:
        if self._finished or self._completion.is_closed():
            raise StopAsyncIteration
        item = await self._chunks.get()
        if item is _END:
            self._finished = True
            future = self._completion.future
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()
            raise StopAsyncIteration
        return item

    async def text(self) -> str:
        """Consume the rest of the stream and return it as one string."""
        return "".join([chunk async for chunk in self])

    async def result(self) -> GenerationResult:
        """Wait for the terminal result (chunks not yet read are discarded)."""
        return await self._completion.future

    def cancel(self) -> None:
        self._completion.abandon()

    async def aclose(self) -> None:
        self.cancel()

    def __del__(self) -> None:
        self._completion.abandon()


class LLM(LanguageModel):
    """In-process language model served by a single dispatcher thread."""

    def __init__(self, backend: BaseBackend, *, config: EngineConfig | None = None) -> None:
        self._config = config or EngineConfig()
        self._model = LocalModel(backend, config=self._config)
        self._dispatcher = Dispatcher(self._model, name=self._config.dispatcher_name)

    @classmethod
    def from_pretrained(
        cls,
        model_path: str,
        *,
        family: str = "transformers",
        config: EngineConfig | None = None,
        **load_kwargs: Any,
    ) -> "LLM":
        """Load a backend of the given family and start its dispatcher."""
        backend = get_backend(family)
        backend.load(model_path, **load_kwargs)
        return cls(backend, config=config)

    @property
    def backend(self) -> BaseBackend:
        return self._model.backend

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def model_info(self) -> ModelInfo:
        return self._model.backend.model_info

    @property
    def stopped(self) -> bool:
        return self._dispatcher.closed or not self._dispatcher.is_alive()

    # -------------------------------------------------------------------------
    # Model contract
    # -------------------------------------------------------------------------

    def new_session(self) -> Session:
        return Session()

    async def feed_text(self, session: Session, text: str) -> None:
        if not text:
            return
        await self.run_sync(lambda model: model.feed_text(session, text))

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
        completion = Completion(asyncio.get_running_loop())
        request = self._build_request(
            session, prompt, sampler, on_token, stop_on=stop_on, max_tokens=max_tokens
        )
        self._dispatcher.submit(UnstructuredGenerationTask(request, completion))
        return await completion.future

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
        completion = Completion(asyncio.get_running_loop())
        request = self._build_request(session, prompt, sampler, on_token, stop_on=None, max_tokens=max_tokens)
        # Stop phrases do not apply to constrained output.
        request.stop_on = None

        def run(model: LocalModel) -> ConstrainedOutput:
            return model.generate_constrained(request, constraint, is_cancelled=completion.is_closed)

        self._dispatcher.submit(StructuredGenerationTask(run, completion))
        return await completion.future

    def stream_text(
        self,
        prompt: str,
        *,
        session: Session | None = None,
        sampler: Sampler | None = None,
        stop_on: str | None = None,
        max_tokens: int | None = None,
    ) -> TextStream:
        """Submit a generation now and return a stream of its chunks.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        chunks: asyncio.Queue = asyncio.Queue()
        completion = Completion(loop)
        request = self._build_request(
            session if session is not None else self.new_session(),
            prompt,
            sampler if sampler is not None else GenerationParameters(),
            _queue_sink(loop, chunks),
            stop_on=stop_on,
            max_tokens=max_tokens,
        )
        stream = TextStream(completion, chunks)
        self._dispatcher.submit(UnstructuredGenerationTask(request, completion))
        return stream

    async def run_sync(self, fn: Callable[[LocalModel], T]) -> T:
        """Run `fn(model)` on the dispatcher thread with exclusive access to the model."""
        completion = Completion(asyncio.get_running_loop())
        self._dispatcher.submit(StructuredGenerationTask(fn, completion))
        return await completion.future

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def save_session(self, session: Session) -> bytes:
        return session.serialize(self.backend)

    def load_session(self, data: bytes) -> Session:
        return Session.deserialize(data, self.backend)

    def duplicate_session(self, session: Session) -> Session:
        return session.duplicate(self.backend)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def shutdown(self, *, timeout: float | None = None) -> None:
        """Stop accepting work, let queued tasks finish, then unload the backend."""
        if self._dispatcher.closed:
            return
        self._dispatcher.close(wait=True, timeout=timeout)
        self.backend.unload()

    def _build_request(
        self,
        session: Session,
        prompt: str,
        sampler: Sampler,
        on_token: TokenSink,
        *,
        stop_on: str | None,
        max_tokens: int | None,
    ) -> GenerationRequest:
        if stop_on is None:
            stop_on = getattr(sampler, "stop_on", None)
        if max_tokens is None:
            max_tokens = getattr(sampler, "max_length", None)
        if max_tokens is None:
            max_tokens = self._config.default_max_tokens
        if max_tokens is not None and max_tokens < 0:
            raise ValueError(f"max_tokens must be >= 0, got {max_tokens}")
        return GenerationRequest(
            prompt=prompt,
            session=session,
            sampler=sampler,
            on_token=on_token,
            stop_on=stop_on or None,
            max_tokens=max_tokens,
        )
