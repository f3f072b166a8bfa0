"""Single-owner execution context for a loaded model.

One daemon thread owns the `LocalModel` and drains a FIFO queue of tasks, so at
most one forward pass is ever in flight. Callers on an asyncio loop submit a
task and await its `Completion`; results cross back with
`loop.call_soon_threadsafe`.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Union

from .errors import KilnError, ModelStopped
from .types import GenerationRequest

if TYPE_CHECKING:
    from .model import LocalModel

logger = logging.getLogger(__name__)

_CLOSE = object()


class Completion:
    """Single-use terminal signal for one task.

    The caller side is an asyncio future. Cancelling that future (or calling
    `abandon()`) marks the completion as abandoned; the decode loop polls
    `is_closed()` once per step and stops.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._future: asyncio.Future = loop.create_future()
        self._abandoned = threading.Event()
        self._future.add_done_callback(self._on_done)

    @property
    def future(self) -> asyncio.Future:
        return self._future

    def _on_done(self, future: asyncio.Future) -> None:
        if future.cancelled():
            self._abandoned.set()

    def abandon(self) -> None:
        """Stop listening. Safe to call from any thread."""
        self._abandoned.set()

    def is_closed(self) -> bool:
        return self._abandoned.is_set()

    def set_result(self, value: Any) -> None:
        self._send(value, None)

    def set_exception(self, exc: BaseException) -> None:
        self._send(None, exc)

    def _send(self, value: Any, exc: BaseException | None) -> None:
        try:
            self._loop.call_soon_threadsafe(self._resolve, value, exc)
        except RuntimeError:
            logger.debug("Dropping completion: event loop is closed")

    def _resolve(self, value: Any, exc: BaseException | None) -> None:
        if self._future.done():
            return
        if exc is None:
            self._future.set_result(value)
        elif not self.is_closed():
            self._future.set_exception(exc)
        else:
            # Nobody is listening; resolve quietly so the failure is not reported twice.
            self._future.cancel()


@dataclass
class UnstructuredGenerationTask:
    """Free-text generation streamed through `request.on_token`."""

    request: GenerationRequest
    completion: Completion

    def run(self, model: LocalModel) -> None:
        result = model.generate(self.request, is_cancelled=self.completion.is_closed)
        self.completion.set_result(result)


@dataclass
class StructuredGenerationTask:
    """Arbitrary work with exclusive, synchronous access to the model."""

    fn: Callable[[LocalModel], Any]
    completion: Completion

    def run(self, model: LocalModel) -> None:
        if self.completion.is_closed():
            return
        self.completion.set_result(self.fn(model))


Task = Union[UnstructuredGenerationTask, StructuredGenerationTask]


class Dispatcher:
    """FIFO worker thread that serializes every task against one model."""

    def __init__(self, model: LocalModel, *, name: str = "kiln-dispatcher") -> None:
        self._model = model
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def submit(self, task: Task) -> None:
        """Enqueue a task. Never blocks on model work."""
        with self._lock:
            if self._closed or not self._thread.is_alive():
                raise ModelStopped()
            self._queue.put(task)

    def close(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop accepting tasks. Already-queued tasks still run before the worker exits."""
        with self._lock:
            if not self._closed:
                self._closed = True
                self._queue.put(_CLOSE)
        if wait and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            if task is _CLOSE:
                break
            try:
                task.run(self._model)
            except KilnError as exc:
                logger.warning("Request failed: %s", exc)
                task.completion.set_exception(exc)
            except BaseException as exc:
                # Only the close sentinel ends the worker, even SystemExit fails just this task.
                logger.exception("Error running model: %s", exc)
                task.completion.set_exception(exc)
        logger.debug("Dispatcher %s stopped", self._thread.name)
