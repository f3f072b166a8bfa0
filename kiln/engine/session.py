"""Per-conversation session state: attention cache + token history.

A session is mutated in place by every decode step. Generation holds the
session's write lock for the whole decode loop; inspection and serialization
take the read lock and may overlap with each other but never with a writer.

Serialized layout (version 1):

    b"KILN" | u16 big-endian format version | 64-byte model fingerprint | torch.save payload

The payload is `{"tokens": [...], "cache": backend.export_cache(cache)}`. It is
loaded in weights-only mode, so backends must export plain containers of
tensors and numbers; arbitrary objects in a buffer are rejected, never run.
"""

from __future__ import annotations

import io
import struct
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterator

import torch

from .errors import CorruptSession, SessionCopyError
from .snapshots import compute_model_compatibility

if TYPE_CHECKING:
    from .adapters.base import BaseBackend


_MAGIC = b"KILN"
_FORMAT_VERSION = 1
_HEADER = struct.Struct(">4sH64s")


class ReadWriteLock:
    """Multi-reader / single-writer lock.

    Once a writer is waiting, new readers queue behind it so a steady stream of
    readers cannot starve generation.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class SessionState:
    """Mutable session contents. `len(tokens)` always equals the cache position."""

    cache: Any = None
    tokens: list[int] = field(default_factory=list)


class Session:
    """A conversation's attention cache and token history."""

    def __init__(self, state: SessionState | None = None) -> None:
        self._state = state if state is not None else SessionState()
        self._lock = ReadWriteLock()

    @contextmanager
    def read(self) -> Iterator[SessionState]:
        """Shared access. Do not mutate the yielded state."""
        with self._lock.read():
            yield self._state

    @contextmanager
    def write(self) -> Iterator[SessionState]:
        """Exclusive access for the duration of a decode loop."""
        with self._lock.write():
            yield self._state

    @property
    def tokens(self) -> list[int]:
        with self.read() as state:
            return list(state.tokens)

    def serialize(self, backend: BaseBackend) -> bytes:
        fingerprint = compute_model_compatibility(backend=backend)["fingerprint"]
        buf = io.BytesIO()
        with self.read() as state:
            payload = {
                "tokens": list(state.tokens),
                "cache": None if state.cache is None else backend.export_cache(state.cache),
            }
            buf.write(_HEADER.pack(_MAGIC, _FORMAT_VERSION, fingerprint.encode("ascii")))
            torch.save(payload, buf)
        return buf.getvalue()

    @classmethod
    def deserialize(cls, data: bytes, backend: BaseBackend) -> "Session":
        if len(data) < _HEADER.size:
            raise CorruptSession("Session buffer is truncated.")

        magic, version, fingerprint = _HEADER.unpack_from(data)
        if magic != _MAGIC:
            raise CorruptSession("Not a serialized kiln session.")
        if version != _FORMAT_VERSION:
            raise CorruptSession(f"Unsupported session format version: {version}")

        expected = compute_model_compatibility(backend=backend)["fingerprint"]
        if fingerprint.decode("ascii", errors="replace") != expected:
            raise CorruptSession("Session was produced by an incompatible model configuration.")

        try:
            payload = torch.load(
                io.BytesIO(data[_HEADER.size :]),
                map_location=backend.device,
                weights_only=True,
            )
        except Exception as exc:
            raise CorruptSession(f"Session payload could not be decoded: {exc}") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("tokens"), list):
            raise CorruptSession("Invalid session payload (expected dict with a token list).")
        tokens = payload["tokens"]
        if not all(isinstance(t, int) for t in tokens):
            raise CorruptSession("Session token history must contain integers.")

        cache = None
        if payload.get("cache") is not None:
            try:
                cache = backend.import_cache(payload["cache"])
            except Exception as exc:
                raise CorruptSession(f"Session cache could not be restored: {exc}") from exc

        if backend.cache_length(cache) != len(tokens):
            raise CorruptSession(
                f"Session cache length {backend.cache_length(cache)} does not match "
                f"token history length {len(tokens)}."
            )
        return cls(SessionState(cache=cache, tokens=list(tokens)))

    def duplicate(self, backend: BaseBackend) -> "Session":
        """Deep copy; later mutation of either session does not affect the other."""
        with self.read() as state:
            cache = None
            if state.cache is not None:
                try:
                    cache = backend.copy_cache(state.cache)
                except (MemoryError, RuntimeError) as exc:
                    raise SessionCopyError(f"Could not copy session cache: {exc}") from exc
            return Session(SessionState(cache=cache, tokens=list(state.tokens)))
