import os
import sys
import threading
import time
from dataclasses import dataclass, field

import pytest
import torch


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


from kiln.engine.adapters.base import BaseBackend  # noqa: E402
from kiln.engine.llm import LLM  # noqa: E402
from kiln.engine.model import EngineConfig  # noqa: E402
from kiln.engine.types import ModelInfo  # noqa: E402


STOP = b"</s>"

_PIECES: list[bytes] = [
    STOP,
    b"<",
    b"/think",
    b">",
    b"done",
    b"The",
    b" capital",
    b" of",
    b" France",
    b" is",
    b" Paris",
    b".",
    b"\xc3",
    b"\xa9",
] + [bytes([c]) for c in range(32, 127) if bytes([c]) not in (b"<", b">", b".")]


class FakeTokenizer:
    """Byte-piece tokenizer: greedy longest-match encode, UTF-8 decode with replacement."""

    eos_token_id = 0

    def __init__(self) -> None:
        self.pieces = list(_PIECES)
        self._by_piece = {p: i for i, p in enumerate(self.pieces)}
        self._max_len = max(len(p) for p in self.pieces)

    def __len__(self) -> int:
        return len(self.pieces)

    def token_id(self, piece: str | bytes) -> int:
        if isinstance(piece, str):
            piece = piece.encode("utf-8")
        return self._by_piece[piece]

    def encode(self, text: str, *, add_special_tokens: bool = False):
        _ = add_special_tokens
        data = text.encode("utf-8")
        ids: list[int] = []
        pos = 0
        while pos < len(data):
            for size in range(min(self._max_len, len(data) - pos), 0, -1):
                tid = self._by_piece.get(data[pos : pos + size])
                if tid is not None and tid != 0:
                    ids.append(tid)
                    pos += size
                    break
            else:
                raise ValueError(f"Cannot encode byte {data[pos]:#x}")
        return ids

    def decode(self, ids, *, skip_special_tokens: bool = False):
        out = b""
        for tid in ids:
            tid = int(tid)
            if tid == 0 and skip_special_tokens:
                continue
            out += self.pieces[tid]
        return out.decode("utf-8", errors="replace")


# Next piece after the given last piece; anything else ends with the stop token.
DEFAULT_TRANSITIONS: dict[bytes, bytes] = {
    b" is": b" Paris",
    b" Paris": b".",
    b".": STOP,
    b"k": b"<",
    b"<": b"/think",
    b"/think": b">",
    b">": b"done",
    b"done": STOP,
    b"f": b"\xc3",
    b"\xc3": b"\xa9",
    b"\xa9": STOP,
    b"z": b"z",
}


@dataclass
class FakeCache:
    tokens: list[int] = field(default_factory=list)


class FakeBackend(BaseBackend):
    """Deterministic backend: the next token is a fixed function of the last token fed."""

    def __init__(
        self,
        *,
        transitions: dict[bytes, bytes] | None = None,
        delay: float = 0.0,
        fail_on_call: int | None = None,
        config: dict | None = None,
    ) -> None:
        self._tokenizer = FakeTokenizer()
        self.transitions = dict(DEFAULT_TRANSITIONS if transitions is None else transitions)
        self.delay = delay
        self.fail_on_call = fail_on_call
        self.config = dict(config or {"layers": 2})
        self.forward_calls = 0
        self.max_in_flight = 0
        self.unloaded = False
        self.loaded_from: str | None = None
        self._in_flight = 0
        self._lock = threading.Lock()

    def load(self, model_path: str, **kwargs) -> None:
        self.loaded_from = model_path

    def unload(self) -> None:
        self.unloaded = True

    @property
    def tokenizer(self) -> FakeTokenizer:
        return self._tokenizer

    @property
    def stop_token_id(self) -> int:
        return 0

    @property
    def model_info(self) -> ModelInfo:
        return ModelInfo(
            model_path="fake",
            model_family="fake",
            dtype="float32",
            device="cpu",
            vocab_size=len(self._tokenizer),
            stop_token_id=0,
        )

    def config_dict(self) -> dict:
        return dict(self.config)

    def forward(self, tokens, cache, *, start_pos):
        with self._lock:
            self.forward_calls += 1
            call = self.forward_calls
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail_on_call is not None and call == self.fail_on_call:
                raise RuntimeError("backend exploded")
            if cache is None:
                cache = FakeCache()
            assert start_pos == len(cache.tokens)
            cache.tokens.extend(int(t) for t in tokens)

            last = self._tokenizer.pieces[int(tokens[-1])]
            nxt = self.transitions.get(last, STOP)
            scores = torch.full((len(self._tokenizer),), -10.0)
            scores[self._tokenizer.token_id(nxt)] = 10.0
            return scores, cache
        finally:
            with self._lock:
                self._in_flight -= 1

    def cache_length(self, cache) -> int:
        return 0 if cache is None else len(cache.tokens)

    def export_cache(self, cache):
        return {"tokens": list(cache.tokens)}

    def import_cache(self, payload):
        return FakeCache(tokens=[int(t) for t in payload["tokens"]])


@pytest.fixture
def fake_tokenizer() -> FakeTokenizer:
    return FakeTokenizer()


@pytest.fixture
def make_backend():
    return FakeBackend


@pytest.fixture
def make_llm():
    """Factory for LLMs over fake backends; every LLM is shut down after the test."""
    created: list[LLM] = []

    def _make(backend: FakeBackend | None = None, **config) -> LLM:
        llm = LLM(backend if backend is not None else FakeBackend(), config=EngineConfig(**config))
        created.append(llm)
        return llm

    yield _make
    for llm in created:
        llm.shutdown(timeout=5)
