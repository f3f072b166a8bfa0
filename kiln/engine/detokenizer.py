"""Incremental detokenization and stop-phrase matching.

Tokens and text are not 1:1: one character can span several tokens, and a stop
phrase can span a token boundary. `IncrementalDetokenizer` turns a token stream
into confirmed text chunks and holds back any suffix that could still grow into
the configured stop phrase, so callers never see stop-phrase text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

_REPLACEMENT_CHAR = "\ufffd"


def _fold(ch: str) -> str:
    return ch.lower()


def _startswith_ci(text: str, prefix: str) -> bool:
    """Case-insensitive `text.startswith(prefix)`, compared character by character."""
    if len(text) < len(prefix):
        return False
    return all(_fold(a) == _fold(b) for a, b in zip(text, prefix))


class TokenOutputStream:
    """Decode tokens one at a time, holding back incomplete characters.

    The window `tokens[prefix_offset:read_offset]` is decoded alongside new
    tokens so tokenizers that depend on the previous piece (leading-space
    handling) produce the right text. Tokens past `read_offset` are pending: they
    decode to an unfinished multi-byte character and are retried on the next call.
    """

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer
        self._tokens: list[int] = []
        self._prefix_offset = 0
        self._read_offset = 0

    @property
    def tokens(self) -> list[int]:
        return list(self._tokens)

    @property
    def pending_tokens(self) -> list[int]:
        return self._tokens[self._read_offset :]

    def _decode(self, ids: list[int]) -> str:
        if not ids:
            return ""
        return self._tokenizer.decode(ids, skip_special_tokens=False)

    def next_token(self, token_id: int) -> str | None:
        """Add a token; return newly completed text, or None if nothing is complete yet."""
        self._tokens.append(int(token_id))
        prefix_text = self._decode(self._tokens[self._prefix_offset : self._read_offset])
        full_text = self._decode(self._tokens[self._prefix_offset :])

        if len(full_text) > len(prefix_text) and not full_text.endswith(_REPLACEMENT_CHAR):
            self._prefix_offset = self._read_offset
            self._read_offset = len(self._tokens)
            return full_text[len(prefix_text) :]
        return None

    def flush(self) -> str:
        """Decode any pending tokens as-is (incomplete bytes become U+FFFD)."""
        prefix_text = self._decode(self._tokens[self._prefix_offset : self._read_offset])
        full_text = self._decode(self._tokens[self._prefix_offset :])
        self._prefix_offset = self._read_offset = len(self._tokens)
        if len(full_text) > len(prefix_text):
            return full_text[len(prefix_text) :]
        return ""


class StopPhraseMatcher:
    """Case-insensitive stop-phrase detection over a stream of text pieces.

    `buffer` holds text that is a proper prefix of the stop phrase and might
    still complete it. It is never emitted unless disproven or flushed.
    """

    def __init__(self, stop_on: str) -> None:
        if not stop_on:
            raise ValueError("stop_on must be a non-empty string")
        self._stop = stop_on
        self._buffer = ""
        self.matched = False

    @property
    def stop_on(self) -> str:
        return self._stop

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, text: str) -> str:
        """Consume decoded text and return the part that is confirmed output."""
        if self.matched:
            return ""

        combined = self._buffer + text
        for i in range(len(combined)):
            tail = combined[i:]
            if _startswith_ci(tail, self._stop):
                self.matched = True
                self._buffer = ""
                return combined[:i]
            if _startswith_ci(self._stop, tail):
                self._buffer = tail
                return combined[:i]

        self._buffer = ""
        return combined

    def finish(self) -> str:
        """Release the held-back text at end of generation (phrase never completed)."""
        if self.matched:
            return ""
        out, self._buffer = self._buffer, ""
        return out


@dataclass(frozen=True)
class DetokenizedStep:
    text: str
    stopped: bool = False


class IncrementalDetokenizer:
    """Token stream -> confirmed text chunks, with optional stop phrase."""

    def __init__(self, tokenizer: Any, stop_on: str | None = None) -> None:
        self._stream = TokenOutputStream(tokenizer)
        self._matcher = StopPhraseMatcher(stop_on) if stop_on else None

    @property
    def stop_buffer(self) -> str:
        return self._matcher.buffer if self._matcher is not None else ""

    @property
    def stopped(self) -> bool:
        return self._matcher is not None and self._matcher.matched

    def prime(self, tokens: Iterable[int]) -> None:
        """Run prompt tokens through the decoder state without producing output."""
        for token_id in tokens:
            self._stream.next_token(token_id)

    def next_token(self, token_id: int) -> DetokenizedStep:
        text = self._stream.next_token(token_id)
        if text is None:
            return DetokenizedStep("")
        if self._matcher is None:
            return DetokenizedStep(text)
        confirmed = self._matcher.feed(text)
        return DetokenizedStep(confirmed, stopped=self._matcher.matched)

    def finish(self) -> str:
        """Flush pending characters and any unmatched stop-phrase candidate."""
        if self.stopped:
            return ""
        tail = self._stream.flush()
        if self._matcher is None:
            return tail
        confirmed = self._matcher.feed(tail) if tail else ""
        if self._matcher.matched:
            return confirmed
        return confirmed + self._matcher.finish()
