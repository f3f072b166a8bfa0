"""Token-level constraint oracles for structured generation.

An oracle answers "may this token come next?" and tracks what has been accepted
so far. Grammar or schema machinery plugs in by implementing `ConstraintOracle`;
the two oracles here cover fixed literals and closed choice sets.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence


class ConstraintOracle(ABC):
    """Abstract token-level constraint."""

    @abstractmethod
    def accepts(self, token_id: int) -> bool:
        """Return True if `token_id` is a valid next token in the current state."""
        pass

    @abstractmethod
    def advance(self, token_id: int) -> None:
        """Commit `token_id` (which must have been accepted)."""
        pass

    @property
    @abstractmethod
    def is_complete(self) -> bool:
        """True once the accepted tokens form a complete output."""
        pass

    @property
    def may_end(self) -> bool:
        """True if the stop token may be sampled in the current state.

        Differs from `is_complete` for outputs that are valid as they stand but
        could still be extended, such as a choice that is a prefix of another.
        """
        return self.is_complete

    @abstractmethod
    def output(self) -> Any:
        """The parsed output. Only meaningful when `may_end` is True."""
        pass


class _TextConstraint(ConstraintOracle):
    """Shared bookkeeping for oracles defined over decoded text."""

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer
        self._pieces: dict[int, str] = {}
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def _piece(self, token_id: int) -> str:
        piece = self._pieces.get(token_id)
        if piece is None:
            piece = self._tokenizer.decode([token_id], skip_special_tokens=False)
            self._pieces[token_id] = piece
        return piece

    def advance(self, token_id: int) -> None:
        if not self.accepts(token_id):
            raise ValueError(f"Token {token_id} is not accepted in the current state.")
        self._text += self._piece(token_id)


class LiteralConstraint(_TextConstraint):
    """Accept exactly one literal string, in any tokenization."""

    def __init__(self, literal: str, tokenizer: Any) -> None:
        if not literal:
            raise ValueError("literal must be non-empty")
        super().__init__(tokenizer)
        self._literal = literal

    def accepts(self, token_id: int) -> bool:
        piece = self._piece(token_id)
        if not piece:
            return False
        return self._literal.startswith(self._text + piece)

    @property
    def is_complete(self) -> bool:
        return self._text == self._literal

    def output(self) -> str:
        return self._text


class ChoiceConstraint(_TextConstraint):
    """Accept any one of a fixed set of strings.

    Completes as soon as the accepted text equals one of the choices and no
    longer choice still extends it. While a longer choice is still possible the
    model may end the output by sampling the stop token (`may_end`).
    """

    def __init__(self, choices: Sequence[str], tokenizer: Any) -> None:
        choices = [c for c in choices if c]
        if not choices:
            raise ValueError("choices must contain at least one non-empty string")
        super().__init__(tokenizer)
        self._choices = list(dict.fromkeys(choices))

    def accepts(self, token_id: int) -> bool:
        piece = self._piece(token_id)
        if not piece:
            return False
        candidate = self._text + piece
        return any(c.startswith(candidate) for c in self._choices)

    @property
    def is_complete(self) -> bool:
        if self._text not in self._choices:
            return False
        return not any(c != self._text and c.startswith(self._text) for c in self._choices)

    @property
    def may_end(self) -> bool:
        return self._text in self._choices

    def output(self) -> str:
        return self._text
