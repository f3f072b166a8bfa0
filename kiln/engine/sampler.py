"""Logit truncation and sampling strategies.

Samplers turn one step's (top-K truncated) logits into a single token id. They
are plain objects owned by the request; any running state they keep (e.g. the
repetition-penalty history) lives on the instance.
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import torch

from .errors import NoValidTokens

if TYPE_CHECKING:
    from .constraints import ConstraintOracle


DEFAULT_TOP_K_LOGITS = 512


@dataclass(frozen=True)
class Logits:
    """The K highest-scoring vocabulary entries of one forward pass.

    Both tensors are 1-D, on CPU, and sorted by descending score.
    """

    token_ids: torch.Tensor
    scores: torch.Tensor

    @classmethod
    def from_scores(cls, scores: Any, top_k: int = DEFAULT_TOP_K_LOGITS) -> "Logits":
        """Build a truncated view from a full-vocabulary score vector."""
        scores = torch.as_tensor(scores).detach().reshape(-1).to(device="cpu", dtype=torch.float32)
        if scores.numel() == 0:
            raise ValueError("Model output must contain at least one logit.")
        scores = torch.nan_to_num(scores, nan=float("-inf"))
        k = scores.numel() if top_k <= 0 else min(int(top_k), scores.numel())
        values, indices = torch.topk(scores, k)
        return cls(token_ids=indices, scores=values)

    def __len__(self) -> int:
        return int(self.token_ids.numel())

    def restrict(self, constraint: ConstraintOracle | None) -> "Logits":
        """Keep only the entries the constraint oracle currently accepts."""
        if constraint is None:
            return self
        keep = [i for i, tid in enumerate(self.token_ids.tolist()) if constraint.accepts(int(tid))]
        if not keep:
            raise NoValidTokens()
        idx = torch.tensor(keep, dtype=torch.long)
        return Logits(token_ids=self.token_ids[idx], scores=self.scores[idx])


class Sampler(ABC):
    """Abstract base class for token sampling strategies."""

    @abstractmethod
    def sample(self, logits: Logits, constraint: ConstraintOracle | None = None) -> int:
        """
        Pick one token id from the given logits.

        Args:
            logits: Truncated logits for the next position.
            constraint: Optional oracle; only tokens it accepts may be returned.

        Returns:
            The selected token id.

        Raises:
            NoValidTokens: If a constraint is given and rejects every candidate.
        """
        pass


class GreedySampler(Sampler):
    """Always pick the highest-scoring acceptable token."""

    def sample(self, logits: Logits, constraint: ConstraintOracle | None = None) -> int:
        candidates = logits.restrict(constraint)
        return int(candidates.token_ids[int(torch.argmax(candidates.scores))])


@dataclass
class GenerationParameters(Sampler):
    """Temperature / top-k / top-p sampling with a repetition penalty.

    `max_length` and `stop_on` are not used by `sample()`; the engine reads them
    as request defaults when the caller does not pass explicit values.
    """

    temperature: float = 0.8
    top_k: int = 0
    top_p: float = 1.0
    repetition_penalty: float = 1.3
    repetition_penalty_range: int = 64
    max_length: int = 128
    seed: int | None = None
    stop_on: str | None = None

    _history: deque = field(init=False, repr=False, compare=False)
    _generator: torch.Generator | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.repetition_penalty <= 0:
            raise ValueError(f"repetition_penalty must be > 0, got {self.repetition_penalty}")
        if self.repetition_penalty_range < 0:
            raise ValueError("repetition_penalty_range must be >= 0")
        if self.max_length <= 0:
            raise ValueError(f"max_length must be > 0, got {self.max_length}")

        self._history = deque(maxlen=self.repetition_penalty_range)
        self._generator = None
        if self.seed is not None:
            self._generator = torch.Generator().manual_seed(int(self.seed))

    def with_temperature(self, temperature: float) -> "GenerationParameters":
        return dataclasses.replace(self, temperature=temperature)

    def with_top_k(self, top_k: int) -> "GenerationParameters":
        return dataclasses.replace(self, top_k=top_k)

    def with_top_p(self, top_p: float) -> "GenerationParameters":
        return dataclasses.replace(self, top_p=top_p)

    def with_repetition_penalty(self, penalty: float) -> "GenerationParameters":
        return dataclasses.replace(self, repetition_penalty=penalty)

    def with_max_length(self, max_length: int) -> "GenerationParameters":
        return dataclasses.replace(self, max_length=max_length)

    def with_seed(self, seed: int | None) -> "GenerationParameters":
        return dataclasses.replace(self, seed=seed)

    def with_stop_on(self, stop_on: str | None) -> "GenerationParameters":
        return dataclasses.replace(self, stop_on=stop_on)

    def sample(self, logits: Logits, constraint: ConstraintOracle | None = None) -> int:
        candidates = logits.restrict(constraint)
        scores = self._penalize(candidates)

        if self.temperature == 0:
            idx = int(torch.argmax(scores))
        else:
            idx = self._draw(scores, fallback=candidates.scores)

        token_id = int(candidates.token_ids[idx])
        self._history.append(token_id)
        return token_id

    def _penalize(self, candidates: Logits) -> torch.Tensor:
        scores = candidates.scores.clone()
        if self.repetition_penalty == 1.0 or not self._history:
            return scores
        seen = torch.tensor(sorted(set(self._history)), dtype=candidates.token_ids.dtype)
        hit = torch.isin(candidates.token_ids, seen)
        penalized = torch.where(scores > 0, scores / self.repetition_penalty, scores * self.repetition_penalty)
        return torch.where(hit, penalized, scores)

    def _draw(self, scores: torch.Tensor, *, fallback: torch.Tensor) -> int:
        if self.top_k > 0 and self.top_k < scores.numel():
            kth = torch.topk(scores, self.top_k).values[-1]
            scores = scores.masked_fill(scores < kth, float("-inf"))

        probs = torch.softmax(scores / float(self.temperature), dim=-1)

        if self.top_p < 1.0:
            sorted_probs, order = torch.sort(probs, descending=True)
            cumulative = torch.cumsum(sorted_probs, dim=-1)
            # Always keep the most likely token.
            drop = (cumulative - sorted_probs) > self.top_p
            sorted_probs = sorted_probs.masked_fill(drop, 0.0)
            probs = torch.zeros_like(probs).scatter(0, order, sorted_probs)

        probs = torch.nan_to_num(probs, nan=0.0, posinf=0.0, neginf=0.0).clamp(min=0.0)
        total = float(probs.sum())
        if total <= 0:
            return int(torch.argmax(fallback))
        probs = probs / total
        return int(torch.multinomial(probs, 1, generator=self._generator).item())
