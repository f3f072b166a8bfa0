"""Base backend interface: the forward-pass primitive and its cache."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from typing import Any, Sequence

import torch

from ..types import ModelInfo


class BaseBackend(ABC):
    """
    Abstract base class for model backends.

    A backend owns the weights and tokenizer and evaluates one forward pass at a
    time. It is NOT thread-safe; the engine guarantees a single caller (the
    dispatcher thread) for `forward`.
    """

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load model and tokenizer from the given path or hub id.

        Args:
            model_path: Local path or hub model identifier.
            **kwargs: Backend-specific loading options (dtype, device, etc.).
        """
        pass

    @property
    @abstractmethod
    def tokenizer(self) -> Any:
        """Tokenizer exposing `encode(text, add_special_tokens=False)` and `decode(ids, skip_special_tokens=False)`."""
        pass

    @property
    @abstractmethod
    def stop_token_id(self) -> int:
        """Token id that ends generation."""
        pass

    @abstractmethod
    def forward(self, tokens: Sequence[int], cache: Any | None, *, start_pos: int) -> tuple[torch.Tensor, Any]:
        """
        Run one forward pass.

        Args:
            tokens: New token ids to evaluate (non-empty).
            cache: Attention cache from previous calls, or None for a fresh one.
            start_pos: Number of tokens already encoded in `cache`.

        Returns:
            (logits for the position after the last token, shape (vocab,); updated cache)
        """
        pass

    @abstractmethod
    def cache_length(self, cache: Any | None) -> int:
        """Number of token positions encoded in `cache`."""
        pass

    @property
    @abstractmethod
    def model_info(self) -> ModelInfo:
        """Metadata about the loaded model."""
        pass

    @property
    def device(self) -> str:
        """Device that cache tensors live on (used when loading serialized sessions)."""
        return "cpu"

    def config_dict(self) -> dict[str, Any]:
        """Model configuration used for session compatibility checks."""
        return {}

    def copy_cache(self, cache: Any) -> Any:
        """Deep-copy a cache so the two copies evolve independently."""
        return copy.deepcopy(cache)

    def export_cache(self, cache: Any) -> Any:
        """Return a device-independent representation of `cache`.

        The result must only contain dicts, lists, tuples, numbers, strings and
        tensors: sessions are restored with `torch.load(weights_only=True)`.
        """
        return cache

    def import_cache(self, payload: Any) -> Any:
        """Inverse of `export_cache`."""
        return payload

    def unload(self) -> None:
        """
        Unload the model and free resources.

        Default implementation does nothing; override if cleanup is needed.
        """
        pass
