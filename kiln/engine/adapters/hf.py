"""Backend for Hugging Face `transformers` causal language models."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

from ...runtime import default_device
from ..types import ModelInfo
from .base import BaseBackend

if TYPE_CHECKING:
    import torch


_STOP_TOKEN_CANDIDATES = ("</s>", "<|end_of_text|>", "<|endoftext|>")


class TransformersBackend(BaseBackend):
    """
    Forward-pass backend over `AutoModelForCausalLM`.

    The attention cache is whatever `past_key_values` object the model returns
    (a `DynamicCache` for most architectures); it is passed back unchanged on
    the next call.

    Example:
        >>> backend = TransformersBackend()
        >>> backend.load("Qwen/Qwen2.5-0.5B-Instruct", device="cpu")
        >>> ids = backend.tokenizer.encode("Hello", add_special_tokens=False)
        >>> logits, cache = backend.forward(ids, None, start_pos=0)
    """

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._stop_token_id: int | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def device(self) -> str:
        """Device the model is loaded on."""
        return self._device

    @property
    def stop_token_id(self) -> int:
        self._ensure_loaded()
        return int(self._stop_token_id)

    @property
    def model_info(self) -> ModelInfo:
        vocab_size = None
        if self._tokenizer is not None:
            vocab_size = len(self._tokenizer)
        return ModelInfo(
            model_path=str(self._model_path),
            model_family="transformers",
            dtype=str(self._dtype),
            device=self._device,
            vocab_size=vocab_size,
            stop_token_id=self._stop_token_id,
            extra={"loaded": self._model is not None},
        )

    def config_dict(self) -> dict[str, Any]:
        config = getattr(self._model, "config", None)
        if config is None or not hasattr(config, "to_dict"):
            return {}
        return config.to_dict()

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load a causal LM and its tokenizer.

        Args:
            model_path: Path to the model (local or HF hub).
            device: Device to run on (default: best available, see `kiln.runtime`).
            dtype: Torch dtype (default: float16 on CUDA, float32 elsewhere).
            stop_token_id: Override the tokenizer's EOS token.
            trust_remote_code: Allow custom modeling code from the hub (default: False).
            **kwargs: Additional kwargs passed to from_pretrained().
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        self._model_path = model_path
        self._device = kwargs.pop("device", None) or default_device()
        default_dtype = torch.float16 if str(self._device).startswith("cuda") else torch.float32
        self._dtype = kwargs.pop("dtype", default_dtype)
        stop_token_id = kwargs.pop("stop_token_id", None)
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        self._tokenizer = AutoTokenizer.from_pretrained(
            model_path,
            trust_remote_code=trust_remote_code,
        )
        self._model = AutoModelForCausalLM.from_pretrained(
            model_path,
            torch_dtype=self._dtype,
            trust_remote_code=trust_remote_code,
            **kwargs,
        ).to(self._device)
        self._model.eval()

        self._stop_token_id = self._resolve_stop_token(stop_token_id)

    def unload(self) -> None:
        """Unload the model and free device memory."""
        import gc
        import torch

        del self._model
        del self._tokenizer
        self._model = None
        self._tokenizer = None

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Forward pass
    # -------------------------------------------------------------------------

    def forward(self, tokens: Sequence[int], cache: Any | None, *, start_pos: int) -> tuple[torch.Tensor, Any]:
        import torch

        self._ensure_loaded()
        if not tokens:
            raise ValueError("Cannot run model on empty input")

        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=self._model.device)
        cache_position = torch.arange(start_pos, start_pos + len(tokens), device=self._model.device)

        with torch.no_grad():
            outputs = self._model(
                input_ids,
                past_key_values=cache,
                cache_position=cache_position,
                use_cache=True,
            )
        return outputs.logits[0, -1, :].float(), outputs.past_key_values

    def cache_length(self, cache: Any | None) -> int:
        if cache is None:
            return 0
        return int(cache.get_seq_length())

    # -------------------------------------------------------------------------
    # Session caches
    # -------------------------------------------------------------------------

    def export_cache(self, cache: Any) -> dict[str, Any]:
        """Export a `DynamicCache` as per-layer key/value CPU tensors."""
        import torch

        layers = []
        for layer_idx, (k, v) in enumerate(cache.to_legacy_cache()):
            if not isinstance(k, torch.Tensor) or not isinstance(v, torch.Tensor):
                raise TypeError(f"Unsupported cache: layer {layer_idx} does not hold key/value tensors.")
            layers.append(
                {
                    "key": k.detach().contiguous().to("cpu"),
                    "value": v.detach().contiguous().to("cpu"),
                }
            )
        return {"seq_len": self.cache_length(cache), "layers": layers}

    def import_cache(self, payload: Any) -> Any:
        import torch
        from transformers import DynamicCache

        if not isinstance(payload, dict) or not isinstance(payload.get("layers"), list):
            raise TypeError("Invalid cache payload (expected dict with a layer list).")

        legacy = []
        for layer_idx, layer in enumerate(payload["layers"]):
            k = layer.get("key") if isinstance(layer, dict) else None
            v = layer.get("value") if isinstance(layer, dict) else None
            if not isinstance(k, torch.Tensor) or not isinstance(v, torch.Tensor):
                raise TypeError(f"Invalid cache payload: layer {layer_idx} is missing key/value tensors.")
            if k.dim() != 4 or k.shape != v.shape:
                raise ValueError(f"Invalid cache payload: layer {layer_idx} has shape {tuple(k.shape)}/{tuple(v.shape)}.")
            legacy.append((k.to(self._device), v.to(self._device)))

        cache = DynamicCache.from_legacy_cache(tuple(legacy))
        if self.cache_length(cache) != payload.get("seq_len"):
            raise ValueError(
                f"Invalid cache payload: seq_len {payload.get('seq_len')!r} does not match "
                f"restored length {self.cache_length(cache)}."
            )
        return cache

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    def _resolve_stop_token(self, override: int | None) -> int:
        if override is not None:
            return int(override)
        eos = getattr(self._tokenizer, "eos_token_id", None)
        if eos is not None:
            return int(eos)
        vocab = self._tokenizer.get_vocab()
        for candidate in _STOP_TOKEN_CANDIDATES:
            if candidate in vocab:
                return int(vocab[candidate])
        raise ValueError(f"No stop token found in the vocabulary of {self._model_path!r}")
