"""Backend registry.

Maps model family names to their backend classes.
"""

from typing import Type

from .adapters.base import BaseBackend
from .adapters.hf import TransformersBackend

# Registry mapping model family names to backend classes
_BACKEND_REGISTRY: dict[str, Type[BaseBackend]] = {
    "transformers": TransformersBackend,
}


def get_backend(model_family: str) -> BaseBackend:
    """
    Get a backend instance for the given model family.

    Args:
        model_family: Name of the model family (e.g., "transformers").

    Returns:
        An unloaded backend instance for the model family.

    Raises:
        ValueError: If the model family is not registered.
    """
    if model_family not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise ValueError(f"Unknown model family: {model_family!r}. Available: {available}")
    return _BACKEND_REGISTRY[model_family]()


def register_backend(model_family: str, backend_cls: Type[BaseBackend]) -> None:
    """Register a backend class (must inherit from BaseBackend) for a model family."""
    _BACKEND_REGISTRY[model_family] = backend_cls


def list_backend_families() -> list[str]:
    """Return list of registered model family names."""
    return list(_BACKEND_REGISTRY.keys())
