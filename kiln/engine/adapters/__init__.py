# Model backends
#
# Each backend implements a common interface for:
#   - Loading model + tokenizer
#   - Running one forward pass against an attention cache
#   - Copying / exporting / importing that cache
#
# The engine uses backends to stay model-agnostic.

from .base import BaseBackend

__all__ = ["BaseBackend"]
