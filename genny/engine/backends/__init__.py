# Inference runtime backends
#
# Each backend implements the same small runtime contract:
#   - Loading a model and deriving its tokenizer
#   - Creating generator params / generators for step-wise decoding
#   - Releasing native resources deterministically
#
# The engine uses backends to stay runtime-agnostic.

from .base import RuntimeBackend

__all__ = ["RuntimeBackend"]
