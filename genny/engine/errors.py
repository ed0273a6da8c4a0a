"""Error taxonomy for the generation core.

Every failure that crosses the controller boundary is one of these types.
`GenerationCancelled` is a terminal outcome rather than a failure: callers
catch it separately to render a cancellation marker.
"""

from __future__ import annotations


class GennyError(RuntimeError):
    """Base class for all engine errors."""


class ModelLoadError(GennyError):
    """The model folder is missing, unreadable, or incompatible with the runtime."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(message)
        self.path = path


class EncodeError(GennyError):
    """Text could not be tokenized (or no tokenizer is loaded)."""


class DecodeError(GennyError):
    """Token ids could not be decoded back to text."""


class ParseError(GennyError, ValueError):
    """A user-supplied token id list is malformed."""


class GenerationCancelled(GennyError):
    """Generation stopped because its cancellation token was set."""


class UnclassifiedRuntimeError(GennyError):
    """Any other failure raised by the inference runtime."""
