"""Base backend interface for inference runtimes."""

from abc import ABC, abstractmethod
from typing import Any


class RuntimeBackend(ABC):
    """
    Abstract base class for inference runtimes.

    The objects returned by a backend follow the runtime's own API:

    - tokenizer: `encode(text)`, `decode(ids)`, `create_stream()` whose
      stream exposes `decode(token_id)`.
    - generator params: `set_search_option(name, value)` and
      `set_input_sequences(sequences)`.
    - generator: `is_done()`, `compute_logits()`, `generate_next_token()`,
      optionally `generate_next_token_greedy()`, and `get_sequence(index)`.

    Backends are not thread-safe; callers must not drive two generators on
    the same model concurrently.
    """

    name: str = "base"

    @abstractmethod
    def load_model(self, model_path: str) -> Any:
        """
        Load a model from a local folder.

        Args:
            model_path: Folder containing the model files.

        Returns:
            An opaque model handle.
        """
        pass

    @abstractmethod
    def create_tokenizer(self, model: Any) -> Any:
        """Create the tokenizer bound to a loaded model."""
        pass

    @abstractmethod
    def create_generator_params(self, model: Any) -> Any:
        """Create a fresh generator-parameters object for one generation call."""
        pass

    @abstractmethod
    def create_generator(self, model: Any, params: Any) -> Any:
        """Create a generator bound to `model` and configured by `params`."""
        pass

    def release(self, resource: Any) -> None:
        """
        Release a native resource (model, tokenizer, stream, params, generator).

        Default implementation calls `close()` when the object has one and
        otherwise drops the reference; override if cleanup is needed.
        """
        close = getattr(resource, "close", None)
        if callable(close):
            close()

    def info(self, model: Any) -> dict[str, Any]:
        """Return metadata about a loaded model."""
        return {"backend": self.name}
