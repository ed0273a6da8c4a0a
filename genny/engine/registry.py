"""Runtime backend registry.

Maps backend names to their classes. Backend classes import their native
runtime lazily, so only the selected backend has to be installed.
"""

from typing import Any, Type

from .backends.base import RuntimeBackend
from .backends.huggingface import TransformersBackend
from .backends.onnx import OnnxGenAIBackend

DEFAULT_BACKEND = "onnx"

# Registry mapping backend names to backend classes
_BACKEND_REGISTRY: dict[str, Type[RuntimeBackend]] = {
    "onnx": OnnxGenAIBackend,
    "transformers": TransformersBackend,
}


def get_backend(name: str, **kwargs: Any) -> RuntimeBackend:
    """
    Get a backend instance by name.

    Args:
        name: Name of the backend (e.g., "onnx").
        **kwargs: Backend-specific constructor options.

    Returns:
        A backend instance.

    Raises:
        ValueError: If the backend is not registered.
        ImportError: If the backend's runtime is not installed.
    """
    if name not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {name!r}. Available: {available}")
    return _BACKEND_REGISTRY[name](**kwargs)


def register_backend(name: str, backend_cls: Type[RuntimeBackend]) -> None:
    """
    Register a new backend.

    Args:
        name: Name of the backend.
        backend_cls: Backend class (must inherit from RuntimeBackend).
    """
    _BACKEND_REGISTRY[name] = backend_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_BACKEND_REGISTRY.keys())
