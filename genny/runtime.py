"""Runtime environment checks for genny backends."""

from __future__ import annotations

import functools
import importlib.util


@functools.lru_cache(maxsize=1)
def is_onnxruntime_genai_available() -> bool:
    """Check if the ONNX Runtime generate() API is installed."""
    return importlib.util.find_spec("onnxruntime_genai") is not None


@functools.lru_cache(maxsize=1)
def is_torch_available() -> bool:
    """Check if PyTorch is installed."""
    return importlib.util.find_spec("torch") is not None


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    if not is_torch_available():
        return False
    import torch

    return torch.cuda.is_available()


def default_device() -> str:
    """Torch device used when the caller does not pick one."""
    return "cuda" if is_cuda_available() else "cpu"


def check_onnxruntime_genai_required() -> None:
    """Raise ImportError if onnxruntime-genai is not available."""
    if not is_onnxruntime_genai_available():
        raise ImportError(
            "The 'onnx' backend requires onnxruntime-genai. "
            "Install it with: pip install 'genny[onnx]'"
        )


def check_torch_required() -> None:
    """Raise ImportError if torch/transformers are not available."""
    if not is_torch_available() or importlib.util.find_spec("transformers") is None:
        raise ImportError(
            "The 'transformers' backend requires torch and transformers. "
            "Install them with: pip install torch transformers"
        )
